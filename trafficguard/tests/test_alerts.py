import json

import httpx
import pytest

from trafficguard.alerts import AlertManager, FileSink, LogSink, WebhookSink, build_sinks
from trafficguard.core.settings import Settings


class RecordingSink:
    def __init__(self):
        self.got = []

    async def send(self, payload):
        self.got.append(payload)


class BrokenSink:
    async def send(self, payload):
        raise RuntimeError("down")


@pytest.mark.asyncio
async def test_cooldown_suppresses_duplicates(clock):
    am = AlertManager(cooldown_seconds=60, keep_recent=10, clock=clock)
    sink = RecordingSink()
    am.register(sink)

    p = am.make_payload("anomaly", "src", "/x", "anomaly_score", {"score": 90})
    assert await am.emit(p)
    assert not await am.emit(am.make_payload("anomaly", "src", "/x", "anomaly_score"))
    # different key is not suppressed
    assert await am.emit(am.make_payload("anomaly", "other", "/x", "anomaly_score"))

    clock.advance(61)
    assert await am.emit(am.make_payload("anomaly", "src", "/x", "anomaly_score"))
    assert len(sink.got) == 3
    assert [a["source"] for a in am.recent()] == ["src", "other", "src"]
    assert len(am.recent(limit=1)) == 1


@pytest.mark.asyncio
async def test_broken_sink_does_not_stop_the_others(clock):
    am = AlertManager(cooldown_seconds=0, keep_recent=5, clock=clock)
    good = RecordingSink()
    am.register(BrokenSink())
    am.register(good)
    assert await am.emit(am.make_payload("bad_bot", "src", "/", "bad_bot"))
    assert len(good.got) == 1


@pytest.mark.asyncio
async def test_prune_forgets_expired_keys(clock):
    am = AlertManager(cooldown_seconds=10, clock=clock)
    await am.emit(am.make_payload("k", "a", "/", "r"))
    await am.emit(am.make_payload("k", "b", "/", "r"))
    clock.advance(11)
    assert am.prune() == 2


@pytest.mark.asyncio
async def test_webhook_retries_then_succeeds():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(500 if len(calls) < 3 else 200)

    sink = WebhookSink("http://hook.test/alerts", retry_max=3, backoff_ms=0,
                       transport=httpx.MockTransport(handler))
    am = AlertManager(cooldown_seconds=0)
    await sink.send(am.make_payload("rate_limited", "src", "/login", "rate_limit_exceeded"))
    assert len(calls) == 3
    assert calls[-1]["kind"] == "rate_limited"


@pytest.mark.asyncio
async def test_webhook_gives_up_and_manager_swallows_it():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503)

    sink = WebhookSink("http://hook.test/alerts", retry_max=2, backoff_ms=0,
                       transport=httpx.MockTransport(handler))
    with pytest.raises(RuntimeError):
        await sink.send(AlertManager().make_payload("k", "s", "/", "r"))

    am = AlertManager(cooldown_seconds=0, keep_recent=5)
    am.register(sink)
    assert await am.emit(am.make_payload("k", "s", "/", "r"))
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_file_sink_appends_json_lines(tmp_path):
    path = tmp_path / "nested" / "alerts.log"
    sink = FileSink(str(path))
    am = AlertManager(cooldown_seconds=0)
    await sink.send(am.make_payload("anomaly", "a", "/", "r"))
    await sink.send(am.make_payload("anomaly", "b", "/", "r"))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["source"] for line in lines] == ["a", "b"]


@pytest.mark.asyncio
async def test_log_sink(caplog):
    with caplog.at_level("WARNING", logger="trafficguard.alerts"):
        await LogSink().send(AlertManager().make_payload("anomaly", "a", "/", "r"))
    assert "[ALERT]" in caplog.text


def test_build_sinks_from_settings(tmp_path):
    s = Settings(
        _env_file=None,
        ALERT_SINKS="log,file,webhook,carrier-pigeon",
        ALERT_FILE_PATH=str(tmp_path / "a.log"),
        ALERT_WEBHOOK_URLS="http://a.test/h, http://b.test/h",
    )
    sinks = build_sinks(s)
    assert [type(x).__name__ for x in sinks] == ["LogSink", "FileSink", "WebhookSink", "WebhookSink"]
