import threading

from trafficguard.detection.events import RequestEvent
from trafficguard.detection.recorder import TelemetryRecorder

from conftest import T0


def _ev(source, ts, path="/", method="get"):
    return RequestEvent.create(source, path, method, ts, headers={"User-Agent": "ua"})


def test_create_normalizes_method_and_headers():
    e = _ev("s", T0, method="post")
    assert e.method == "POST"
    assert e.headers == {"user-agent": "ua"}
    assert e.user_agent == "ua"


def test_history_is_capped_by_count(clock, locks):
    rec = TelemetryRecorder(max_events=5, locks=locks, clock=clock)
    for i in range(8):
        rec.record(_ev("s", T0 + i, path=f"/p{i}"))
    hist = rec.history("s")
    assert len(hist) == 5
    assert [e.path for e in hist] == ["/p3", "/p4", "/p5", "/p6", "/p7"]


def test_history_since_filter(recorder):
    for i in range(5):
        recorder.record(_ev("s", T0 + i))
    assert len(recorder.history("s", since=T0 + 2)) == 2
    assert recorder.history("unknown") == []


def test_evict_drops_old_events_then_the_whole_source(recorder):
    recorder.record(_ev("a", T0))
    recorder.record(_ev("a", T0 + 10))
    recorder.record(_ev("a", T0 + 20))
    recorder.record(_ev("b", T0 + 200))

    # cutoff = T0 + 10: events at or before it go
    assert recorder.evict(now=T0 + 310) == 0
    assert [e.timestamp for e in recorder.history("a")] == [T0 + 20]

    # newest event of "a" is now older than the window: the key itself disappears
    assert recorder.evict(now=T0 + 400) == 1
    assert "a" not in recorder.sources()
    assert recorder.sources() == ["b"]


def test_global_log_trims_to_newest_half(clock, locks):
    rec = TelemetryRecorder(log_max=10, locks=locks, clock=clock)
    for i in range(11):
        rec.log_request("GET", f"/x{i}", "s", ts=T0 + i)
    assert rec.total_logged() == 5
    assert rec.recent_log()[-1].path == "/x10"
    assert rec.recent_log()[0].path == "/x6"


def test_record_can_skip_the_global_log(recorder):
    recorder.record(_ev("s", T0), log=False)
    assert recorder.total_logged() == 0
    assert len(recorder.history("s")) == 1


def test_late_event_is_kept_in_order_and_evicted(recorder):
    recorder.record(_ev("s", T0))
    recorder.record(_ev("s", T0 - 400))
    assert [e.timestamp for e in recorder.history("s")] == [T0 - 400, T0]

    # cutoff = T0 - 200: the late, older event must not survive the sweep
    assert recorder.evict(now=T0 + 100) == 0
    assert [e.timestamp for e in recorder.history("s")] == [T0]


def test_late_event_respects_the_count_cap(clock, locks):
    rec = TelemetryRecorder(max_events=3, locks=locks, clock=clock)
    for i in range(3):
        rec.record(_ev("s", T0 + i))
    rec.record(_ev("s", T0 + 1.5))
    assert [e.timestamp for e in rec.history("s")] == [T0 + 1, T0 + 1.5, T0 + 2]


def test_concurrent_record_and_evict(clock, locks):
    rec = TelemetryRecorder(max_events=10000, log_max=100000, locks=locks, clock=clock)
    sources = [f"s{i}" for i in range(8)]

    def writer(source):
        for i in range(500):
            rec.record(_ev(source, T0 + i * 0.001))

    def sweeper():
        for _ in range(200):
            rec.evict(now=T0)  # nothing is old enough to drop

    threads = [threading.Thread(target=writer, args=(s,)) for s in sources]
    threads.append(threading.Thread(target=sweeper))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(rec.sources()) == sorted(sources)
    assert all(len(rec.history(s)) == 500 for s in sources)
    assert rec.total_logged() == 8 * 500
