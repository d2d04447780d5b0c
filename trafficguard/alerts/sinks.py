import asyncio
import json
import logging
import os
from typing import Dict, List, Optional

import httpx

from trafficguard.alerts.base import AlertPayload, AlertSink

logger = logging.getLogger(__name__)


class LogSink(AlertSink):
    """Writes each alert as one JSON line on the `trafficguard.alerts` logger."""
    def __init__(self, name: str = "trafficguard.alerts"):
        self._log = logging.getLogger(name)

    async def send(self, payload: AlertPayload) -> None:
        self._log.warning("[ALERT] %s", json.dumps(payload.to_dict(), ensure_ascii=False))


class FileSink(AlertSink):
    """
    Appends one JSON object per line. The write is pushed to a worker thread
    so the event loop never blocks on disk.
    """
    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

    def _write(self, line: str) -> None:
        with open(self.path, "a+", encoding="utf-8") as f:
            f.write(line + "\n")

    async def send(self, payload: AlertPayload) -> None:
        line = json.dumps(payload.to_dict(), ensure_ascii=False)
        await asyncio.to_thread(self._write, line)


class WebhookSink(AlertSink):
    """JSON POST with a bounded number of attempts and a linear backoff."""
    def __init__(
        self,
        url: str,
        retry_max: int = 3,
        backoff_ms: int = 250,
        headers: Optional[Dict[str, str]] = None,
        timeout_sec: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.retry_max = max(1, int(retry_max))
        self.backoff_ms = max(0, int(backoff_ms))
        self.headers = headers or {"Content-Type": "application/json"}
        self.timeout = timeout_sec
        self._transport = transport

    async def send(self, payload: AlertPayload) -> None:
        body = payload.to_dict()
        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.retry_max + 1):
                try:
                    resp = await client.post(self.url, headers=self.headers, json=body)
                    resp.raise_for_status()
                    return
                except httpx.HTTPError as e:
                    last_error = e
                    logger.debug("webhook %s attempt %d/%d failed: %s", self.url, attempt, self.retry_max, e)
                    if attempt < self.retry_max:
                        await asyncio.sleep(self.backoff_ms * attempt / 1000.0)
        raise RuntimeError(f"webhook {self.url} failed after {self.retry_max} attempts") from last_error


def build_sinks(settings) -> List[AlertSink]:
    """Sinks named in ALERT_SINKS: log, file, webhook (one per ALERT_WEBHOOK_URLS entry)."""
    sinks: List[AlertSink] = []
    for name in settings.sinks():
        if name == "log":
            sinks.append(LogSink())
        elif name == "file":
            sinks.append(FileSink(settings.ALERT_FILE_PATH))
        elif name == "webhook":
            for url in settings.webhook_urls():
                sinks.append(WebhookSink(url, settings.ALERT_RETRY_MAX, settings.ALERT_RETRY_BACKOFF_MS))
        else:
            logger.warning("unknown alert sink %r ignored", name)
    return sinks
