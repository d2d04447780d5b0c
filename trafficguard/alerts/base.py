from __future__ import annotations
from dataclasses import dataclass, asdict, field
from collections import deque
from typing import Dict, Any, List, Protocol, Optional, Tuple
import asyncio, logging, os, socket

from trafficguard.core.concurrency import Clock, system_clock

logger = logging.getLogger(__name__)

# alert kinds raised by the engine and the guard middleware
KIND_ANOMALY = "anomaly"
KIND_BAD_BOT = "bad_bot"
KIND_RATE_LIMITED = "rate_limited"
KIND_THRESHOLD_TUNED = "threshold_tuned"
KIND_GUARD_BLOCK = "guard_block"


@dataclass
class AlertPayload:
    ts: float
    kind: str
    source: str
    path: str
    reason: str
    meta: Dict[str, Any] = field(default_factory=dict)
    host: str = socket.gethostname()
    env: str = os.getenv("APP_ENV", "dev")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AlertSink(Protocol):
    async def send(self, payload: AlertPayload) -> None: ...


class AlertManager:
    """
    In-memory dedup/cooldown in front of a set of sinks:
      key = (kind, source, path, reason)
      if now - last_sent < cooldown => suppress

    Delivery failures are logged per sink and never reach the caller.
    """
    def __init__(
        self,
        cooldown_seconds: int = 60,
        keep_recent: int = 0,
        *,
        metrics: Optional[Dict[str, Any]] = None,
        clock: Clock = system_clock,
    ):
        self.cooldown = max(0, int(cooldown_seconds))
        self.sinks: List[AlertSink] = []
        self._clock = clock
        self._last: Dict[Tuple[str, str, str, str], float] = {}
        self._recent = deque(maxlen=int(keep_recent)) if keep_recent > 0 else None
        self._emitted = metrics.get("alerts_emitted") if metrics else None
        self._suppressed = metrics.get("alerts_suppressed") if metrics else None

    def register(self, sink: AlertSink) -> None:
        self.sinks.append(sink)

    def should_send(self, payload: AlertPayload) -> bool:
        key = (payload.kind, payload.source, payload.path, payload.reason)
        now = self._clock()
        last = self._last.get(key)
        if self.cooldown and last is not None and (now - last) < self.cooldown:
            if self._suppressed is not None:
                self._suppressed.inc()
            return False
        self._last[key] = now
        return True

    async def emit(self, payload: AlertPayload) -> bool:
        if not self.should_send(payload):
            return False
        await asyncio.gather(*(self._send_one(s, payload) for s in self.sinks))
        if self._recent is not None:
            self._recent.append(payload.to_dict())
        return True

    async def _send_one(self, sink: AlertSink, payload: AlertPayload) -> None:
        try:
            await sink.send(payload)
        except Exception:
            logger.exception("alert sink %s failed for kind=%s", sink.__class__.__name__, payload.kind)
            return
        if self._emitted is not None:
            self._emitted.labels(sink=sink.__class__.__name__).inc()

    def prune(self) -> int:
        """Forget cooldown keys that have already expired."""
        now = self._clock()
        stale = [k for k, ts in list(self._last.items()) if now - ts >= self.cooldown]
        for k in stale:
            self._last.pop(k, None)
        return len(stale)

    def recent(self, limit: int | None = None) -> List[Dict[str, Any]]:
        if self._recent is None:
            return []
        if not limit or limit <= 0:
            return list(self._recent)
        return list(self._recent)[-int(limit):]

    def make_payload(
        self, kind: str, source: str, path: str, reason: str, meta: Optional[Dict[str, Any]] = None
    ) -> AlertPayload:
        return AlertPayload(ts=self._clock(), kind=kind, source=source, path=path, reason=reason, meta=meta or {})
