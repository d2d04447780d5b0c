from __future__ import annotations
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from trafficguard.core.concurrency import Clock, StripedLock, system_clock
from trafficguard.detection.events import LogEntry, RequestEvent

logger = logging.getLogger(__name__)

__all__ = ["TelemetryRecorder"]


class TelemetryRecorder:
    """
    Per-source rolling history plus a global request log.

    - history: source_id -> deque[RequestEvent], ordered by timestamp, capped
      by count on append and by age on evict()
    - global log: newest-last list, trimmed to the newest half once it grows
      past log_max
    """

    def __init__(
        self,
        *,
        window_sec: float = 300.0,
        max_events: int = 1000,
        log_max: int = 10000,
        locks: Optional[StripedLock] = None,
        clock: Clock = system_clock,
    ):
        self.window_sec = float(window_sec)
        self.max_events = max(1, int(max_events))
        self.log_max = max(2, int(log_max))
        self._locks = locks or StripedLock()
        self._clock = clock
        self._histories: Dict[str, Deque[RequestEvent]] = {}
        self._log: List[LogEntry] = []
        self._log_lock = threading.Lock()

    # --- ingest ---------------------------------------------------------------

    def record(self, event: RequestEvent, *, log: bool = True) -> None:
        with self._locks.for_key(event.source_id):
            hist = self._histories.get(event.source_id)
            if hist is None:
                hist = deque(maxlen=self.max_events)
                self._histories[event.source_id] = hist
            if hist and event.timestamp < hist[-1].timestamp:
                # late arrival: keep the history ordered by timestamp
                ordered = sorted([*hist, event], key=lambda e: e.timestamp)
                self._histories[event.source_id] = deque(ordered, maxlen=self.max_events)
            else:
                hist.append(event)
        if log:
            self._append_log(LogEntry(event.timestamp, event.source_id, event.method, event.path))

    def log_request(
        self,
        method: str,
        path: str,
        source_id: str,
        credential: Optional[str] = None,
        ts: Optional[float] = None,
    ) -> None:
        now = self._clock() if ts is None else float(ts)
        self._append_log(LogEntry(now, source_id, method.upper(), path, credential))

    def _append_log(self, entry: LogEntry) -> None:
        with self._log_lock:
            self._log.append(entry)
            if len(self._log) > self.log_max:
                self._log = self._log[-(self.log_max // 2):]

    # --- reads (copy-on-read) -------------------------------------------------

    def history(self, source_id: str, since: Optional[float] = None) -> List[RequestEvent]:
        with self._locks.for_key(source_id):
            hist = self._histories.get(source_id)
            events = list(hist) if hist else []
        if since is not None:
            events = [e for e in events if e.timestamp > since]
        return events

    def sources(self) -> List[str]:
        return list(self._histories.keys())

    def recent_log(self, since: Optional[float] = None) -> List[LogEntry]:
        with self._log_lock:
            entries = list(self._log)
        if since is None:
            return entries
        return [e for e in entries if e.ts > since]

    def total_logged(self) -> int:
        with self._log_lock:
            return len(self._log)

    # --- eviction -------------------------------------------------------------

    def evict(self, now: Optional[float] = None) -> int:
        """Drop events older than the window; remove sources left empty. Returns removed source count."""
        now = self._clock() if now is None else now
        cutoff = now - self.window_sec
        removed = 0
        for source_id in self.sources():
            with self._locks.for_key(source_id):
                hist = self._histories.get(source_id)
                if hist is None:
                    continue
                while hist and hist[0].timestamp <= cutoff:
                    hist.popleft()
                if not hist:
                    del self._histories[source_id]
                    removed += 1
        if removed:
            logger.debug("recorder evicted %d idle sources", removed)
        return removed
