from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


def normalize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Lower-case header names; later duplicates win."""
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


@dataclass(frozen=True)
class RequestEvent:
    """One inbound request as seen by the gateway. Timestamps are epoch seconds."""
    source_id: str
    path: str
    method: str
    timestamp: float
    size: int = 0
    response_time_ms: float = 0.0
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        source_id: str,
        path: str,
        method: str,
        timestamp: float,
        size: int = 0,
        response_time_ms: float = 0.0,
        status: int = 200,
        headers: Optional[Mapping[str, str]] = None,
    ) -> "RequestEvent":
        return cls(
            source_id=source_id,
            path=path or "/",
            method=(method or "GET").upper(),
            timestamp=float(timestamp),
            size=max(0, int(size)),
            response_time_ms=max(0.0, float(response_time_ms)),
            status=int(status),
            headers=normalize_headers(headers),
        )

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")


@dataclass(frozen=True)
class BehaviorSignals:
    """Client-side signals forwarded from the challenge widget."""
    mouse_movement: bool = False
    scroll_behavior: bool = False
    challenge_time_ms: float = 0.0


@dataclass(frozen=True)
class LogEntry:
    """Global request log row used for endpoint discovery and volume stats."""
    ts: float
    source_id: str
    method: str
    path: str
    credential: Optional[str] = None
