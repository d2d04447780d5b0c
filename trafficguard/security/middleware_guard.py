# trafficguard/security/middleware_guard.py
import logging
from typing import List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse

from trafficguard.alerts import KIND_GUARD_BLOCK
from trafficguard.core.settings import Settings, get_settings
from trafficguard.detection.events import RequestEvent
from trafficguard.security.ip_utils import get_client_info
from trafficguard.services.engine import Action

logger = logging.getLogger(__name__)


class GuardMiddleware(BaseHTTPMiddleware):
    """
    Runs every inbound request of the hosting app through the protection
    engine found on app.state.engine:
      - GUARD_EXCLUDE_PATHS bypass the engine entirely (metrics, admin, ...)
      - block/challenge verdicts short-circuit with the verdict's status and
        raise a guard_block alert
      - allowed responses carry the X-RateLimit-* headers
    """
    def __init__(self, app, *, settings: Optional[Settings] = None):
        super().__init__(app)
        self.settings = settings or get_settings()
        self.enabled = self.settings.GUARD_ENABLED
        self.excluded_paths: List[str] = self.settings.guard_exclude_paths()

    def _is_excluded(self, path: str) -> bool:
        for p in self.excluded_paths:
            if path == p or path.startswith(p + "/"):
                return True
        return False

    async def dispatch(self, request, call_next):
        path = request.url.path
        if not self.enabled or self._is_excluded(path):
            return await call_next(request)

        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return await call_next(request)

        _ip, source_id = get_client_info(request, self.settings)
        try:
            size = int(request.headers.get("content-length") or 0)
        except ValueError:
            size = 0
        event = RequestEvent.create(
            source_id=source_id,
            path=path,
            method=request.method,
            timestamp=engine.now(),
            size=size,
            headers=dict(request.headers),
        )
        verdict = engine.evaluate(event, credential=request.headers.get("x-api-key"))
        alerts = list(verdict.alerts)

        if verdict.action is not Action.ALLOW:
            status = verdict.status if verdict.status == 429 else self.settings.GUARD_BLOCK_STATUS
            if engine.alerts is not None:
                alerts.append(engine.alerts.make_payload(
                    KIND_GUARD_BLOCK, source_id, path, f"guard_{verdict.action.value}",
                    {"status": status, "method": request.method},
                ))
            engine.publish_later(alerts)
            text = "Rate limit exceeded" if status == 429 else f"Blocked by guard ({verdict.action.value})"
            resp = PlainTextResponse(text, status_code=status)
            resp.headers["X-TrafficGuard-Action"] = verdict.action.value
            for k, v in verdict.headers.items():
                resp.headers[k] = v
            return resp

        engine.publish_later(alerts)
        response = await call_next(request)
        for k, v in verdict.headers.items():
            response.headers[k] = v
        return response
