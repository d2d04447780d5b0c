from fastapi import APIRouter, Request

from trafficguard.core.settings import get_settings
from trafficguard.security.ip_utils import get_client_info

router = APIRouter()

_CONFIG_PREFIXES = ("APP_", "GUARD_", "ANOMALY_", "RATE_", "DISCOVERY_", "AUTO_TUNE_", "HISTORY_", "ALERT_")
_SECRET_KEYS = {"IP_SALT", "ALERT_WEBHOOK_URLS", "ADMIN_API_KEY"}


def _settings(request: Request):
    return getattr(request.app.state, "settings", None) or get_settings()


@router.get("/_debug/config")
def debug_config(request: Request):
    # only the tuning-relevant keys, never secrets
    values = _settings(request).model_dump()
    picked = {
        k: v for k, v in values.items()
        if k.startswith(_CONFIG_PREFIXES) and k not in _SECRET_KEYS
    }
    return {
        "config": picked,
        "note": "Do not expose this in production without auth.",
    }


@router.get("/version")
def version(request: Request):
    return {"app": "TrafficGuard", "version": _settings(request).APP_VERSION}


@router.get("/_debug/alerts")
async def list_recent_alerts(request: Request, limit: int = 50):
    am = getattr(request.app.state, "alerts", None)
    if am is None:
        return []
    return am.recent(limit=limit)


@router.get("/_debug/whoami")
async def whoami(request: Request):
    ip, ip_hash = get_client_info(request, _settings(request))
    return {"ip": ip, "hash": ip_hash}
