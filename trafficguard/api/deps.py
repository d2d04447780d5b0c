from fastapi import HTTPException, Request

from trafficguard.protection.credentials import ADMIN_SCOPE
from trafficguard.services.engine import ProtectionEngine


def get_engine(request: Request) -> ProtectionEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not initialised")
    return engine


# Admin guard: X-API-Key must carry the admin scope
async def require_admin(request: Request):
    engine = get_engine(request)
    key = request.headers.get("X-API-Key")
    if not key:
        raise HTTPException(status_code=401, detail="API key required")
    check = engine.credentials.validate(key, required_scope=ADMIN_SCOPE)
    if not check.valid:
        raise HTTPException(status_code=403, detail=check.error)
    return check.credential
