from fastapi import APIRouter, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, REGISTRY

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request):
    # export the same registry that was pinned on app.state at startup
    sm = getattr(request.app.state, "trafficguard_metrics", None)
    reg = sm["registry"] if isinstance(sm, dict) and "registry" in sm else REGISTRY
    engine = getattr(request.app.state, "engine", None)
    if isinstance(sm, dict) and engine is not None and "sources" in sm:
        sm["sources"].set(len(engine.recorder.sources()))
    return Response(content=generate_latest(reg), media_type=CONTENT_TYPE_LATEST)
