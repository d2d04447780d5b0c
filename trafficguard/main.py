from dotenv import load_dotenv
load_dotenv()  # load .env before settings are read anywhere in the import chain

# trafficguard/main.py
import logging
import sys
from typing import Optional

from fastapi import FastAPI
from starlette.responses import JSONResponse

from trafficguard.alerts import AlertManager, build_sinks
from trafficguard.api.routes_admin import router as admin_router
from trafficguard.api.routes_debug import router as debug_router
from trafficguard.api.routes_decide import router as decide_router
from trafficguard.api.routes_metrics import router as metrics_router
from trafficguard.api.routes_stats import router as stats_router
from trafficguard.core.concurrency import Clock, system_clock
from trafficguard.core.settings import Settings, get_settings
from trafficguard.metrics import get_metrics
from trafficguard.security.middleware_guard import GuardMiddleware
from trafficguard.services.engine import ProtectionEngine, build_engine
from trafficguard.services.scheduler import build_scheduler

logger = logging.getLogger("trafficguard")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[ProtectionEngine] = None,
    clock: Clock = system_clock,
    start_scheduler: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title="TrafficGuard", version=settings.APP_VERSION)
    app.state.settings = settings

    # ---- metrics: built once, pinned on app.state ----
    metrics = get_metrics()
    app.state.trafficguard_metrics = metrics

    # ---- alerts: one manager, sinks chosen by ALERT_SINKS ----
    alerts = AlertManager(
        cooldown_seconds=settings.ALERT_COOLDOWN_SECONDS,
        keep_recent=settings.ALERT_KEEP_RECENT,
        metrics=metrics,
        clock=clock,
    )
    for sink in build_sinks(settings):
        alerts.register(sink)
    app.state.alerts = alerts

    if engine is None:
        engine = build_engine(settings, clock=clock, metrics=metrics, alerts=alerts)
    app.state.engine = engine

    @app.get("/health")
    def health():
        return JSONResponse({"status": "ok"})

    app.include_router(metrics_router)
    app.include_router(debug_router)
    app.include_router(decide_router)
    app.include_router(admin_router)
    app.include_router(stats_router)

    @app.on_event("startup")
    async def _startup():
        if not start_scheduler:
            return
        app.state.scheduler = build_scheduler(
            engine,
            sweep_interval_sec=settings.SWEEP_INTERVAL_SEC,
            auto_tune_interval_sec=settings.AUTO_TUNE_INTERVAL_SEC,
        )
        app.state.scheduler.start()
        logger.info("trafficguard %s started env=%s", settings.APP_VERSION, settings.APP_ENV)

    @app.on_event("shutdown")
    async def _shutdown():
        sch = getattr(app.state, "scheduler", None)
        if sch:
            sch.shutdown(wait=False)
        await engine.drain()

    # guards the hosting app's own routes; excluded paths bypass it
    app.add_middleware(GuardMiddleware, settings=settings)
    return app


app = create_app()


# development run: `python -m trafficguard.main`
if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    _s = get_settings()
    uvicorn.run("trafficguard.main:app", host=_s.HOST, port=_s.PORT, log_level=_s.LOG_LEVEL.lower())
