from __future__ import annotations
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from trafficguard.api.deps import get_engine
from trafficguard.services.engine import ProtectionEngine

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/anomaly")
async def anomaly_stats(top: int = Query(5, ge=1, le=100), recent: int = Query(20, ge=0, le=1000),
                        engine: ProtectionEngine = Depends(get_engine)):
    out = engine.scorer.stats(top=top)
    out["recent_anomalies"] = [asdict(a) for a in engine.scorer.recent_anomalies(recent)]
    return out


@router.get("/bots")
async def bot_stats(engine: ProtectionEngine = Depends(get_engine)):
    out = engine.classifier.stats()
    out["recent_classifications"] = [asdict(c) for c in out["recent_classifications"]]
    out["bad_bot_cutoff"] = engine.classifier.bad_bot_cutoff
    return out


@router.get("/protection")
async def protection_stats(engine: ProtectionEngine = Depends(get_engine)):
    out = engine.limiter.stats()
    out["active_counters"] = engine.limiter.counter_count()
    return out


@router.get("/tuning")
async def tuning_stats(engine: ProtectionEngine = Depends(get_engine)):
    out = engine.tuner.stats()
    out["thresholds"] = [t.snapshot() for t in engine.thresholds.all()]
    return out


@router.get("/usage")
async def usage_stats(engine: ProtectionEngine = Depends(get_engine)):
    return engine.limiter.usage_analytics()
