# trafficguard/api/routes_decide.py
from __future__ import annotations
from dataclasses import asdict
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, constr

from trafficguard.api.deps import get_engine
from trafficguard.detection.bots import BotClass
from trafficguard.detection.events import BehaviorSignals, RequestEvent
from trafficguard.services.engine import ProtectionEngine, Verdict

router = APIRouter(prefix="/v1", tags=["decide"])

_Source = constr(strip_whitespace=True, min_length=1, max_length=128)
_Path = constr(min_length=1, max_length=2048)
_Method = constr(strip_whitespace=True, min_length=1, max_length=16)


class SignalsIn(BaseModel):
    mouse_movement: bool = False
    scroll_behavior: bool = False
    challenge_time_ms: float = Field(0.0, ge=0)

    def to_signals(self) -> BehaviorSignals:
        return BehaviorSignals(self.mouse_movement, self.scroll_behavior, self.challenge_time_ms)


class EventIn(BaseModel):
    source_id: _Source
    path: _Path
    method: _Method = "GET"
    timestamp: Optional[float] = Field(None, description="Unix epoch seconds; server clock when omitted")
    size: int = Field(0, ge=0)
    response_time_ms: float = Field(0.0, ge=0)
    status: int = 200
    headers: Dict[str, str] = Field(default_factory=dict)


class DecideIn(BaseModel):
    event: EventIn
    signals: Optional[SignalsIn] = None
    credential: Optional[str] = None


class ClassifyIn(BaseModel):
    source_id: _Source
    identifying_string: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    signals: Optional[SignalsIn] = None


class RateCheckIn(BaseModel):
    method: _Method = "GET"
    path: _Path
    source_id: _Source
    credential: Optional[str] = None


class AccessCheckIn(BaseModel):
    method: _Method = "GET"
    path: _Path
    key: Optional[str] = None


class FeedbackIn(BaseModel):
    source_id: _Source
    label: BotClass


class VerdictOut(BaseModel):
    action: str
    status: int
    source_id: str
    anomaly: dict
    classification: dict
    rate_limit: dict
    reasons: List[str]
    headers: Dict[str, str]


def verdict_out(v: Verdict) -> VerdictOut:
    return VerdictOut(
        action=v.action.value,
        status=v.status,
        source_id=v.source_id,
        anomaly=asdict(v.anomaly),
        classification=asdict(v.classification),
        rate_limit=asdict(v.rate_limit),
        reasons=v.reasons,
        headers=v.headers,
    )


@router.post("/decide", response_model=VerdictOut)
async def decide(body: DecideIn, engine: ProtectionEngine = Depends(get_engine)):
    e = body.event
    event = RequestEvent.create(
        source_id=e.source_id,
        path=e.path,
        method=e.method,
        timestamp=e.timestamp if e.timestamp is not None else engine.now(),
        size=e.size,
        response_time_ms=e.response_time_ms,
        status=e.status,
        headers=e.headers,
    )
    signals = body.signals.to_signals() if body.signals else None
    verdict = engine.evaluate(event, signals=signals, credential=body.credential)
    engine.publish_later(verdict.alerts)
    return verdict_out(verdict)


@router.get("/score/{source_id}")
async def score(source_id: str, engine: ProtectionEngine = Depends(get_engine)):
    return asdict(engine.scorer.score(source_id, record=False))


@router.post("/classify")
async def classify(body: ClassifyIn, engine: ProtectionEngine = Depends(get_engine)):
    signals = body.signals.to_signals() if body.signals else None
    result = engine.classifier.classify(body.source_id, body.identifying_string, body.headers, signals)
    return asdict(result)


@router.post("/classify/feedback")
async def classify_feedback(body: FeedbackIn, engine: ProtectionEngine = Depends(get_engine)):
    return asdict(engine.classification_feedback(body.source_id, body.label))


@router.post("/ratelimit/check")
async def ratelimit_check(body: RateCheckIn, response: Response, engine: ProtectionEngine = Depends(get_engine)):
    decision = engine.limiter.check_rate_limit(body.method, body.path, body.source_id, body.credential)
    for k, v in engine.limiter.rate_limit_headers(decision).items():
        response.headers[k] = v
    return asdict(decision)


@router.post("/access/check")
async def access_check(body: AccessCheckIn, engine: ProtectionEngine = Depends(get_engine)):
    return asdict(engine.limiter.check_endpoint_access(body.method, body.path, body.key))
