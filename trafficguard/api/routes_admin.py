# trafficguard/api/routes_admin.py
from __future__ import annotations
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, constr

from trafficguard.api.deps import get_engine, require_admin
from trafficguard.protection.endpoints import EndpointConfig
from trafficguard.services.engine import ProtectionEngine
from trafficguard.tuning.autotune import Direction, RulePerformance

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

_Name = constr(strip_whitespace=True, min_length=1, max_length=128)


class FieldRuleIn(BaseModel):
    required: bool = False
    type: Optional[str] = None
    min_length: Optional[int] = Field(None, ge=0)
    max_length: Optional[int] = Field(None, ge=0)


class EndpointIn(BaseModel):
    path: constr(min_length=1, max_length=2048)
    method: str = "*"
    rate_limit: int = Field(100, ge=1)
    burst_size: int = Field(200, ge=1)
    requires_auth: bool = False
    required_scopes: List[str] = Field(default_factory=list)
    schema_: Optional[Dict[str, FieldRuleIn]] = Field(None, alias="schema")
    enabled: bool = True


class EndpointUpdate(BaseModel):
    rate_limit: Optional[int] = Field(None, ge=1)
    burst_size: Optional[int] = Field(None, ge=1)
    requires_auth: Optional[bool] = None
    required_scopes: Optional[List[str]] = None
    schema_: Optional[Dict[str, FieldRuleIn]] = Field(None, alias="schema")
    enabled: Optional[bool] = None


class SchemaCheckIn(BaseModel):
    method: str = "POST"
    path: str
    body: Optional[Dict[str, Any]] = None


class CredentialIn(BaseModel):
    name: _Name
    scopes: List[str] = Field(default_factory=lambda: ["read"])
    rate_limit: Optional[int] = Field(None, ge=1)
    expires_in_hours: Optional[float] = Field(None, gt=0)


class RotateIn(BaseModel):
    expires_in_hours: Optional[float] = Field(None, gt=0)


class FalsePositiveIn(BaseModel):
    rule_id: _Name
    source_id: _Name
    path: str = ""
    identifying_string: str = ""
    reason: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class VerifyIn(BaseModel):
    is_verified: bool


class AdjustIn(BaseModel):
    direction: Direction


class ThresholdIn(BaseModel):
    threshold: float = Field(..., ge=0, le=100)


def _schema_dict(schema: Optional[Dict[str, FieldRuleIn]]):
    if schema is None:
        return None
    return {name: rule.model_dump() for name, rule in schema.items()}


def _perf_out(p: RulePerformance, engine: ProtectionEngine) -> dict:
    th = engine.tuner.threshold(p.rule_id)
    d = asdict(p)
    d["false_positive_rate"] = round(p.false_positive_rate, 2)
    d["threshold"] = th.snapshot() if th else None
    return d


# --- endpoints ----------------------------------------------------------------

@router.get("/endpoints")
async def list_endpoints(engine: ProtectionEngine = Depends(get_engine)):
    return [ep.to_dict() for ep in engine.limiter.list_endpoints()]


@router.post("/endpoints", status_code=status.HTTP_201_CREATED)
async def add_endpoint(body: EndpointIn, engine: ProtectionEngine = Depends(get_engine)):
    config = EndpointConfig(
        path=body.path,
        method=body.method,
        rate_limit=body.rate_limit,
        burst_size=body.burst_size,
        requires_auth=body.requires_auth,
        required_scopes=body.required_scopes,
        schema=_schema_dict(body.schema_),
        enabled=body.enabled,
    )
    return engine.limiter.add_endpoint(config).to_dict()


@router.patch("/endpoints")
async def update_endpoint(body: EndpointUpdate, key: str = Query(..., description="METHOD:path"),
                          engine: ProtectionEngine = Depends(get_engine)):
    changes = body.model_dump(exclude_none=True, exclude={"schema_"})
    if body.schema_ is not None:
        changes["schema"] = _schema_dict(body.schema_)
    updated = engine.limiter.update_endpoint(key, **changes)
    if updated is None:
        raise HTTPException(status_code=404, detail="endpoint not found")
    return updated.to_dict()


@router.delete("/endpoints")
async def remove_endpoint(key: str = Query(...), engine: ProtectionEngine = Depends(get_engine)):
    if not engine.limiter.remove_endpoint(key):
        raise HTTPException(status_code=404, detail="endpoint not found")
    return {"ok": True, "key": key}


@router.post("/endpoints/enable")
async def enable_endpoint(key: str = Query(...), engine: ProtectionEngine = Depends(get_engine)):
    if not engine.limiter.set_endpoint_enabled(key, True):
        raise HTTPException(status_code=404, detail="endpoint not found")
    return {"ok": True, "key": key, "enabled": True}


@router.post("/endpoints/disable")
async def disable_endpoint(key: str = Query(...), engine: ProtectionEngine = Depends(get_engine)):
    if not engine.limiter.set_endpoint_enabled(key, False):
        raise HTTPException(status_code=404, detail="endpoint not found")
    return {"ok": True, "key": key, "enabled": False}


@router.post("/endpoints/discover")
async def discover_endpoints(register: bool = False, engine: ProtectionEngine = Depends(get_engine)):
    proposals = engine.limiter.discover_endpoints()
    if register:
        for p in proposals:
            engine.limiter.add_endpoint(p)
    return {"registered": register, "proposals": [p.to_dict() for p in proposals]}


@router.post("/endpoints/validate")
async def validate_schema(body: SchemaCheckIn, engine: ProtectionEngine = Depends(get_engine)):
    valid, errors = engine.limiter.validate_schema(body.method, body.path, body.body)
    return {"valid": valid, "errors": errors}


# --- credentials --------------------------------------------------------------

@router.post("/credentials", status_code=status.HTTP_201_CREATED)
async def issue_credential(body: CredentialIn, engine: ProtectionEngine = Depends(get_engine)):
    cred = engine.credentials.issue(body.name, body.scopes, body.rate_limit, body.expires_in_hours)
    # the full key is only ever returned here
    return asdict(cred)


@router.get("/credentials")
async def list_credentials(engine: ProtectionEngine = Depends(get_engine)):
    return [c.public() for c in engine.credentials.all()]


@router.delete("/credentials/{cred_id}")
async def delete_credential(cred_id: str, engine: ProtectionEngine = Depends(get_engine)):
    if not engine.credentials.delete(cred_id):
        raise HTTPException(status_code=404, detail="credential not found")
    return {"ok": True}


@router.post("/credentials/{cred_id}/enable")
async def enable_credential(cred_id: str, engine: ProtectionEngine = Depends(get_engine)):
    if not engine.credentials.set_enabled(cred_id, True):
        raise HTTPException(status_code=404, detail="credential not found")
    return {"ok": True, "enabled": True}


@router.post("/credentials/{cred_id}/disable")
async def disable_credential(cred_id: str, engine: ProtectionEngine = Depends(get_engine)):
    if not engine.credentials.set_enabled(cred_id, False):
        raise HTTPException(status_code=404, detail="credential not found")
    return {"ok": True, "enabled": False}


@router.post("/credentials/{cred_id}/rotate", status_code=status.HTTP_201_CREATED)
async def rotate_credential(cred_id: str, body: Optional[RotateIn] = None,
                            engine: ProtectionEngine = Depends(get_engine)):
    new = engine.credentials.rotate(cred_id, body.expires_in_hours if body else None)
    if new is None:
        raise HTTPException(status_code=404, detail="credential not found")
    return asdict(new)


# --- rules & tuning -----------------------------------------------------------

@router.get("/rules")
async def list_rules(engine: ProtectionEngine = Depends(get_engine)):
    return [_perf_out(p, engine) for p in engine.tuner.rule_performance()]


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: str, engine: ProtectionEngine = Depends(get_engine)):
    perf = engine.tuner.performance(rule_id)
    if perf is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return _perf_out(perf, engine)


@router.post("/rules/{rule_id}/adjust")
async def adjust_rule(rule_id: str, body: AdjustIn, engine: ProtectionEngine = Depends(get_engine)):
    if engine.tuner.performance(rule_id) is None:
        raise HTTPException(status_code=404, detail="rule not found")
    action = engine.tuner.adjust_rule_threshold(rule_id, body.direction)
    if action is None:
        # already at the end of the sensitivity scale
        return {"changed": False, "threshold": engine.tuner.threshold(rule_id).snapshot()}
    return {"changed": True, "action": asdict(action)}


@router.put("/anomaly/threshold")
async def set_anomaly_threshold(body: ThresholdIn, engine: ProtectionEngine = Depends(get_engine)):
    engine.scorer.set_threshold(body.threshold)
    return {"base_threshold": body.threshold, "effective_threshold": engine.scorer.threshold}


@router.post("/false-positives", status_code=status.HTTP_201_CREATED)
async def report_false_positive(body: FalsePositiveIn, engine: ProtectionEngine = Depends(get_engine)):
    report_id = engine.report_false_positive(
        body.rule_id, body.source_id, body.path,
        identifying_string=body.identifying_string, reason=body.reason, headers=body.headers,
    )
    if report_id is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return {"id": report_id}


@router.get("/false-positives")
async def list_false_positives(rule_id: Optional[str] = None, limit: int = Query(50, ge=1, le=1000),
                               engine: ProtectionEngine = Depends(get_engine)):
    return [asdict(r) for r in engine.tuner.false_positive_reports(rule_id, limit)]


@router.post("/false-positives/{report_id}/verify")
async def verify_false_positive(report_id: str, body: VerifyIn, engine: ProtectionEngine = Depends(get_engine)):
    if not engine.tuner.verify_false_positive(report_id, body.is_verified):
        raise HTTPException(status_code=404, detail="report not found or already reviewed")
    return {"ok": True, "verified": body.is_verified}


@router.post("/autotune/enable")
async def enable_autotune(engine: ProtectionEngine = Depends(get_engine)):
    engine.tuner.set_auto_tune(True)
    return {"auto_tune_enabled": True}


@router.post("/autotune/disable")
async def disable_autotune(engine: ProtectionEngine = Depends(get_engine)):
    engine.tuner.set_auto_tune(False)
    return {"auto_tune_enabled": False}


@router.post("/autotune/run")
async def run_autotune(engine: ProtectionEngine = Depends(get_engine)):
    report = engine.run_auto_tune()
    return {
        "tuned": report.tuned,
        "recommendations": [_perf_out(p, engine) for p in report.recommendations],
        "actions": [asdict(a) for a in report.actions],
    }


@router.get("/tuning/history")
async def tuning_history(limit: int = Query(20, ge=1, le=1000), engine: ProtectionEngine = Depends(get_engine)):
    return [asdict(a) for a in engine.tuner.tuning_history(limit)]


@router.post("/tuning/{action_id}/revert")
async def revert_tuning(action_id: str, engine: ProtectionEngine = Depends(get_engine)):
    if not engine.tuner.revert_action(action_id):
        raise HTTPException(status_code=404, detail="action not found or already reverted")
    return {"ok": True}
