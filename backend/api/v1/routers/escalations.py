"""
Escalations Router — sweep trigger and escalation lifecycle.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from alerts.escalation import EscalationEngine, escalation_to_dict
from api.deps import get_escalation_engine
from api.responses import ok

router = APIRouter(prefix="/api/v1/escalations", tags=["escalations"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ManualEscalationRequest(BaseModel):
    alert_id: UUID
    to_level: int = Field(..., ge=1, le=4)
    reason: str = Field(..., min_length=1)
    escalated_by: str = Field(..., min_length=1, max_length=255)


class AcknowledgeEscalationRequest(BaseModel):
    acknowledged_by: str = Field(..., min_length=1, max_length=255)


class ResolveEscalationRequest(BaseModel):
    resolution: str = Field(..., min_length=1)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/monitor")
async def run_escalation_sweep(engine: EscalationEngine = Depends(get_escalation_engine)):
    """Run one escalation sweep now (normally driven by Celery beat)."""
    result = await engine.monitor_and_escalate()
    return {"success": not result.failures, "data": result.to_dict()}


@router.get("/pending")
async def list_pending_escalations(engine: EscalationEngine = Depends(get_escalation_engine)):
    return ok([escalation_to_dict(e) for e in await engine.get_pending_escalations()])


@router.post("/manual")
async def escalate_manually(
    body: ManualEscalationRequest,
    engine: EscalationEngine = Depends(get_escalation_engine),
):
    escalation = await engine.escalate_manually(body.alert_id, body.to_level, body.reason, body.escalated_by)
    return ok(escalation_to_dict(escalation))


@router.post("/{escalation_id}/acknowledge")
async def acknowledge_escalation(
    escalation_id: UUID,
    body: AcknowledgeEscalationRequest,
    engine: EscalationEngine = Depends(get_escalation_engine),
):
    escalation = await engine.acknowledge_escalation(escalation_id, body.acknowledged_by)
    return ok(escalation_to_dict(escalation))


@router.post("/{escalation_id}/resolve")
async def resolve_escalation(
    escalation_id: UUID,
    body: ResolveEscalationRequest,
    engine: EscalationEngine = Depends(get_escalation_engine),
):
    escalation = await engine.resolve_escalation(escalation_id, body.resolution)
    return ok(escalation_to_dict(escalation))
