"""
Alerts Router — Alert lifecycle endpoints.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from alerts.manager import AlertManager, alert_to_dict
from api.deps import get_alert_manager
from api.responses import batch, ok

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(..., min_length=1, max_length=255)


class ResolveRequest(BaseModel):
    resolved_by: str | None = None


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/active")
async def list_active_alerts(
    store_id: UUID,
    manager: AlertManager = Depends(get_alert_manager),
):
    """Open alerts for a store, most escalated first."""
    return ok([alert_to_dict(a) for a in await manager.get_active_alerts(store_id)])


@router.get("/overdue")
async def list_overdue_alerts(manager: AlertManager = Depends(get_alert_manager)):
    return ok([alert_to_dict(a) for a in await manager.get_overdue_alerts()])


@router.post("/process/{store_id}")
async def process_store_kpis(
    store_id: UUID,
    metric_date: date | None = Query(None, alias="date"),
    manager: AlertManager = Depends(get_alert_manager),
):
    """Raise alerts for a day's yellow/red KPIs and resolve recovered ones."""
    return batch(await manager.process_store_kpis(store_id, metric_date))


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: UUID,
    body: AcknowledgeRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    alert = await manager.acknowledge_alert(alert_id, body.acknowledged_by)
    return ok(alert_to_dict(alert))


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    alert_id: UUID,
    body: ResolveRequest | None = None,
    manager: AlertManager = Depends(get_alert_manager),
):
    """Resolve an alert and complete its open tasks."""
    alert = await manager.resolve_alert(alert_id, resolved_by=body.resolved_by if body else None)
    return ok(alert_to_dict(alert))
