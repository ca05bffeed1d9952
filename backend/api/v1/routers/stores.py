"""
Stores Router — per-store health, escalation and call history, plus the
chain-wide dashboard.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from alerts.escalation import EscalationEngine, escalation_to_dict
from alerts.manager import AlertManager, alert_to_dict
from api.deps import get_alert_manager, get_call_dispatcher, get_escalation_engine, get_threshold_checker
from api.responses import ok
from health.threshold_checker import ThresholdChecker
from voice.dispatcher import VoiceCallDispatcher, ai_call_to_dict

router = APIRouter(prefix="/api/v1/stores", tags=["stores"])
dashboard_router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


# ─── Store Endpoints ────────────────────────────────────────────────────────


@router.get("/{store_id}/health")
async def get_store_health(
    store_id: UUID,
    target_date: date | None = Query(None, alias="date"),
    checker: ThresholdChecker = Depends(get_threshold_checker),
):
    """Compute (and store) the store's health snapshot for a day."""
    health = await checker.check_store_health(store_id, target_date)
    if health is None:
        return ok(None, message="No KPI metrics recorded for this store and date")
    return ok(health.to_dict())


@router.get("/{store_id}/alerts")
async def get_store_alerts(
    store_id: UUID,
    manager: AlertManager = Depends(get_alert_manager),
):
    return ok([alert_to_dict(a) for a in await manager.get_active_alerts(store_id)])


@router.get("/{store_id}/escalations")
async def get_store_escalations(
    store_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    engine: EscalationEngine = Depends(get_escalation_engine),
):
    return ok([escalation_to_dict(e) for e in await engine.get_store_escalations(store_id, limit)])


@router.get("/{store_id}/calls")
async def get_store_calls(
    store_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    return ok([ai_call_to_dict(c) for c in await dispatcher.get_call_history(store_id, limit)])


# ─── Dashboard Endpoints ────────────────────────────────────────────────────


@dashboard_router.get("/overview")
async def dashboard_overview(
    target_date: date | None = Query(None, alias="date"),
    checker: ThresholdChecker = Depends(get_threshold_checker),
):
    """Chain-wide counts from stored snapshots."""
    return ok(await checker.get_dashboard_overview(target_date))


@dashboard_router.get("/action-required")
async def stores_requiring_action(
    target_date: date | None = Query(None, alias="date"),
    checker: ThresholdChecker = Depends(get_threshold_checker),
):
    return ok(await checker.get_stores_requiring_action(target_date))


@dashboard_router.post("/check-all")
async def check_all_stores(
    target_date: date | None = Query(None, alias="date"),
    organization_id: UUID | None = None,
    checker: ThresholdChecker = Depends(get_threshold_checker),
):
    """Recompute snapshots for every active store."""
    return ok(await checker.check_all_stores_health(target_date, organization_id=organization_id))
