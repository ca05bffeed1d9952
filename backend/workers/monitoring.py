"""
Monitoring Workers — Escalation sweep, daily store health, call placement.

  1. Escalation sweep: climb open alerts whose time in status crossed a rule
  2. Store health: snapshot every store of an organization, raise/resolve alerts
  3. AI call placement: the fire-and-forget half of the voice dispatcher

Schedule: See celery_app.py beat_schedule
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import date, datetime

import structlog
from sqlalchemy import select

from alerts.events import alert_event, escalation_event, publish_events
from alerts.notifier import build_notifier
from db.session import build_engine, session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _publish(events_by_org: dict[str, list[dict]]) -> int:
    """Best-effort fan-out to Redis; a publish failure never fails the job."""
    total = 0
    for organization_id, events in events_by_org.items():
        try:
            total += await publish_events(organization_id, events)
        except Exception as exc:  # noqa: BLE001
            logger.warning("events.publish_failed", organization_id=organization_id, error=str(exc))
    return total


@celery_app.task(
    name="workers.monitoring.run_escalation_sweep",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def run_escalation_sweep(self):
    """
    Periodic job: evaluate every open alert against the escalation rules.

    No arguments; safe to run at any cadence since each escalation is a
    guarded level bump.
    """
    run_id = self.request.id or "manual"
    logger.info("escalation.sweep_started", run_id=run_id)

    async def _sweep():
        from alerts.escalation import EscalationEngine
        from core.config import get_settings
        from db.models import Store
        from voice.dispatcher import VoiceCallDispatcher

        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async_session = session_factory(engine)

            async with async_session() as db:
                escalation_engine = EscalationEngine(db, notifier=build_notifier(), dispatcher=VoiceCallDispatcher(db))
                result = await escalation_engine.monitor_and_escalate()

                store_ids = {uuid.UUID(e["store_id"]) for e in result.escalations}
                org_by_store: dict[str, str] = {}
                if store_ids:
                    rows = await db.execute(
                        select(Store.store_id, Store.organization_id).where(Store.store_id.in_(store_ids))
                    )
                    org_by_store = {str(r.store_id): str(r.organization_id) for r in rows.all()}

            events_by_org: dict[str, list[dict]] = defaultdict(list)
            for escalation in result.escalations:
                organization_id = org_by_store.get(escalation["store_id"])
                if organization_id:
                    events_by_org[organization_id].append(escalation_event(escalation))
            subscribers = await _publish(events_by_org)

            summary = {
                "status": "success",
                "alerts_checked": result.checked,
                "escalations_created": len(result.escalations),
                "failures": len(result.failures),
                "subscribers_notified": subscribers,
                "run_id": run_id,
            }
            logger.info("escalation.sweep_job_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001
        logger.error("escalation.sweep_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.monitoring.check_store_health",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def check_store_health(self, organization_id: str, target_date: str | None = None):
    """
    Daily job: snapshot every active store of an organization, then raise
    alerts for yellow/red KPIs and resolve alerts whose KPI recovered.
    """
    run_id = self.request.id or "manual"
    logger.info("health.check_started", organization_id=organization_id, run_id=run_id)

    async def _check():
        from alerts.manager import AlertManager
        from core.config import get_settings
        from health.threshold_checker import ThresholdChecker

        settings = get_settings()
        snapshot_date = date.fromisoformat(target_date) if target_date else datetime.utcnow().date()
        engine = build_engine(settings.database_url)
        try:
            async_session = session_factory(engine)

            async with async_session() as db:
                health = await ThresholdChecker(db).check_all_stores_health(
                    snapshot_date, organization_id=uuid.UUID(organization_id)
                )
                manager = AlertManager(db)

                created: list[dict] = []
                resolved = 0
                failures = 0
                for store_result in health["results"]:
                    if not store_result["success"]:
                        failures += 1
                        continue
                    for item in await manager.process_store_kpis(uuid.UUID(store_result["store_id"]), snapshot_date):
                        if not item["success"]:
                            failures += 1
                        elif item.get("resolved"):
                            resolved += 1
                        elif item["created"]:
                            created.append(item["alert"])

            subscribers = await _publish({organization_id: [alert_event(a) for a in created]})

            summary = {
                "status": "success",
                "organization_id": organization_id,
                "snapshot_date": snapshot_date.isoformat(),
                "stores_checked": len(health["results"]),
                "stores_requiring_action": health["overview"]["stores_requiring_action"],
                "alerts_created": len(created),
                "alerts_resolved": resolved,
                "failures": failures,
                "subscribers_notified": subscribers,
                "run_id": run_id,
            }
            logger.info("health.check_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_check())
    except Exception as exc:  # noqa: BLE001
        logger.error("health.check_failed", organization_id=organization_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.monitoring.place_ai_call",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
    acks_late=True,
)
def place_ai_call(self, ai_call_id: str):
    """
    Place a scheduled AI call. Provider failures are recorded on the AiCall
    (call_status=failed) by the dispatcher; only infrastructure errors retry.
    """

    async def _place():
        from core.config import get_settings
        from voice.dispatcher import VoiceCallDispatcher

        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async_session = session_factory(engine)
            async with async_session() as db:
                call = await VoiceCallDispatcher(db).place_call(uuid.UUID(ai_call_id))
                return {
                    "status": "success",
                    "ai_call_id": ai_call_id,
                    "call_status": call.call_status,
                    "provider_call_id": call.provider_call_id,
                }
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_place())
    except Exception as exc:  # noqa: BLE001
        logger.error("voice.place_failed", ai_call_id=ai_call_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
