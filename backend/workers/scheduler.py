"""
Daily store health fan-out.

Beat fires once a day. The health date is fixed here and every queued
``check_store_health`` job carries it, so all organizations snapshot the
same day. Organizations without an active store get no job.
"""

import asyncio
from datetime import date, datetime

import structlog
from sqlalchemy import and_, func, select

from db.session import build_engine, session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()

ACTIVE_ORGANIZATION_STATUSES = ("active", "trial")
HEALTH_CHECK_TASK = "workers.monitoring.check_store_health"


async def _active_store_counts(database_url: str, statuses: tuple[str, ...]) -> list[tuple[str, int]]:
    """(organization_id, active store count) for every organization in ``statuses``, oldest first."""
    from db.models import Organization, Store

    engine = build_engine(database_url)
    try:
        async_session = session_factory(engine)
        async with async_session() as db:
            result = await db.execute(
                select(Organization.organization_id, func.count(Store.store_id).label("store_count"))
                .outerjoin(
                    Store,
                    and_(Store.organization_id == Organization.organization_id, Store.status == "active"),
                )
                .where(Organization.status.in_(statuses))
                .group_by(Organization.organization_id, Organization.created_at)
                .order_by(Organization.created_at)
            )
            return [(str(row.organization_id), row.store_count) for row in result.all()]
    finally:
        await engine.dispose()


@celery_app.task(
    name="workers.scheduler.dispatch_store_health_checks",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_store_health_checks(self, target_date: str | None = None, statuses: list[str] | None = None):
    """
    Queue one ``check_store_health`` job per organization that has active stores.
    """
    from core.config import get_settings

    run_id = self.request.id or "manual"
    selected_statuses = tuple(statuses or ACTIVE_ORGANIZATION_STATUSES)

    try:
        health_date = date.fromisoformat(target_date) if target_date else datetime.utcnow().date()
    except ValueError:
        logger.warning("health.dispatch_invalid_date", target_date=target_date, run_id=run_id)
        return {"status": "failed", "reason": "invalid_target_date", "target_date": target_date}

    try:
        counts = asyncio.run(_active_store_counts(get_settings().database_url, selected_statuses))
    except Exception as exc:  # noqa: BLE001
        logger.error("health.dispatch_failed", target_date=health_date.isoformat(), error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    dispatched: list[str] = []
    skipped: list[str] = []
    for organization_id, store_count in counts:
        if not store_count:
            skipped.append(organization_id)
            logger.info("health.dispatch_skipped", organization_id=organization_id, reason="no_active_stores")
            continue
        celery_app.send_task(
            HEALTH_CHECK_TASK,
            kwargs={"organization_id": organization_id, "target_date": health_date.isoformat()},
        )
        dispatched.append(organization_id)

    summary = {
        "status": "success",
        "target_date": health_date.isoformat(),
        "organization_count": len(counts),
        "dispatched_count": len(dispatched),
        "store_count": sum(store_count for _, store_count in counts),
        "skipped_organizations": skipped,
        "statuses": list(selected_statuses),
        "run_id": run_id,
    }
    logger.info("health.dispatch_complete", **summary)
    return summary
