"""
Threshold Checker — aggregates a store's KPI statuses into a daily health snapshot.

Rules:
  - Any red KPI, or two or more yellow KPIs, makes the store red
  - Exactly one yellow KPI makes the store yellow
  - Otherwise green
Health score is the mean of per-KPI weights (green 100, yellow 60, red 0).
Levels 3–4 are never set here; only the escalation engine reaches them.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import StoreHealthError
from db.models import KpiCategory, KpiDefinition, KpiMetric, KpiStatus, Store, StoreHealthSnapshot
from db.payloads import CriticalKpi, SnapshotDetails

logger = structlog.get_logger()

STATUS_WEIGHTS = {
    KpiStatus.GREEN.value: 100,
    KpiStatus.YELLOW.value: 60,
    KpiStatus.RED.value: 0,
}


@dataclass
class StatusCounts:
    red: int = 0
    yellow: int = 0
    green: int = 0

    @property
    def total(self) -> int:
        return self.red + self.yellow + self.green


@dataclass
class HealthCheck:
    snapshot: StoreHealthSnapshot
    metrics: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"snapshot": snapshot_to_dict(self.snapshot), "metrics": self.metrics}


def snapshot_to_dict(snapshot: StoreHealthSnapshot) -> dict[str, Any]:
    return {
        "snapshot_id": str(snapshot.snapshot_id),
        "store_id": str(snapshot.store_id),
        "snapshot_date": snapshot.snapshot_date.isoformat(),
        "overall_status": snapshot.overall_status,
        "health_score": snapshot.health_score,
        "red_kpi_count": snapshot.red_kpi_count,
        "yellow_kpi_count": snapshot.yellow_kpi_count,
        "green_kpi_count": snapshot.green_kpi_count,
        "escalation_level": snapshot.escalation_level,
        "action_required": snapshot.action_required,
        "summary": snapshot.summary,
        "metadata": snapshot.snapshot_metadata,
    }


def count_by_status(statuses: list[str]) -> StatusCounts:
    counts = StatusCounts()
    for status in statuses:
        if status == KpiStatus.RED:
            counts.red += 1
        elif status == KpiStatus.YELLOW:
            counts.yellow += 1
        else:
            counts.green += 1
    return counts


def determine_overall_status(counts: StatusCounts) -> str:
    """Two simultaneous yellow KPIs count as a red incident."""
    if counts.red > 0 or counts.yellow >= 2:
        return KpiStatus.RED.value
    if counts.yellow == 1:
        return KpiStatus.YELLOW.value
    return KpiStatus.GREEN.value


def calculate_health_score(counts: StatusCounts) -> float:
    if counts.total == 0:
        return 100.0
    total_score = (
        counts.green * STATUS_WEIGHTS["green"]
        + counts.yellow * STATUS_WEIGHTS["yellow"]
        + counts.red * STATUS_WEIGHTS["red"]
    )
    return round(total_score / counts.total, 2)


def determine_escalation_level(counts: StatusCounts) -> int:
    if counts.red > 0 or counts.yellow >= 2:
        return 2
    if counts.yellow == 1:
        return 1
    return 0


def is_action_required(counts: StatusCounts) -> bool:
    return counts.red > 0 or counts.yellow > 1


def identify_critical_kpis(rows: list[tuple[KpiMetric, KpiDefinition]]) -> list[CriticalKpi]:
    """Any red KPI, plus yellow labor KPIs (labor is the most urgent category)."""
    return [
        CriticalKpi(
            kpi_code=definition.kpi_code,
            kpi_name=definition.name,
            status=metric.status,
            variance_pct=round(metric.variance_pct, 2),
        )
        for metric, definition in rows
        if metric.status == KpiStatus.RED
        or (metric.status == KpiStatus.YELLOW and definition.category == KpiCategory.LABOR)
    ]


def generate_summary(rows: list[tuple[KpiMetric, KpiDefinition]], counts: StatusCounts, overall_status: str) -> str:
    red_rows = [(m, d) for m, d in rows if m.status == KpiStatus.RED]
    yellow_rows = [(m, d) for m, d in rows if m.status == KpiStatus.YELLOW]

    if overall_status == KpiStatus.GREEN:
        return f"Store is healthy. All {counts.total} KPIs are tracking within normal ranges."

    if overall_status == KpiStatus.YELLOW:
        metric, definition = yellow_rows[0]
        direction = "below" if metric.variance_pct < 0 else "above"
        return (
            f"Store has one area of concern. {definition.name} is "
            f"{abs(metric.variance_pct):.1f}% {direction} target. Review recommended."
        )

    issues = [f"{d.name} is critical ({m.variance_pct:.1f}% variance)" for m, d in red_rows]
    if len(yellow_rows) > 1:
        issues.append(f"{len(yellow_rows)} KPIs below target")
    return f"Store requires immediate attention. {'. '.join(issues)}. Immediate action required."


class ThresholdChecker:
    """Builds and upserts StoreHealthSnapshot rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def check_store_health(self, store_id: uuid.UUID, target_date: date | None = None) -> HealthCheck | None:
        """
        Returns None when the store has no metrics for the date ("no data yet"
        is distinct from "all green").
        """
        snapshot_date = target_date or datetime.utcnow().date()

        result = await self.db.execute(
            select(KpiMetric, KpiDefinition)
            .join(KpiDefinition, KpiDefinition.kpi_definition_id == KpiMetric.kpi_definition_id)
            .where(KpiMetric.store_id == store_id, KpiMetric.metric_date == snapshot_date)
            .order_by(KpiDefinition.kpi_code)
        )
        rows = list(result.tuples().all())
        if not rows:
            logger.info("health.no_metrics", store_id=str(store_id), snapshot_date=snapshot_date.isoformat())
            return None

        counts = count_by_status([metric.status for metric, _ in rows])
        overall_status = determine_overall_status(counts)
        details = SnapshotDetails(total_kpis_tracked=len(rows), critical_kpis=identify_critical_kpis(rows))

        snapshot = (
            await self.db.execute(
                select(StoreHealthSnapshot).where(
                    StoreHealthSnapshot.store_id == store_id,
                    StoreHealthSnapshot.snapshot_date == snapshot_date,
                )
            )
        ).scalar_one_or_none()
        if snapshot is None:
            snapshot = StoreHealthSnapshot(store_id=store_id, snapshot_date=snapshot_date)
            self.db.add(snapshot)

        snapshot.overall_status = overall_status
        snapshot.health_score = calculate_health_score(counts)
        snapshot.red_kpi_count = counts.red
        snapshot.yellow_kpi_count = counts.yellow
        snapshot.green_kpi_count = counts.green
        snapshot.escalation_level = determine_escalation_level(counts)
        snapshot.action_required = is_action_required(counts)
        snapshot.summary = generate_summary(rows, counts, overall_status)
        snapshot.snapshot_metadata = details.to_row()
        await self.db.commit()

        logger.info(
            "health.snapshot_saved",
            store_id=str(store_id),
            snapshot_date=snapshot_date.isoformat(),
            overall_status=overall_status,
            health_score=snapshot.health_score,
        )
        return HealthCheck(
            snapshot=snapshot,
            metrics=[
                {
                    "kpi_code": definition.kpi_code,
                    "kpi_name": definition.name,
                    "category": definition.category,
                    "value": metric.value,
                    "variance_pct": metric.variance_pct,
                    "status": metric.status,
                }
                for metric, definition in rows
            ],
        )

    async def check_all_stores_health(
        self,
        target_date: date | None = None,
        organization_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        """Check every active store and return per-store results plus a dashboard view."""
        snapshot_date = target_date or datetime.utcnow().date()
        query = select(Store).where(Store.status == "active").order_by(Store.store_code)
        if organization_id is not None:
            query = query.where(Store.organization_id == organization_id)
        stores = (await self.db.execute(query)).scalars().all()

        results: list[dict[str, Any]] = []
        snapshots: list[tuple[Store, StoreHealthSnapshot]] = []
        for store in stores:
            try:
                health = await self.check_store_health(store.store_id, snapshot_date)
            except StoreHealthError as exc:
                logger.warning("health.store_check_failed", store_id=str(store.store_id), error=exc.message)
                results.append(
                    {"store_id": str(store.store_id), "store_name": store.name, "success": False, "error": exc.message}
                )
                continue
            if health is None:
                continue
            snapshots.append((store, health.snapshot))
            results.append(
                {
                    "store_id": str(store.store_id),
                    "store_name": store.name,
                    "store_code": store.store_code,
                    "success": True,
                    **health.to_dict(),
                }
            )

        return {"results": results, "overview": _overview(snapshot_date, snapshots)}

    async def get_dashboard_overview(self, target_date: date | None = None) -> dict[str, Any]:
        snapshot_date = target_date or datetime.utcnow().date()
        result = await self.db.execute(
            select(Store, StoreHealthSnapshot)
            .join(Store, Store.store_id == StoreHealthSnapshot.store_id)
            .where(StoreHealthSnapshot.snapshot_date == snapshot_date)
            .order_by(Store.store_code)
        )
        return _overview(snapshot_date, list(result.tuples().all()))

    async def get_stores_requiring_action(self, target_date: date | None = None) -> list[dict[str, Any]]:
        snapshot_date = target_date or datetime.utcnow().date()
        result = await self.db.execute(
            select(Store, StoreHealthSnapshot)
            .join(Store, Store.store_id == StoreHealthSnapshot.store_id)
            .where(
                StoreHealthSnapshot.snapshot_date == snapshot_date,
                StoreHealthSnapshot.action_required.is_(True),
            )
            .order_by(StoreHealthSnapshot.escalation_level.desc(), StoreHealthSnapshot.health_score.asc())
        )
        return [
            {
                **snapshot_to_dict(snapshot),
                "store_code": store.store_code,
                "store_name": store.name,
                "manager_name": store.manager_name,
                "manager_phone": store.manager_phone,
                "manager_email": store.manager_email,
            }
            for store, snapshot in result.tuples().all()
        ]


def _overview(snapshot_date: date, snapshots: list[tuple[Store, StoreHealthSnapshot]]) -> dict[str, Any]:
    total = len(snapshots)
    return {
        "snapshot_date": snapshot_date.isoformat(),
        "total_stores": total,
        "green_stores": sum(1 for _, s in snapshots if s.overall_status == KpiStatus.GREEN),
        "yellow_stores": sum(1 for _, s in snapshots if s.overall_status == KpiStatus.YELLOW),
        "red_stores": sum(1 for _, s in snapshots if s.overall_status == KpiStatus.RED),
        "stores_requiring_action": sum(1 for _, s in snapshots if s.action_required),
        "average_health_score": round(sum(s.health_score for _, s in snapshots) / total, 2) if total else 0.0,
        "critical_stores": [
            {
                "store_id": str(store.store_id),
                "store_code": store.store_code,
                "store_name": store.name,
                "overall_status": s.overall_status,
                "health_score": s.health_score,
                "escalation_level": s.escalation_level,
            }
            for store, s in snapshots
            if s.escalation_level >= 2
        ],
    }
