"""
KPI Calculator — baseline-relative variance and green/yellow/red status.

For one store/KPI/day:
  1. Resolve the KPI definition through the store's organization
  2. Resolve the threshold (store override > organization default)
  3. Compute the comparison baseline for the threshold's basis
  4. variance_pct = (value - baseline) / baseline × 100 (0 without a baseline)
  5. Classify against the threshold cutoffs
  6. Upsert the KpiMetric row keyed by (store, KPI, date)
"""

import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConfigurationError, NotFoundError, StoreHealthError, ValidationError
from db.models import ComparisonBasis, KpiDefinition, KpiMetric, KpiStatus, KpiThreshold, Store

logger = structlog.get_logger()

ROLLING_WINDOW_DAYS = 28
SAME_PERIOD_OFFSET_DAYS = 365


@dataclass
class CalculatedKpi:
    """A stored metric together with the definition and threshold it was judged by."""

    metric: KpiMetric
    definition: KpiDefinition
    threshold: KpiThreshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric_id": str(self.metric.metric_id),
            "store_id": str(self.metric.store_id),
            "kpi_code": self.definition.kpi_code,
            "kpi_name": self.definition.name,
            "metric_date": self.metric.metric_date.isoformat(),
            "value": self.metric.value,
            "comparison_value": self.metric.comparison_value,
            "comparison_type": self.metric.comparison_type,
            "variance_pct": self.metric.variance_pct,
            "status": self.metric.status,
            "threshold": {
                "green_min": self.threshold.green_min,
                "yellow_min": self.threshold.yellow_min,
                "red_threshold": self.threshold.red_threshold,
            },
            "success": True,
        }


def calculate_variance(actual_value: float, baseline_value: float | None) -> float:
    """Percent variance of actual vs. baseline; 0 when there is no usable baseline."""
    if not baseline_value:
        return 0.0
    return (actual_value - baseline_value) / baseline_value * 100


def determine_status(variance_pct: float, threshold: KpiThreshold) -> str:
    """
    Classify a variance against a threshold.

    Two threshold shapes are configured in the field. When green_min is above
    red_threshold the KPI is higher-is-better (e.g. labor coverage ratio);
    otherwise the cutoffs describe a lower/neutral-is-better KPI such as
    sales variance. Both shapes compare variance_pct against the same three
    cutoffs in the same direction; existing threshold rows rely on this, so
    the branches stay separate.
    """
    if threshold.green_min > threshold.red_threshold:
        if variance_pct >= threshold.green_min:
            return KpiStatus.GREEN.value
        if variance_pct >= threshold.yellow_min:
            return KpiStatus.YELLOW.value
        return KpiStatus.RED.value

    if variance_pct >= threshold.green_min:
        return KpiStatus.GREEN.value
    if variance_pct >= threshold.yellow_min:
        return KpiStatus.YELLOW.value
    return KpiStatus.RED.value


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid metric date: {value!r}") from exc


class KpiCalculator:
    """Computes and stores KpiMetric rows for one datastore session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def calculate_and_store(
        self,
        store_id: uuid.UUID,
        kpi_code: str,
        metric_date: date | datetime | str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> CalculatedKpi:
        if store_id is None or not kpi_code:
            raise ValidationError("store_id and kpi_code are required")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"KPI value for {kpi_code} must be numeric", {"value": value})
        if not math.isfinite(value):
            raise ValidationError(f"KPI value for {kpi_code} must be a finite number", {"value": str(value)})
        metric_day = _as_date(metric_date)

        store = await self.db.get(Store, store_id)
        if store is None:
            raise NotFoundError("Store", store_id)

        definition = (
            await self.db.execute(
                select(KpiDefinition).where(
                    KpiDefinition.organization_id == store.organization_id,
                    KpiDefinition.kpi_code == kpi_code,
                    KpiDefinition.is_active.is_(True),
                )
            )
        ).scalar_one_or_none()
        if definition is None:
            raise NotFoundError("KPI definition", kpi_code, {"organization_id": str(store.organization_id)})

        threshold = await self.get_threshold(store.organization_id, definition.kpi_definition_id, store_id)
        if threshold is None:
            raise ConfigurationError(f"No threshold configured for KPI {kpi_code}", {"store_id": str(store_id)})

        comparison_value = await self.calculate_comparison_baseline(
            store_id, definition.kpi_definition_id, metric_day, threshold.comparison_basis
        )
        variance_pct = calculate_variance(float(value), comparison_value)
        status = determine_status(variance_pct, threshold)

        metric = (
            await self.db.execute(
                select(KpiMetric).where(
                    KpiMetric.store_id == store_id,
                    KpiMetric.kpi_definition_id == definition.kpi_definition_id,
                    KpiMetric.metric_date == metric_day,
                )
            )
        ).scalar_one_or_none()
        if metric is None:
            metric = KpiMetric(
                store_id=store_id,
                kpi_definition_id=definition.kpi_definition_id,
                metric_date=metric_day,
            )
            self.db.add(metric)

        metric.metric_timestamp = datetime.utcnow()
        metric.value = float(value)
        metric.comparison_value = comparison_value
        metric.comparison_type = threshold.comparison_basis
        metric.variance_pct = variance_pct
        metric.status = status
        metric.metric_metadata = dict(metadata or {})
        await self.db.commit()

        logger.info(
            "kpi.calculated",
            store_id=str(store_id),
            kpi_code=kpi_code,
            metric_date=metric_day.isoformat(),
            variance_pct=round(variance_pct, 2),
            status=status,
        )
        return CalculatedKpi(metric=metric, definition=definition, threshold=threshold)

    async def get_threshold(
        self,
        organization_id: uuid.UUID,
        kpi_definition_id: uuid.UUID,
        store_id: uuid.UUID,
    ) -> KpiThreshold | None:
        """
        Priority:
        1. Store-specific threshold
        2. Organization default (store_id IS NULL)
        """
        result = await self.db.execute(
            select(KpiThreshold).where(
                KpiThreshold.kpi_definition_id == kpi_definition_id,
                KpiThreshold.store_id == store_id,
            )
        )
        store_threshold = result.scalars().first()
        if store_threshold:
            return store_threshold

        result = await self.db.execute(
            select(KpiThreshold).where(
                KpiThreshold.organization_id == organization_id,
                KpiThreshold.kpi_definition_id == kpi_definition_id,
                KpiThreshold.store_id.is_(None),
            )
        )
        return result.scalars().first()

    async def calculate_comparison_baseline(
        self,
        store_id: uuid.UUID,
        kpi_definition_id: uuid.UUID,
        metric_date: date,
        comparison_basis: str,
    ) -> float | None:
        if comparison_basis == ComparisonBasis.SAME_PERIOD_LY:
            return await self._same_period_last_year(store_id, kpi_definition_id, metric_date)
        if comparison_basis == ComparisonBasis.ABSOLUTE:
            return 0.0
        if comparison_basis == ComparisonBasis.BUDGET:
            # No budget source yet
            return None
        return await self._rolling_4w(store_id, kpi_definition_id, metric_date)

    async def _rolling_4w(self, store_id: uuid.UUID, kpi_definition_id: uuid.UUID, metric_date: date) -> float | None:
        end = metric_date - timedelta(days=1)
        start = end - timedelta(days=ROLLING_WINDOW_DAYS - 1)
        row = (
            await self.db.execute(
                select(func.avg(KpiMetric.value).label("baseline"), func.count(KpiMetric.metric_id).label("n")).where(
                    KpiMetric.store_id == store_id,
                    KpiMetric.kpi_definition_id == kpi_definition_id,
                    KpiMetric.metric_date >= start,
                    KpiMetric.metric_date <= end,
                )
            )
        ).one()
        if not row.n:
            return None
        return float(row.baseline)

    async def _same_period_last_year(
        self, store_id: uuid.UUID, kpi_definition_id: uuid.UUID, metric_date: date
    ) -> float | None:
        prior = (
            await self.db.execute(
                select(KpiMetric.value).where(
                    KpiMetric.store_id == store_id,
                    KpiMetric.kpi_definition_id == kpi_definition_id,
                    KpiMetric.metric_date == metric_date - timedelta(days=SAME_PERIOD_OFFSET_DAYS),
                )
            )
        ).scalar_one_or_none()
        return float(prior) if prior is not None else None

    async def batch_calculate(
        self,
        store_id: uuid.UUID,
        metric_date: date | datetime | str,
        kpi_values: dict[str, float],
    ) -> list[dict[str, Any]]:
        """Calculate every KPI independently; one failure never rolls back the others."""
        results: list[dict[str, Any]] = []
        for kpi_code, value in kpi_values.items():
            try:
                calculated = await self.calculate_and_store(store_id, kpi_code, metric_date, value)
                results.append(calculated.to_dict())
            except StoreHealthError as exc:
                logger.warning("kpi.batch_item_failed", store_id=str(store_id), kpi_code=kpi_code, error=exc.message)
                results.append({"kpi_code": kpi_code, "success": False, "error": exc.message})
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.warning("kpi.batch_item_failed", store_id=str(store_id), kpi_code=kpi_code, error=str(exc))
                results.append({"kpi_code": kpi_code, "success": False, "error": str(exc)})
        return results

    async def get_latest_kpi_status(self, store_id: uuid.UUID) -> list[dict[str, Any]]:
        """Newest metric per KPI for a store."""
        latest_dates = (
            select(KpiMetric.kpi_definition_id, func.max(KpiMetric.metric_date).label("latest_date"))
            .where(KpiMetric.store_id == store_id)
            .group_by(KpiMetric.kpi_definition_id)
            .subquery()
        )
        result = await self.db.execute(
            select(KpiMetric, KpiDefinition)
            .join(
                latest_dates,
                and_(
                    KpiMetric.kpi_definition_id == latest_dates.c.kpi_definition_id,
                    KpiMetric.metric_date == latest_dates.c.latest_date,
                ),
            )
            .join(KpiDefinition, KpiDefinition.kpi_definition_id == KpiMetric.kpi_definition_id)
            .where(KpiMetric.store_id == store_id)
            .order_by(KpiMetric.metric_date.desc(), KpiDefinition.kpi_code)
        )
        return [
            {
                "kpi_code": definition.kpi_code,
                "kpi_name": definition.name,
                "category": definition.category,
                "unit": definition.unit,
                "metric_date": metric.metric_date.isoformat(),
                "value": metric.value,
                "variance_pct": metric.variance_pct,
                "status": metric.status,
            }
            for metric, definition in result.all()
        ]
