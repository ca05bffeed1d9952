"""
Alert Manager — turns yellow/red KPI metrics into alerts and remediation tasks.

Lifecycle:
  active ──acknowledge──▶ acknowledged ──resolve──▶ resolved
     └──────────────────resolve──────────────────────┘
At most one active/acknowledged alert exists per (store, KPI); a new breach
while one is open returns the open alert unchanged. Resolving an alert
completes its open tasks.

Every status change is a single guarded UPDATE (``WHERE status = expected``)
so a concurrent sweep and a human acknowledgment cannot interleave.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ConflictError, NotFoundError, StoreHealthError, ValidationError
from db.models import (
    OPEN_ALERT_STATUSES,
    OPEN_TASK_STATUSES,
    Alert,
    AlertStatus,
    KpiDefinition,
    KpiMetric,
    KpiStatus,
    Store,
    Task,
    TaskStatus,
    TaskType,
)
from db.payloads import AlertDetails, TaskDetails
from health.sla_policy import resolve_sla_hours

logger = structlog.get_logger()

# status → (severity, escalation level, requires acknowledgment, task priority, task type)
SEVERITY_POLICY = {
    KpiStatus.RED.value: ("red", 2, True, 1, TaskType.ACTION.value),
    KpiStatus.YELLOW.value: ("yellow", 1, False, 3, TaskType.REVIEW.value),
}

RECOMMENDED_ACTIONS: dict[str, list[str]] = {
    "sales": [
        "Review current promotions and pricing",
        "Check inventory availability for top SKUs",
        "Analyze traffic patterns and conversion rates",
        "Consider targeted marketing campaigns",
    ],
    "traffic": [
        "Review store hours and scheduling",
        "Check local events and competition",
        "Assess storefront visibility and signage",
        "Consider promotional activities to drive traffic",
    ],
    "conversion_rate": [
        "Review sales associate training and coverage",
        "Check product availability and merchandising",
        "Analyze basket abandonment reasons",
        "Assess checkout process efficiency",
    ],
    "labor_coverage": [
        "Fill open shifts immediately",
        "Contact backup staff for coverage",
        "Review schedule for next 48 hours",
        "Escalate to district if unable to cover",
    ],
    "inventory": [
        "Review out-of-stock items",
        "Expedite replenishment for top SKUs",
        "Check pending deliveries and orders",
        "Contact distribution center if delays",
    ],
}

DEFAULT_ACTIONS = [
    "Review current performance trends",
    "Identify root cause of variance",
    "Implement corrective actions",
    "Monitor closely over next 24 hours",
]


@dataclass
class AlertOutcome:
    alert: Alert
    task: Task | None
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert": alert_to_dict(self.alert),
            "task": task_to_dict(self.task) if self.task else None,
            "created": self.created,
        }


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    return {
        "alert_id": str(alert.alert_id),
        "store_id": str(alert.store_id),
        "kpi_definition_id": str(alert.kpi_definition_id),
        "alert_date": alert.alert_date.isoformat(),
        "severity": alert.severity,
        "escalation_level": alert.escalation_level,
        "status": alert.status,
        "title": alert.title,
        "message": alert.message,
        "requires_acknowledgment": alert.requires_acknowledgment,
        "acknowledged_at": alert.acknowledged_at.isoformat() if alert.acknowledged_at else None,
        "acknowledged_by": alert.acknowledged_by,
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
        "expires_at": alert.expires_at.isoformat() if alert.expires_at else None,
        "metadata": alert.alert_metadata,
    }


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "task_id": str(task.task_id),
        "alert_id": str(task.alert_id) if task.alert_id else None,
        "store_id": str(task.store_id),
        "task_type": task.task_type,
        "priority": task.priority,
        "title": task.title,
        "description": task.description,
        "assigned_to_role": task.assigned_to_role,
        "assigned_to_name": task.assigned_to_name,
        "assigned_to_contact": task.assigned_to_contact,
        "status": task.status,
        "due_date": task.due_date.isoformat() if task.due_date else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "completed_by": task.completed_by,
        "outcome": task.outcome,
        "metadata": task.task_metadata,
    }


def get_recommended_actions(kpi_code: str) -> list[str]:
    return RECOMMENDED_ACTIONS.get(kpi_code, DEFAULT_ACTIONS)


def generate_alert_title(definition: KpiDefinition, metric: KpiMetric, severity: str) -> str:
    emoji = "🔴" if severity == "red" else "🟨"
    direction = "below" if metric.variance_pct < 0 else "above"
    return f"{emoji} {definition.name} {abs(metric.variance_pct):.1f}% {direction} target"


def generate_alert_message(store: Store, definition: KpiDefinition, metric: KpiMetric, severity: str) -> str:
    direction = "below" if metric.variance_pct < 0 else "above"
    unit = f" {definition.unit}" if definition.unit else ""
    lines = [
        f"{store.name}: {definition.name} is {abs(metric.variance_pct):.1f}% {direction} the baseline.",
        "",
        f"Current Value: {metric.value:g}{unit}",
    ]
    if metric.comparison_value:
        lines.append(f"Baseline: {metric.comparison_value:g}{unit}")
    lines += [f"Variance: {metric.variance_pct:.1f}%", ""]
    if severity == "red":
        lines += [
            "⚠️ IMMEDIATE ACTION REQUIRED",
            "This KPI has fallen into the red zone. Please review and take corrective action immediately.",
        ]
    else:
        lines += [
            "⚡ ATTENTION NEEDED",
            "This KPI requires monitoring. Consider taking preventive action to avoid further decline.",
        ]
    return "\n".join(lines)


def generate_task_description(definition: KpiDefinition, status: str, actions: list[str]) -> str:
    numbered = "\n".join(f"{i}. {action}" for i, action in enumerate(actions, start=1))
    return f"{definition.name} is tracking {status.upper()} status.\n\nRecommended Actions:\n{numbered}"


class AlertManager:
    """Alert and task lifecycle for one datastore session."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    # ── Creation ───────────────────────────────────────────────────────

    async def create_alert(self, store_id: uuid.UUID, metric: KpiMetric) -> AlertOutcome | None:
        """Raise an alert for a yellow/red metric; green metrics are a no-op."""
        policy = SEVERITY_POLICY.get(metric.status)
        if policy is None:
            return None
        severity, level, requires_ack, _, _ = policy

        store = await self.db.get(Store, store_id)
        definition = await self.db.get(KpiDefinition, metric.kpi_definition_id)
        if store is None:
            raise NotFoundError("Store", store_id)
        if definition is None:
            raise NotFoundError("KPI definition", metric.kpi_definition_id)

        kpi_definition_id = definition.kpi_definition_id
        kpi_code = definition.kpi_code
        existing = await self._find_open_alert(store_id, kpi_definition_id)
        if existing is not None:
            logger.info("alert.duplicate_suppressed", store_id=str(store_id), kpi_code=kpi_code)
            return AlertOutcome(alert=existing, task=None, created=False)

        now = self.clock()
        sla_hours = resolve_sla_hours(definition.category, severity)
        alert = Alert(
            alert_id=uuid.uuid4(),
            store_id=store_id,
            kpi_definition_id=definition.kpi_definition_id,
            kpi_metric_id=metric.metric_id,
            alert_date=now,
            severity=severity,
            escalation_level=level,
            status=AlertStatus.ACTIVE.value,
            title=generate_alert_title(definition, metric, severity),
            message=generate_alert_message(store, definition, metric, severity),
            requires_acknowledgment=requires_ack,
            expires_at=now + timedelta(hours=sla_hours),
            alert_metadata=AlertDetails(
                kpi_code=definition.kpi_code,
                variance_pct=metric.variance_pct,
                actual_value=metric.value,
                comparison_value=metric.comparison_value,
                sla_hours=sla_hours,
            ).to_row(),
        )
        self.db.add(alert)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent create for the same store/KPI.
            # Rollback expires every loaded row, so only plain values are used below.
            await self.db.rollback()
            existing = await self._find_open_alert(store_id, kpi_definition_id)
            if existing is None:
                raise
            logger.info("alert.create_race_lost", store_id=str(store_id), kpi_code=kpi_code)
            return AlertOutcome(alert=existing, task=None, created=False)

        task = self._build_alert_task(alert, store, definition, metric.status)
        self.db.add(task)
        await self.db.commit()

        logger.info(
            "alert.created",
            alert_id=str(alert.alert_id),
            store_id=str(store_id),
            kpi_code=definition.kpi_code,
            severity=severity,
            sla_hours=sla_hours,
        )
        return AlertOutcome(alert=alert, task=task, created=True)

    def _build_alert_task(self, alert: Alert, store: Store, definition: KpiDefinition, status: str) -> Task:
        _, _, _, priority, task_type = SEVERITY_POLICY[status]
        actions = get_recommended_actions(definition.kpi_code)
        return Task(
            task_id=uuid.uuid4(),
            alert_id=alert.alert_id,
            store_id=store.store_id,
            kpi_definition_id=definition.kpi_definition_id,
            task_type=task_type,
            priority=priority,
            title=f"Review {definition.name} - {alert.severity.upper()}",
            description=generate_task_description(definition, status, actions),
            assigned_to_role="store_manager",
            assigned_to_name=store.manager_name,
            assigned_to_contact=store.manager_phone or store.manager_email,
            status=TaskStatus.PENDING.value,
            due_date=alert.expires_at,
            task_metadata=TaskDetails(recommended_actions=actions).to_row(),
        )

    async def _find_open_alert(self, store_id: uuid.UUID, kpi_definition_id: uuid.UUID) -> Alert | None:
        result = await self.db.execute(
            select(Alert).where(
                Alert.store_id == store_id,
                Alert.kpi_definition_id == kpi_definition_id,
                Alert.status.in_(OPEN_ALERT_STATUSES),
            )
        )
        return result.scalars().first()

    async def process_store_kpis(self, store_id: uuid.UUID, metric_date: date | None = None) -> list[dict[str, Any]]:
        """
        Raise alerts for every yellow/red metric of the day and resolve open
        alerts whose KPI is back to green. Per-KPI failures are reported, not raised.
        """
        day = metric_date or self.clock().date()
        rows = (
            await self.db.execute(
                select(KpiMetric.metric_id, KpiMetric.kpi_definition_id, KpiMetric.status).where(
                    KpiMetric.store_id == store_id, KpiMetric.metric_date == day
                )
            )
        ).all()

        results: list[dict[str, Any]] = []
        for metric_id, kpi_definition_id, status in rows:
            try:
                if status == KpiStatus.GREEN:
                    resolved = await self._resolve_recovered(store_id, kpi_definition_id)
                    if resolved is not None:
                        results.append({"success": True, "resolved": True, "alert": alert_to_dict(resolved)})
                    continue
                # A rollback on an earlier item expires loaded rows; load each metric fresh
                metric = await self.db.get(KpiMetric, metric_id, populate_existing=True)
                outcome = await self.create_alert(store_id, metric)
                if outcome is not None:
                    results.append({"success": True, **outcome.to_dict()})
            except StoreHealthError as exc:
                results.append(self._item_failure(store_id, kpi_definition_id, exc.message))
            except SQLAlchemyError as exc:
                await self.db.rollback()
                results.append(self._item_failure(store_id, kpi_definition_id, str(exc)))
        return results

    def _item_failure(self, store_id: uuid.UUID, kpi_definition_id: uuid.UUID, error: str) -> dict[str, Any]:
        logger.warning(
            "alert.process_item_failed",
            store_id=str(store_id),
            kpi_definition_id=str(kpi_definition_id),
            error=error,
        )
        return {"success": False, "kpi_definition_id": str(kpi_definition_id), "error": error}

    async def _resolve_recovered(self, store_id: uuid.UUID, kpi_definition_id: uuid.UUID) -> Alert | None:
        alert = await self._find_open_alert(store_id, kpi_definition_id)
        if alert is None:
            return None
        return await self.resolve_alert(alert.alert_id, resolved_by="kpi_recovered")

    # ── Transitions ────────────────────────────────────────────────────

    async def acknowledge_alert(self, alert_id: uuid.UUID, acknowledged_by: str) -> Alert:
        if not acknowledged_by:
            raise ValidationError("acknowledged_by is required")
        result = await self.db.execute(
            update(Alert)
            .where(Alert.alert_id == alert_id, Alert.status == AlertStatus.ACTIVE.value)
            .values(
                status=AlertStatus.ACKNOWLEDGED.value,
                acknowledged_at=self.clock(),
                acknowledged_by=acknowledged_by,
            )
        )
        if result.rowcount == 0:
            alert = await self.get_alert(alert_id)
            raise ConflictError(
                f"Cannot acknowledge alert in '{alert.status}' status. Must be 'active'.",
                {"alert_id": str(alert_id), "status": alert.status},
            )
        await self.db.commit()

        alert = await self.get_alert(alert_id)
        logger.info("alert.acknowledged", alert_id=str(alert_id), acknowledged_by=acknowledged_by)
        return alert

    async def resolve_alert(self, alert_id: uuid.UUID, resolved_by: str | None = None) -> Alert:
        now = self.clock()
        result = await self.db.execute(
            update(Alert)
            .where(Alert.alert_id == alert_id, Alert.status.in_(OPEN_ALERT_STATUSES))
            .values(status=AlertStatus.RESOLVED.value, resolved_at=now)
        )
        if result.rowcount == 0:
            alert = await self.get_alert(alert_id)
            raise ConflictError(
                f"Cannot resolve alert in '{alert.status}' status. Must be 'active' or 'acknowledged'.",
                {"alert_id": str(alert_id), "status": alert.status},
            )

        tasks = await self.db.execute(
            update(Task)
            .where(Task.alert_id == alert_id, Task.status.in_(OPEN_TASK_STATUSES))
            .values(status=TaskStatus.COMPLETED.value, completed_at=now, completed_by=resolved_by or "alert_resolved")
        )
        await self.db.commit()

        alert = await self.get_alert(alert_id)
        logger.info("alert.resolved", alert_id=str(alert_id), tasks_completed=tasks.rowcount)
        return alert

    # ── Queries ────────────────────────────────────────────────────────

    async def get_alert(self, alert_id: uuid.UUID) -> Alert:
        alert = await self.db.get(Alert, alert_id, populate_existing=True)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    async def get_active_alerts(self, store_id: uuid.UUID) -> list[Alert]:
        result = await self.db.execute(
            select(Alert)
            .where(Alert.store_id == store_id, Alert.status.in_(OPEN_ALERT_STATUSES))
            .order_by(Alert.escalation_level.desc(), Alert.alert_date.desc())
        )
        return list(result.scalars().all())

    async def get_overdue_alerts(self) -> list[Alert]:
        """Open alerts past their SLA deadline."""
        result = await self.db.execute(
            select(Alert)
            .where(Alert.status.in_(OPEN_ALERT_STATUSES), Alert.expires_at < self.clock())
            .order_by(Alert.expires_at.asc())
        )
        return list(result.scalars().all())

    # ── Tasks ──────────────────────────────────────────────────────────

    async def create_task(
        self,
        *,
        store_id: uuid.UUID,
        title: str,
        description: str,
        assigned_to_role: str,
        priority: int,
        due_in: timedelta | None = None,
        due_date: datetime | None = None,
        task_type: str = TaskType.FOLLOW_UP.value,
        alert: Alert | None = None,
        assigned_to_name: str | None = None,
        assigned_to_contact: str | None = None,
        details: TaskDetails | None = None,
    ) -> Task:
        """Add a task to the session; the caller commits."""
        task = Task(
            task_id=uuid.uuid4(),
            alert_id=alert.alert_id if alert else None,
            store_id=store_id,
            kpi_definition_id=alert.kpi_definition_id if alert else None,
            task_type=task_type,
            priority=priority,
            title=title,
            description=description,
            assigned_to_role=assigned_to_role,
            assigned_to_name=assigned_to_name,
            assigned_to_contact=assigned_to_contact,
            status=TaskStatus.PENDING.value,
            due_date=due_date or self.clock() + (due_in or timedelta(hours=24)),
            task_metadata=(details or TaskDetails()).to_row(),
        )
        self.db.add(task)
        await self.db.flush()
        return task

    async def get_task(self, task_id: uuid.UUID) -> Task:
        task = await self.db.get(Task, task_id, populate_existing=True)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def complete_task(
        self, task_id: uuid.UUID, completed_by: str | None = None, outcome: str | None = None
    ) -> Task:
        result = await self.db.execute(
            update(Task)
            .where(Task.task_id == task_id, Task.status.in_(OPEN_TASK_STATUSES))
            .values(
                status=TaskStatus.COMPLETED.value,
                completed_at=self.clock(),
                completed_by=completed_by or "System",
                outcome=outcome or "Task completed",
            )
        )
        if result.rowcount == 0:
            task = await self.get_task(task_id)
            raise ConflictError(f"Cannot complete task in '{task.status}' status.", {"task_id": str(task_id)})
        await self.db.commit()
        return await self.get_task(task_id)

    async def update_task_status(self, task_id: uuid.UUID, status: str) -> Task:
        valid = {s.value for s in TaskStatus}
        if status not in valid:
            raise ValidationError(f"Invalid task status '{status}'", {"allowed": sorted(valid)})
        task = await self.get_task(task_id)
        task.status = status
        if status == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = self.clock()
        await self.db.commit()
        return task

    async def get_pending_tasks(self, limit: int = 50) -> list[Task]:
        result = await self.db.execute(
            select(Task)
            .where(Task.status.in_(OPEN_TASK_STATUSES))
            .order_by(Task.priority.asc(), Task.due_date.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_overdue_tasks(self, limit: int = 50) -> list[Task]:
        result = await self.db.execute(
            select(Task)
            .where(Task.status.in_(OPEN_TASK_STATUSES), Task.due_date < self.clock())
            .order_by(Task.due_date.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
