"""
Escalation Engine — climbs open alerts up the severity ladder.

Levels:
  1  yellow, informational            (store manager)
  2  red, acknowledgment required     (store manager)
  3  persistent red, automated call   (store manager by phone)
  4  district / regional escalation   (district manager > regional manager > regional ops)

Transitions come only from EscalationRule rows (from_level → to_level,
trigger_condition, duration_hours, action). Time in status is computed lazily
at sweep time from alert_date, so a restarted process loses nothing. Each
sweep re-reads every open alert; one alert's failure never stops the rest.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.manager import AlertManager
from alerts.notifier import Contact, Notifier, build_notifier
from core.errors import ConflictError, NotFoundError, ValidationError
from db.models import (
    OPEN_ALERT_STATUSES,
    Alert,
    District,
    Escalation,
    EscalationAction,
    EscalationRule,
    EscalationStatus,
    EscalationTrigger,
    KpiDefinition,
    Region,
    Store,
    TaskType,
    TriggerCondition,
)
from db.payloads import EscalationDetails, TaskDetails
from voice.dispatcher import VoiceCallDispatcher

logger = structlog.get_logger()

MAX_LEVEL = 4
URGENT_LEVEL = 3


@dataclass
class SweepResult:
    checked: int = 0
    escalations: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alerts_checked": self.checked,
            "escalations_created": len(self.escalations),
            "failures": self.failures,
            "escalations": self.escalations,
        }


@dataclass
class _ActionContext:
    alert: Alert
    store: Store
    definition: KpiDefinition
    escalation: Escalation
    contact: Contact
    details: EscalationDetails


def escalation_to_dict(escalation: Escalation) -> dict[str, Any]:
    return {
        "escalation_id": str(escalation.escalation_id),
        "store_id": str(escalation.store_id),
        "alert_id": str(escalation.alert_id),
        "task_id": str(escalation.task_id) if escalation.task_id else None,
        "from_level": escalation.from_level,
        "to_level": escalation.to_level,
        "escalation_reason": escalation.escalation_reason,
        "triggered_by": escalation.triggered_by,
        "escalated_at": escalation.escalated_at.isoformat(),
        "escalated_to_role": escalation.escalated_to_role,
        "escalated_to_name": escalation.escalated_to_name,
        "escalated_to_contact": escalation.escalated_to_contact,
        "status": escalation.status,
        "acknowledged_at": escalation.acknowledged_at.isoformat() if escalation.acknowledged_at else None,
        "acknowledged_by": escalation.acknowledged_by,
        "resolution": escalation.resolution,
        "resolved_at": escalation.resolved_at.isoformat() if escalation.resolved_at else None,
        "metadata": escalation.escalation_metadata,
    }


def hours_since(alert: Alert, now: datetime) -> float:
    return (now - alert.alert_date).total_seconds() / 3600


def should_escalate(rule: EscalationRule, alert: Alert, hours_in_status: float) -> bool:
    """Severity triggers also honor duration_hours; 0 fires on the next sweep."""
    match rule.trigger_condition:
        case TriggerCondition.STATUS_RED:
            return alert.severity == "red" and hours_in_status >= rule.duration_hours
        case TriggerCondition.STATUS_YELLOW:
            return alert.severity == "yellow" and hours_in_status >= rule.duration_hours
        case TriggerCondition.SLA_BREACH:
            return hours_in_status >= rule.duration_hours
        case _:
            return False


def build_escalation_reason(
    definition: KpiDefinition, alert: Alert, hours_in_status: float, duration_hours: int, from_level: int, to_level: int
) -> str:
    return (
        f"{definition.name} has remained in {alert.severity.upper()} status for {hours_in_status:.1f} hours. "
        f"SLA threshold of {duration_hours} hours has been exceeded. "
        f"Escalating from Level {from_level} to Level {to_level} per policy."
    )


class EscalationEngine:
    """Periodic sweep plus manual escalation operations."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier | None = None,
        dispatcher: VoiceCallDispatcher | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.notifier = notifier or build_notifier()
        self.dispatcher = dispatcher or VoiceCallDispatcher(db, clock=clock)
        self.clock = clock
        self.alerts = AlertManager(db, clock=clock)

    # ── Sweep ──────────────────────────────────────────────────────────

    async def monitor_and_escalate(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        alert_ids = (
            (
                await self.db.execute(
                    select(Alert.alert_id)
                    .where(Alert.status.in_(OPEN_ALERT_STATUSES))
                    .order_by(Alert.escalation_level.desc(), Alert.alert_date.asc())
                )
            )
            .scalars()
            .all()
        )

        result = SweepResult(checked=len(alert_ids))
        for alert_id in alert_ids:
            try:
                escalation = await self._evaluate(alert_id, now)
            except Exception as exc:  # noqa: BLE001
                logger.error("escalation.alert_failed", alert_id=str(alert_id), error=str(exc), exc_info=True)
                await self.db.rollback()
                result.failures.append({"alert_id": str(alert_id), "error": str(exc)})
                continue
            if escalation is not None:
                result.escalations.append(escalation_to_dict(escalation))

        logger.info(
            "escalation.sweep_complete",
            alerts_checked=result.checked,
            escalations_created=len(result.escalations),
            failures=len(result.failures),
        )
        return result

    async def _evaluate(self, alert_id: uuid.UUID, now: datetime) -> Escalation | None:
        row = (
            await self.db.execute(
                select(Alert, Store, KpiDefinition)
                .join(Store, Store.store_id == Alert.store_id)
                .join(KpiDefinition, KpiDefinition.kpi_definition_id == Alert.kpi_definition_id)
                .where(Alert.alert_id == alert_id, Alert.status.in_(OPEN_ALERT_STATUSES))
                .execution_options(populate_existing=True)
            )
        ).first()
        if row is None:
            return None
        alert, store, definition = row

        hours_in_status = hours_since(alert, now)
        rules = await self.get_escalation_rules(store.organization_id, alert.kpi_definition_id, alert.escalation_level)
        rule = next((r for r in rules if should_escalate(r, alert, hours_in_status)), None)
        if rule is None:
            return None
        return await self.execute_escalation(alert, store, definition, rule, hours_in_status)

    async def get_escalation_rules(
        self, organization_id: uuid.UUID, kpi_definition_id: uuid.UUID, from_level: int
    ) -> list[EscalationRule]:
        """Active rules leaving ``from_level``, KPI-specific rules before organization-wide ones."""
        result = await self.db.execute(
            select(EscalationRule)
            .where(
                EscalationRule.organization_id == organization_id,
                EscalationRule.from_level == from_level,
                EscalationRule.is_active.is_(True),
                or_(
                    EscalationRule.kpi_definition_id == kpi_definition_id,
                    EscalationRule.kpi_definition_id.is_(None),
                ),
            )
            .order_by(EscalationRule.kpi_definition_id.is_(None), EscalationRule.duration_hours.asc())
        )
        return list(result.scalars().all())

    async def execute_escalation(
        self,
        alert: Alert,
        store: Store,
        definition: KpiDefinition,
        rule: EscalationRule,
        hours_in_status: float,
    ) -> Escalation | None:
        """Bump the alert one rule step and run the rule's action. None if another writer moved it first."""
        bumped = await self._bump_level(alert.alert_id, rule.from_level, rule.to_level)
        if not bumped:
            logger.info("escalation.race_lost", alert_id=str(alert.alert_id), from_level=rule.from_level)
            return None

        contact = await self.get_escalation_target(store, rule.to_level)
        escalation = self._new_escalation(
            alert,
            contact,
            from_level=rule.from_level,
            to_level=rule.to_level,
            reason=build_escalation_reason(
                definition, alert, hours_in_status, rule.duration_hours, rule.from_level, rule.to_level
            ),
            triggered_by=EscalationTrigger.SLA_BREACH.value,
        )
        details = EscalationDetails(
            kpi_code=definition.kpi_code,
            hours_in_status=round(hours_in_status, 2),
            rule_id=str(rule.rule_id),
            action=rule.action,
        )
        ctx = _ActionContext(alert, store, definition, escalation, contact, details)
        await self._run_action(EscalationAction(rule.action), ctx)

        escalation.escalation_metadata = details.to_row()
        await self.db.commit()

        logger.info(
            "escalation.executed",
            alert_id=str(alert.alert_id),
            store_id=str(store.store_id),
            from_level=rule.from_level,
            to_level=rule.to_level,
            action=rule.action,
        )
        return escalation

    async def _bump_level(self, alert_id: uuid.UUID, from_level: int, to_level: int) -> bool:
        result = await self.db.execute(
            update(Alert)
            .where(
                Alert.alert_id == alert_id,
                Alert.escalation_level == from_level,
                Alert.status.in_(OPEN_ALERT_STATUSES),
            )
            .values(escalation_level=to_level)
        )
        return result.rowcount == 1

    def _new_escalation(
        self, alert: Alert, contact: Contact, *, from_level: int, to_level: int, reason: str, triggered_by: str
    ) -> Escalation:
        escalation = Escalation(
            escalation_id=uuid.uuid4(),
            store_id=alert.store_id,
            alert_id=alert.alert_id,
            from_level=from_level,
            to_level=to_level,
            escalation_reason=reason,
            triggered_by=triggered_by,
            escalated_at=self.clock(),
            escalated_to_role=contact.role,
            escalated_to_name=contact.name,
            escalated_to_contact=contact.address,
            status=EscalationStatus.PENDING.value,
        )
        self.db.add(escalation)
        return escalation

    async def get_escalation_target(self, store: Store, level: int) -> Contact:
        if level < MAX_LEVEL:
            return Contact(
                role="store_manager",
                name=store.manager_name,
                phone=store.manager_phone,
                email=store.manager_email,
            )

        district = await self.db.get(District, store.district_id) if store.district_id else None
        if district is not None:
            return Contact(
                role="district_manager",
                name=district.manager_name,
                phone=district.manager_phone,
                email=district.manager_email,
            )
        region = await self.db.get(Region, store.region_id) if store.region_id else None
        if region is not None:
            return Contact(
                role="regional_manager",
                name=region.manager_name,
                phone=region.manager_phone,
                email=region.manager_email,
            )
        return Contact(role="regional_ops", name="Regional Operations")

    # ── Actions ────────────────────────────────────────────────────────

    async def _run_action(self, action: EscalationAction, ctx: _ActionContext) -> None:
        match action:
            case EscalationAction.CREATE_TASK:
                await self._create_task(ctx)
            case EscalationAction.SEND_ALERT:
                await self._send_alert(ctx)
            case EscalationAction.AI_CALL:
                await self._place_ai_call(ctx)
            case EscalationAction.REGIONAL_ESCALATION:
                await self._create_task(ctx)
                await self._send_alert(ctx)

    async def _create_task(self, ctx: _ActionContext) -> None:
        level = ctx.escalation.to_level
        urgent = level >= URGENT_LEVEL
        task = await self.alerts.create_task(
            store_id=ctx.store.store_id,
            alert=ctx.alert,
            title=f"ESCALATED: {ctx.definition.name} - Level {level}",
            description=(
                f"This issue has been escalated to Level {level}.\n\n"
                f"Reason: {ctx.escalation.escalation_reason}\n\n"
                "Immediate action required."
            ),
            assigned_to_role=ctx.contact.role,
            assigned_to_name=ctx.contact.name,
            assigned_to_contact=ctx.contact.address,
            priority=1 if urgent else 2,
            due_in=timedelta(hours=6 if urgent else 24),
            task_type=TaskType.ESCALATION.value,
            details=TaskDetails(escalation_id=str(ctx.escalation.escalation_id), escalation_level=level),
        )
        ctx.escalation.task_id = task.task_id

    async def _send_alert(self, ctx: _ActionContext) -> None:
        subject = f"Escalation Level {ctx.escalation.to_level}: {ctx.alert.title}"
        message = f"{ctx.escalation.escalation_reason}\n\n{ctx.alert.message}"
        outcome = await self.notifier.send(ctx.contact, subject, message)
        ctx.details.notification_sent = outcome.sent
        ctx.details.notification_error = outcome.error
        if not outcome.sent:
            logger.warning(
                "escalation.notification_failed",
                escalation_id=str(ctx.escalation.escalation_id),
                channel=outcome.channel,
                error=outcome.error,
            )

    async def _place_ai_call(self, ctx: _ActionContext) -> None:
        await self.db.flush()
        call = await self.dispatcher.schedule_call(ctx.escalation, ctx.alert, ctx.store, ctx.definition)
        ctx.details.ai_call_id = str(call.call_id)

    # ── Manual operations ──────────────────────────────────────────────

    async def escalate_manually(
        self, alert_id: uuid.UUID, to_level: int, reason: str, escalated_by: str
    ) -> Escalation:
        if not reason or not escalated_by:
            raise ValidationError("reason and escalated_by are required")
        if not 1 <= to_level <= MAX_LEVEL:
            raise ValidationError(f"to_level must be between 1 and {MAX_LEVEL}", {"to_level": to_level})

        alert = await self.alerts.get_alert(alert_id)
        if alert.status not in OPEN_ALERT_STATUSES:
            raise ConflictError(f"Cannot escalate alert in '{alert.status}' status.", {"alert_id": str(alert_id)})
        if to_level <= alert.escalation_level:
            raise ValidationError(
                f"Alert is already at level {alert.escalation_level}; escalations only move upward",
                {"to_level": to_level},
            )

        store = await self.db.get(Store, alert.store_id)
        definition = await self.db.get(KpiDefinition, alert.kpi_definition_id)
        from_level = alert.escalation_level
        if not await self._bump_level(alert_id, from_level, to_level):
            raise ConflictError("Alert escalation level changed concurrently", {"alert_id": str(alert_id)})

        contact = await self.get_escalation_target(store, to_level)
        escalation = self._new_escalation(
            alert,
            contact,
            from_level=from_level,
            to_level=to_level,
            reason=f"{reason} (escalated manually by {escalated_by})",
            triggered_by=EscalationTrigger.MANUAL.value,
        )
        details = EscalationDetails(
            kpi_code=definition.kpi_code,
            hours_in_status=round(hours_since(alert, self.clock()), 2),
            action=EscalationAction.CREATE_TASK.value,
        )
        await self._create_task(_ActionContext(alert, store, definition, escalation, contact, details))
        escalation.escalation_metadata = details.to_row()
        await self.db.commit()

        logger.info("escalation.manual", alert_id=str(alert_id), to_level=to_level, escalated_by=escalated_by)
        return escalation

    async def acknowledge_escalation(self, escalation_id: uuid.UUID, acknowledged_by: str) -> Escalation:
        result = await self.db.execute(
            update(Escalation)
            .where(Escalation.escalation_id == escalation_id, Escalation.status == EscalationStatus.PENDING.value)
            .values(
                status=EscalationStatus.ACKNOWLEDGED.value,
                acknowledged_at=self.clock(),
                acknowledged_by=acknowledged_by,
            )
        )
        if result.rowcount == 0:
            escalation = await self.get_escalation(escalation_id)
            raise ConflictError(
                f"Cannot acknowledge escalation in '{escalation.status}' status.",
                {"escalation_id": str(escalation_id)},
            )
        await self.db.commit()
        return await self.get_escalation(escalation_id)

    async def resolve_escalation(self, escalation_id: uuid.UUID, resolution: str) -> Escalation:
        result = await self.db.execute(
            update(Escalation)
            .where(
                Escalation.escalation_id == escalation_id,
                Escalation.status.in_((EscalationStatus.PENDING.value, EscalationStatus.ACKNOWLEDGED.value)),
            )
            .values(status=EscalationStatus.RESOLVED.value, resolution=resolution, resolved_at=self.clock())
        )
        if result.rowcount == 0:
            escalation = await self.get_escalation(escalation_id)
            raise ConflictError(
                f"Cannot resolve escalation in '{escalation.status}' status.",
                {"escalation_id": str(escalation_id)},
            )
        await self.db.commit()
        return await self.get_escalation(escalation_id)

    # ── Queries ────────────────────────────────────────────────────────

    async def get_escalation(self, escalation_id: uuid.UUID) -> Escalation:
        escalation = await self.db.get(Escalation, escalation_id, populate_existing=True)
        if escalation is None:
            raise NotFoundError("Escalation", escalation_id)
        return escalation

    async def get_store_escalations(self, store_id: uuid.UUID, limit: int = 50) -> list[Escalation]:
        result = await self.db.execute(
            select(Escalation)
            .where(Escalation.store_id == store_id)
            .order_by(Escalation.escalated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_escalations(self) -> list[Escalation]:
        result = await self.db.execute(
            select(Escalation)
            .where(Escalation.status == EscalationStatus.PENDING.value)
            .order_by(Escalation.to_level.desc(), Escalation.escalated_at.asc())
        )
        return list(result.scalars().all())
