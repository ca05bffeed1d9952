"""
Voice Call Dispatcher — schedules automated calls and folds provider events back
into alert/task state.

Flow:
  schedule_call()      AiCall(status=scheduled), placement enqueued (fire-and-forget)
  place_call()         provider.place_call(); failures recorded on the AiCall
  on_call_status()     provider status → scheduled/initiated/in_progress/completed/failed/no_answer
  on_call_response()   speech: "yes" acknowledges, "later"/"call back" asks for a callback
  on_function_result() acknowledge_alert / request_callback function calls

A failed or unanswered call leaves the alert at its current level; the next
escalation sweep decides whether it climbs further.
"""

import re
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.manager import AlertManager
from core.errors import ConflictError, NotFoundError, StoreHealthError, ValidationError
from db.models import (
    TERMINAL_CALL_STATUSES,
    AiCall,
    Alert,
    CallOutcome,
    CallStatus,
    Escalation,
    KpiDefinition,
    Store,
    TaskType,
)
from db.payloads import AiCallDetails, AlertDetails, TaskDetails
from voice.provider import CallContext, VoiceCallProvider, build_voice_provider

logger = structlog.get_logger()

PROVIDER_STATUS_MAP = {
    "initiated": CallStatus.INITIATED,
    "queued": CallStatus.INITIATED,
    "ringing": CallStatus.INITIATED,
    "answered": CallStatus.IN_PROGRESS,
    "in-progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.FAILED,
    "failed": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
    "no-answer": CallStatus.NO_ANSWER,
}

DEFAULT_CALLBACK_HOURS = 2
AI_ACKNOWLEDGER = "AI Call Response"

_HOURS_PATTERN = re.compile(r"(\d+)\s*(?:hour|hr)s?", re.IGNORECASE)


def parse_callback_time(callback_time: str | None, now: datetime) -> datetime:
    """'3 hours' → now+3h, 'tomorrow' → now+24h, anything else → now+2h."""
    text = (callback_time or "").strip().lower()
    match = _HOURS_PATTERN.search(text)
    if match:
        return now + timedelta(hours=int(match.group(1)))
    if "tomorrow" in text:
        return now + timedelta(hours=24)
    return now + timedelta(hours=DEFAULT_CALLBACK_HOURS)


def classify_speech(speech_result: str) -> CallOutcome:
    text = speech_result.strip().lower()
    if "yes" in text or "acknowledge" in text:
        return CallOutcome.ACKNOWLEDGED
    if "later" in text or "call back" in text or "callback" in text:
        return CallOutcome.CALLBACK_REQUESTED
    return CallOutcome.OTHER


def ai_call_to_dict(call: AiCall) -> dict[str, Any]:
    return {
        "call_id": str(call.call_id),
        "store_id": str(call.store_id),
        "alert_id": str(call.alert_id) if call.alert_id else None,
        "escalation_id": str(call.escalation_id) if call.escalation_id else None,
        "call_type": call.call_type,
        "call_status": call.call_status,
        "recipient_name": call.recipient_name,
        "recipient_phone": call.recipient_phone,
        "provider_call_id": call.provider_call_id,
        "initiated_at": call.initiated_at.isoformat() if call.initiated_at else None,
        "connected_at": call.connected_at.isoformat() if call.connected_at else None,
        "ended_at": call.ended_at.isoformat() if call.ended_at else None,
        "duration_seconds": call.duration_seconds,
        "outcome": call.outcome,
        "transcript": call.transcript,
        "recording_url": call.recording_url,
        "error_message": call.error_message,
        "follow_up_required": call.follow_up_required,
        "metadata": call.call_metadata,
    }


def _enqueue_placement(call_id: str) -> None:
    from workers.celery_app import celery_app

    celery_app.send_task("workers.monitoring.place_ai_call", kwargs={"ai_call_id": call_id})


class VoiceCallDispatcher:
    """
    ``launcher`` receives the new AiCall id and must return quickly; the default
    enqueues the Celery placement task. ``provider`` is built from settings on
    first use when not injected.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: VoiceCallProvider | None = None,
        launcher: Callable[[str], Any] | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self._provider = provider
        self.launcher = launcher or _enqueue_placement
        self.clock = clock

    @property
    def provider(self) -> VoiceCallProvider:
        if self._provider is None:
            self._provider = build_voice_provider()
        return self._provider

    # ── Scheduling ─────────────────────────────────────────────────────

    async def schedule_call(
        self,
        escalation: Escalation,
        alert: Alert,
        store: Store,
        kpi_definition: KpiDefinition,
    ) -> AiCall:
        alert_details = AlertDetails.from_row(alert.alert_metadata)
        call = AiCall(
            call_id=uuid.uuid4(),
            store_id=store.store_id,
            alert_id=alert.alert_id,
            escalation_id=escalation.escalation_id,
            call_type=alert.severity,
            call_status=CallStatus.SCHEDULED.value,
            recipient_name=store.manager_name,
            recipient_phone=store.manager_phone,
            outcome=CallOutcome.NONE.value,
            call_metadata=AiCallDetails(
                kpi_code=kpi_definition.kpi_code,
                kpi_name=kpi_definition.name,
                variance_pct=alert_details.variance_pct,
                escalation_level=escalation.to_level,
            ).to_row(),
        )
        self.db.add(call)

        if not store.manager_phone:
            self._mark_failed(call, "Store has no manager phone number")
            await self.db.commit()
            return call

        await self.db.commit()
        logger.info("voice.call_scheduled", call_id=str(call.call_id), alert_id=str(alert.alert_id))

        try:
            self.launcher(str(call.call_id))
        except Exception as exc:  # noqa: BLE001
            logger.error("voice.enqueue_failed", call_id=str(call.call_id), error=str(exc))
            self._mark_failed(call, f"Could not enqueue call placement: {exc}")
            await self.db.commit()
        return call

    async def place_call(self, call_id: uuid.UUID) -> AiCall:
        """Contact the provider for a scheduled call. Never raises for provider failures."""
        call = await self.get_call(call_id)
        if call.call_status != CallStatus.SCHEDULED:
            logger.info("voice.place_skipped", call_id=str(call_id), call_status=call.call_status)
            return call

        store = await self.db.get(Store, call.store_id)
        alert = await self.db.get(Alert, call.alert_id) if call.alert_id else None
        escalation = await self.db.get(Escalation, call.escalation_id) if call.escalation_id else None
        details = AiCallDetails.from_row(call.call_metadata)

        context = CallContext(
            ai_call_id=str(call.call_id),
            recipient_name=call.recipient_name,
            store_name=store.name if store else "",
            store_code=store.store_code if store else "",
            kpi_name=details.kpi_name or "",
            severity=call.call_type,
            variance_pct=details.variance_pct or 0.0,
            alert_title=alert.title if alert else "",
            escalation_level=escalation.to_level if escalation else (details.escalation_level or 0),
        )

        try:
            provider_call_id = await self.provider.place_call(call.recipient_phone, context)
        except StoreHealthError as exc:
            logger.error("voice.call_failed", call_id=str(call_id), error=exc.message)
            self._mark_failed(call, exc.message)
            await self.db.commit()
            return call

        call.provider_call_id = provider_call_id
        call.call_status = CallStatus.INITIATED.value
        call.initiated_at = self.clock()
        await self.db.commit()
        return call

    def _mark_failed(self, call: AiCall, error_message: str) -> None:
        call.call_status = CallStatus.FAILED.value
        call.error_message = error_message
        call.ended_at = self.clock()
        call.follow_up_required = True

    # ── Provider callbacks ─────────────────────────────────────────────

    async def on_call_status(
        self,
        call_id: uuid.UUID,
        provider_status: str,
        duration_seconds: int | None = None,
        ended_reason: str | None = None,
    ) -> AiCall:
        mapped = PROVIDER_STATUS_MAP.get(provider_status.strip().lower())
        if mapped is None:
            raise ValidationError(f"Unknown call status '{provider_status}'", {"allowed": sorted(PROVIDER_STATUS_MAP)})

        call = await self.get_call(call_id)
        details = AiCallDetails.from_row(call.call_metadata)
        details.provider_status = provider_status
        if ended_reason:
            details.ended_reason = ended_reason
        call.call_metadata = details.to_row()

        if call.call_status in TERMINAL_CALL_STATUSES and mapped.value not in TERMINAL_CALL_STATUSES:
            # Late non-terminal event after the call already ended
            logger.info("voice.stale_status_ignored", call_id=str(call_id), provider_status=provider_status)
            await self.db.commit()
            return call

        now = self.clock()
        call.call_status = mapped.value
        if mapped == CallStatus.INITIATED and call.initiated_at is None:
            call.initiated_at = now
        if mapped == CallStatus.IN_PROGRESS and call.connected_at is None:
            call.connected_at = now
        if mapped.value in TERMINAL_CALL_STATUSES:
            call.ended_at = call.ended_at or now
            if duration_seconds is not None:
                call.duration_seconds = int(duration_seconds)
            if mapped != CallStatus.COMPLETED:
                call.follow_up_required = True
        await self.db.commit()

        logger.info("voice.status_updated", call_id=str(call_id), call_status=call.call_status)
        return call

    async def on_call_response(
        self, call_id: uuid.UUID, speech_result: str, confidence: float | None = None
    ) -> AiCall:
        call = await self.get_call(call_id)
        details = AiCallDetails.from_row(call.call_metadata)
        details.speech_result = speech_result
        details.speech_confidence = confidence
        call.call_metadata = details.to_row()

        outcome = classify_speech(speech_result)
        if outcome == CallOutcome.ACKNOWLEDGED:
            return await self._acknowledge(call, notes=None)
        if outcome == CallOutcome.CALLBACK_REQUESTED:
            return await self._request_callback(call, callback_time=None)

        call.outcome = CallOutcome.OTHER.value
        call.follow_up_required = True
        await self.db.commit()
        return call

    async def on_function_result(
        self, call_id: uuid.UUID, function_name: str, parameters: dict[str, Any] | None = None
    ) -> AiCall:
        parameters = parameters or {}
        call = await self.get_call(call_id)
        match function_name:
            case "acknowledge_alert":
                return await self._acknowledge(call, notes=parameters.get("notes"))
            case "request_callback":
                return await self._request_callback(call, callback_time=parameters.get("callback_time"))
            case _:
                raise ValidationError(f"Unknown function '{function_name}'")

    async def on_recording(self, call_id: uuid.UUID, recording_url: str, recording_sid: str | None = None) -> AiCall:
        call = await self.get_call(call_id)
        call.recording_url = recording_url
        if recording_sid:
            details = AiCallDetails.from_row(call.call_metadata)
            details.recording_sid = recording_sid
            call.call_metadata = details.to_row()
        await self.db.commit()
        return call

    async def on_transcript(self, call_id: uuid.UUID, transcript: str) -> AiCall:
        call = await self.get_call(call_id)
        call.transcript = transcript
        await self.db.commit()
        return call

    async def _acknowledge(self, call: AiCall, notes: str | None) -> AiCall:
        manager = AlertManager(self.db, clock=self.clock)
        store = await self.db.get(Store, call.store_id)

        if call.alert_id:
            try:
                await manager.acknowledge_alert(call.alert_id, AI_ACKNOWLEDGER)
            except ConflictError as exc:
                logger.info("voice.alert_already_handled", call_id=str(call.call_id), error=exc.message)
            alert = await manager.get_alert(call.alert_id)
        else:
            alert = None

        description = "Store manager acknowledged the alert via AI call."
        if notes:
            description += f"\n\nNotes: {notes}"
        await manager.create_task(
            store_id=call.store_id,
            alert=alert,
            title="Follow up on acknowledged alert",
            description=description,
            assigned_to_role="store_manager",
            assigned_to_name=store.manager_name if store else None,
            assigned_to_contact=(store.manager_phone or store.manager_email) if store else None,
            priority=2,
            due_in=timedelta(hours=24),
            task_type=TaskType.FOLLOW_UP.value,
            details=TaskDetails(ai_call_id=str(call.call_id)),
        )

        details = AiCallDetails.from_row(call.call_metadata)
        if notes:
            details.acknowledgment_notes = notes
        call.call_metadata = details.to_row()
        call.outcome = CallOutcome.ACKNOWLEDGED.value
        call.follow_up_required = False
        await self.db.commit()

        logger.info("voice.alert_acknowledged", call_id=str(call.call_id), alert_id=str(call.alert_id))
        return call

    async def _request_callback(self, call: AiCall, callback_time: str | None) -> AiCall:
        manager = AlertManager(self.db, clock=self.clock)
        when = parse_callback_time(callback_time, self.clock())
        alert = await self.db.get(Alert, call.alert_id) if call.alert_id else None

        await manager.create_task(
            store_id=call.store_id,
            alert=alert,
            title="Call back store manager",
            description=f"Store manager requested a callback at {when:%Y-%m-%d %H:%M} UTC.",
            assigned_to_role="regional_manager",
            priority=2,
            due_date=when,
            task_type=TaskType.FOLLOW_UP.value,
            details=TaskDetails(ai_call_id=str(call.call_id), callback_time=when),
        )

        details = AiCallDetails.from_row(call.call_metadata)
        details.callback_time = when
        call.call_metadata = details.to_row()
        call.outcome = CallOutcome.CALLBACK_REQUESTED.value
        call.follow_up_required = True
        await self.db.commit()

        logger.info("voice.callback_requested", call_id=str(call.call_id), callback_at=when.isoformat())
        return call

    # ── Queries ────────────────────────────────────────────────────────

    async def get_call(self, call_id: uuid.UUID) -> AiCall:
        call = await self.db.get(AiCall, call_id)
        if call is None:
            raise NotFoundError("AI call", call_id)
        return call

    async def get_call_history(self, store_id: uuid.UUID, limit: int = 20) -> list[AiCall]:
        result = await self.db.execute(
            select(AiCall).where(AiCall.store_id == store_id).order_by(AiCall.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
