"""
Voice Router — call provider webhooks.

The provider echoes our AiCall id (``metadata.aiCallId``) back on every
event; signature verification happens upstream of this service.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_call_dispatcher
from api.responses import ok
from voice.dispatcher import VoiceCallDispatcher, ai_call_to_dict

router = APIRouter(prefix="/api/v1/voice", tags=["voice"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class CallStatusEvent(BaseModel):
    status: str
    duration_seconds: int | None = Field(None, ge=0)
    ended_reason: str | None = None


class CallResponseEvent(BaseModel):
    speech_result: str
    confidence: float | None = None


class FunctionCallEvent(BaseModel):
    function_name: str
    parameters: dict = Field(default_factory=dict)


class RecordingEvent(BaseModel):
    recording_url: str
    recording_sid: str | None = None


class TranscriptEvent(BaseModel):
    transcript: str


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/calls/{call_id}/status")
async def call_status(
    call_id: UUID,
    body: CallStatusEvent,
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    call = await dispatcher.on_call_status(call_id, body.status, body.duration_seconds, body.ended_reason)
    return ok(ai_call_to_dict(call))


@router.post("/calls/{call_id}/response")
async def call_response(
    call_id: UUID,
    body: CallResponseEvent,
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    call = await dispatcher.on_call_response(call_id, body.speech_result, body.confidence)
    return ok(ai_call_to_dict(call))


@router.post("/calls/{call_id}/function")
async def call_function(
    call_id: UUID,
    body: FunctionCallEvent,
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    call = await dispatcher.on_function_result(call_id, body.function_name, body.parameters)
    return ok(ai_call_to_dict(call))


@router.post("/calls/{call_id}/recording")
async def call_recording(
    call_id: UUID,
    body: RecordingEvent,
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    call = await dispatcher.on_recording(call_id, body.recording_url, body.recording_sid)
    return ok(ai_call_to_dict(call))


@router.post("/calls/{call_id}/transcript")
async def call_transcript(
    call_id: UUID,
    body: TranscriptEvent,
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
):
    call = await dispatcher.on_transcript(call_id, body.transcript)
    return ok(ai_call_to_dict(call))
