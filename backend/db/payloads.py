"""
Typed metadata payloads for the JSON ``metadata`` columns.

Each engine-owned table keeps free-form context in a JSON column; the fields
the engine writes and reads back are declared here so a typo in a key fails
validation instead of silently producing ``None``.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")

    @classmethod
    def from_row(cls, raw: dict[str, Any] | None):
        return cls.model_validate(raw or {})

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class AlertDetails(_Payload):
    kpi_code: str
    variance_pct: float = 0.0
    actual_value: float | None = None
    comparison_value: float | None = None
    sla_hours: int | None = None


class TaskDetails(_Payload):
    recommended_actions: list[str] | None = None
    escalation_id: str | None = None
    escalation_level: int | None = None
    ai_call_id: str | None = None
    callback_time: datetime | None = None


class EscalationDetails(_Payload):
    kpi_code: str | None = None
    hours_in_status: float | None = None
    rule_id: str | None = None
    action: str | None = None
    notification_sent: bool | None = None
    notification_error: str | None = None
    ai_call_id: str | None = None


class AiCallDetails(_Payload):
    kpi_code: str | None = None
    kpi_name: str | None = None
    variance_pct: float | None = None
    escalation_level: int | None = None
    provider_status: str | None = None
    ended_reason: str | None = None
    speech_result: str | None = None
    speech_confidence: float | None = None
    acknowledgment_notes: str | None = None
    callback_time: datetime | None = None
    recording_sid: str | None = None


class CriticalKpi(BaseModel):
    kpi_code: str
    kpi_name: str
    status: str
    variance_pct: float


class SnapshotDetails(_Payload):
    total_kpis_tracked: int
    critical_kpis: list[CriticalKpi] = []
