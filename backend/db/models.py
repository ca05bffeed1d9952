"""
Store Health Database Models

13 tables for store KPI monitoring and escalation.
Scoped by organization_id (directly or through the store).

Tables:
  Directory (reference data, read-only to the engine):
  1. organizations          - Retail chains
  2. regions                - Regional management units
  3. districts              - District management units
  4. stores                 - Physical stores + manager contacts

  KPI configuration (reference data):
  5. kpi_definitions        - Named, categorized metrics
  6. kpi_thresholds         - Green/yellow/red cutoffs (org default or store override)
  7. escalation_rules       - Level transitions and their actions

  Engine-owned:
  8. kpi_metrics            - One observation per store/KPI/day
  9. store_health_snapshots - One aggregate per store/day
  10. alerts                - Yellow/red KPI breaches (one open per store/KPI)
  11. tasks                 - Remediation work spawned from alerts
  12. escalations           - Level transitions per alert
  13. ai_calls              - Automated voice contact attempts
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from db.session import Base

# ─── Enumerations ──────────────────────────────────────────────────────────


class KpiStatus(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class KpiCategory(str, Enum):
    SALES = "sales"
    LABOR = "labor"
    INVENTORY = "inventory"
    TRAFFIC = "traffic"
    HR = "hr"
    OPERATIONS = "operations"


class ComparisonBasis(str, Enum):
    ROLLING_4W = "rolling_4w"
    SAME_PERIOD_LY = "same_period_ly"
    ABSOLUTE = "absolute"
    BUDGET = "budget"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


class TaskType(str, Enum):
    REVIEW = "review"
    ACTION = "action"
    ESCALATION = "escalation"
    FOLLOW_UP = "follow_up"


class TriggerCondition(str, Enum):
    STATUS_RED = "status_red"
    STATUS_YELLOW = "status_yellow"
    SLA_BREACH = "sla_breach"
    PREDICTED_RISK = "predicted_risk"
    MULTIPLE_YELLOW = "multiple_yellow"


class EscalationAction(str, Enum):
    CREATE_TASK = "create_task"
    SEND_ALERT = "send_alert"
    AI_CALL = "ai_call"
    REGIONAL_ESCALATION = "regional_escalation"


class EscalationTrigger(str, Enum):
    THRESHOLD = "threshold"
    SLA_BREACH = "sla_breach"
    MANUAL = "manual"
    PREDICTED_RISK = "predicted_risk"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class CallStatus(str, Enum):
    SCHEDULED = "scheduled"
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"


TERMINAL_CALL_STATUSES = (CallStatus.COMPLETED.value, CallStatus.FAILED.value, CallStatus.NO_ANSWER.value)


class CallOutcome(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    CALLBACK_REQUESTED = "callback_requested"
    OTHER = "other"
    NONE = "none"


def _in(values) -> str:
    return ", ".join(f"'{v.value if isinstance(v, Enum) else v}'" for v in values)


# ─── 1. Organizations ──────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    organization_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('active', 'inactive', 'trial')", name="ck_organization_status"),)


# ─── 2–3. Regions / Districts ──────────────────────────────────────────────


class Region(Base):
    __tablename__ = "regions"

    region_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    name = Column(String(255), nullable=False)
    manager_name = Column(String(255))
    manager_phone = Column(String(50))
    manager_email = Column(String(255))


class District(Base):
    __tablename__ = "districts"

    district_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    region_id = Column(GUID(), ForeignKey("regions.region_id"))
    name = Column(String(255), nullable=False)
    manager_name = Column(String(255))
    manager_phone = Column(String(50))
    manager_email = Column(String(255))


# ─── 4. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    region_id = Column(GUID(), ForeignKey("regions.region_id"))
    district_id = Column(GUID(), ForeignKey("districts.district_id"))
    store_code = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    city = Column(String(100))
    state = Column(String(50))
    timezone = Column(String(50), default="America/New_York")
    manager_name = Column(String(255))
    manager_phone = Column(String(50))
    manager_email = Column(String(255))
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_stores_organization", "organization_id"),
        UniqueConstraint("organization_id", "store_code", name="uq_store_code"),
        CheckConstraint("status IN ('active', 'inactive', 'closed')", name="ck_store_status"),
    )


# ─── 5. KPI Definitions ────────────────────────────────────────────────────


class KpiDefinition(Base):
    __tablename__ = "kpi_definitions"

    kpi_definition_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    kpi_code = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    unit = Column(String(50), nullable=False, default="")
    category = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "kpi_code", name="uq_kpi_code"),
        CheckConstraint(f"category IN ({_in(KpiCategory)})", name="ck_kpi_category"),
    )


# ─── 6. KPI Thresholds ─────────────────────────────────────────────────────


class KpiThreshold(Base):
    """
    Cutoffs are expressed against variance_pct.

    store_id NULL = organization-wide default; a store row overrides it.
    """

    __tablename__ = "kpi_thresholds"

    threshold_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    kpi_definition_id = Column(GUID(), ForeignKey("kpi_definitions.kpi_definition_id"), nullable=False)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=True)
    green_min = Column(Float, nullable=False)
    yellow_min = Column(Float, nullable=False)
    red_threshold = Column(Float, nullable=False)
    comparison_basis = Column(String(20), nullable=False, default=ComparisonBasis.ROLLING_4W.value)

    __table_args__ = (
        Index("ix_thresholds_kpi_store", "kpi_definition_id", "store_id"),
        CheckConstraint(f"comparison_basis IN ({_in(ComparisonBasis)})", name="ck_threshold_basis"),
    )


# ─── 7. Escalation Rules ───────────────────────────────────────────────────


class EscalationRule(Base):
    __tablename__ = "escalation_rules"

    rule_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    kpi_definition_id = Column(GUID(), ForeignKey("kpi_definitions.kpi_definition_id"), nullable=True)
    trigger_condition = Column(String(30), nullable=False)
    duration_hours = Column(Integer, nullable=False, default=0)
    from_level = Column(Integer, nullable=False)
    to_level = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_rules_org_level", "organization_id", "from_level"),
        CheckConstraint(f"trigger_condition IN ({_in(TriggerCondition)})", name="ck_rule_trigger"),
        CheckConstraint(f"action IN ({_in(EscalationAction)})", name="ck_rule_action"),
        CheckConstraint("from_level BETWEEN 0 AND 4 AND to_level BETWEEN 0 AND 4", name="ck_rule_levels"),
    )


# ─── 8. KPI Metrics ────────────────────────────────────────────────────────


class KpiMetric(Base):
    __tablename__ = "kpi_metrics"

    metric_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    kpi_definition_id = Column(GUID(), ForeignKey("kpi_definitions.kpi_definition_id"), nullable=False)
    metric_date = Column(Date, nullable=False)
    metric_timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    value = Column(Float, nullable=False)
    comparison_value = Column(Float, nullable=True)
    comparison_type = Column(String(20), nullable=False)
    variance_pct = Column(Float, nullable=False, default=0.0)
    status = Column(String(10), nullable=False)
    metric_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("store_id", "kpi_definition_id", "metric_date", name="uq_metric_store_kpi_date"),
        Index("ix_metrics_store_date", "store_id", "metric_date"),
        CheckConstraint(f"status IN ({_in(KpiStatus)})", name="ck_metric_status"),
    )


# ─── 9. Store Health Snapshots ─────────────────────────────────────────────


class StoreHealthSnapshot(Base):
    __tablename__ = "store_health_snapshots"

    snapshot_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    snapshot_date = Column(Date, nullable=False)
    overall_status = Column(String(10), nullable=False)
    health_score = Column(Float, nullable=False)
    red_kpi_count = Column(Integer, nullable=False, default=0)
    yellow_kpi_count = Column(Integer, nullable=False, default=0)
    green_kpi_count = Column(Integer, nullable=False, default=0)
    escalation_level = Column(Integer, nullable=False, default=0)
    action_required = Column(Boolean, nullable=False, default=False)
    summary = Column(Text, nullable=False)
    snapshot_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "snapshot_date", name="uq_snapshot_store_date"),
        Index("ix_snapshots_date", "snapshot_date", "action_required"),
        CheckConstraint(f"overall_status IN ({_in(KpiStatus)})", name="ck_snapshot_status"),
        CheckConstraint("escalation_level BETWEEN 0 AND 4", name="ck_snapshot_level"),
    )


# ─── 10. Alerts ─────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    kpi_definition_id = Column(GUID(), ForeignKey("kpi_definitions.kpi_definition_id"), nullable=False)
    kpi_metric_id = Column(GUID(), ForeignKey("kpi_metrics.metric_id"), nullable=True)
    alert_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    severity = Column(String(10), nullable=False)
    escalation_level = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=AlertStatus.ACTIVE.value)
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=False)
    requires_acknowledgment = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolved_at = Column(DateTime)
    expires_at = Column(DateTime)
    alert_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_alerts_status", "status", "escalation_level"),
        Index("ix_alerts_store", "store_id"),
        Index(
            "uq_alerts_open_store_kpi",
            "store_id",
            "kpi_definition_id",
            unique=True,
            postgresql_where=text(f"status IN ({_in(OPEN_ALERT_STATUSES)})"),
            sqlite_where=text(f"status IN ({_in(OPEN_ALERT_STATUSES)})"),
        ),
        CheckConstraint("severity IN ('yellow', 'red')", name="ck_alert_severity"),
        CheckConstraint(f"status IN ({_in(AlertStatus)})", name="ck_alert_status"),
        CheckConstraint("escalation_level BETWEEN 0 AND 4", name="ck_alert_level"),
    )


# ─── 11. Tasks ──────────────────────────────────────────────────────────────


class Task(Base):
    __tablename__ = "tasks"

    task_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=True)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    kpi_definition_id = Column(GUID(), ForeignKey("kpi_definitions.kpi_definition_id"), nullable=True)
    task_type = Column(String(20), nullable=False, default=TaskType.REVIEW.value)
    priority = Column(Integer, nullable=False, default=3)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    assigned_to_role = Column(String(100))
    assigned_to_name = Column(String(255))
    assigned_to_contact = Column(String(255))
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    due_date = Column(DateTime)
    completed_at = Column(DateTime)
    completed_by = Column(String(255))
    outcome = Column(Text)
    task_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_tasks_alert", "alert_id"),
        Index("ix_tasks_status_priority", "status", "priority", "due_date"),
        CheckConstraint(f"task_type IN ({_in(TaskType)})", name="ck_task_type"),
        CheckConstraint(f"status IN ({_in(TaskStatus)})", name="ck_task_status"),
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_task_priority"),
    )


# ─── 12. Escalations ───────────────────────────────────────────────────────


class Escalation(Base):
    __tablename__ = "escalations"

    escalation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=False)
    task_id = Column(GUID(), ForeignKey("tasks.task_id"), nullable=True)
    from_level = Column(Integer, nullable=False)
    to_level = Column(Integer, nullable=False)
    escalation_reason = Column(Text, nullable=False)
    triggered_by = Column(String(20), nullable=False)
    escalated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    escalated_to_role = Column(String(100))
    escalated_to_name = Column(String(255))
    escalated_to_contact = Column(String(255))
    status = Column(String(20), nullable=False, default=EscalationStatus.PENDING.value)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolution = Column(Text)
    resolved_at = Column(DateTime)
    escalation_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_escalations_alert", "alert_id", "escalated_at"),
        Index("ix_escalations_status", "status", "to_level"),
        CheckConstraint(f"triggered_by IN ({_in(EscalationTrigger)})", name="ck_escalation_trigger"),
        CheckConstraint(f"status IN ({_in(EscalationStatus)})", name="ck_escalation_status"),
    )


# ─── 13. AI Calls ───────────────────────────────────────────────────────────


class AiCall(Base):
    __tablename__ = "ai_calls"

    call_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=True)
    escalation_id = Column(GUID(), ForeignKey("escalations.escalation_id"), nullable=True)
    call_type = Column(String(10), nullable=False)
    call_status = Column(String(20), nullable=False, default=CallStatus.SCHEDULED.value)
    recipient_name = Column(String(255))
    recipient_phone = Column(String(50))
    provider_call_id = Column(String(255))
    initiated_at = Column(DateTime)
    connected_at = Column(DateTime)
    ended_at = Column(DateTime)
    duration_seconds = Column(Integer)
    outcome = Column(String(30), nullable=False, default=CallOutcome.NONE.value)
    transcript = Column(Text)
    recording_url = Column(String(500))
    error_message = Column(Text)
    follow_up_required = Column(Boolean, nullable=False, default=False)
    call_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ai_calls_store", "store_id", "created_at"),
        Index("ix_ai_calls_provider", "provider_call_id"),
        CheckConstraint(f"call_status IN ({_in(CallStatus)})", name="ck_call_status"),
        CheckConstraint(f"outcome IN ({_in(CallOutcome)})", name="ck_call_outcome"),
    )
