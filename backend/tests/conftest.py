"""
Test Configuration — Fixtures for async DB, test client, fakes and seed data.

Each test gets its own in-memory SQLite database, so engine code that
commits (every service does) cannot leak state between tests.
"""

import uuid
from datetime import date, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alerts.notifier import Contact, NotificationResult, Notifier
from api.deps import get_call_dispatcher, get_db, get_notifier
from api.main import app
from core.errors import ExternalProviderError
from db.session import Base
from voice.dispatcher import VoiceCallDispatcher
from voice.provider import CallContext, VoiceCallProvider

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TODAY = date(2026, 3, 2)
T0 = datetime(2026, 3, 2, 8, 0, 0)


# ─── Fakes ──────────────────────────────────────────────────────────────────


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[Contact, str, str]] = []

    async def send(self, contact: Contact, subject: str, message: str) -> NotificationResult:
        self.sent.append((contact, subject, message))
        if self.fail:
            return NotificationResult(sent=False, channel="fake", recipient=contact.address, error="boom")
        return NotificationResult(sent=True, channel="fake", recipient=contact.address)


class FakeVoiceProvider(VoiceCallProvider):
    name = "fake-voice"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, CallContext]] = []

    async def place_call(self, to_phone: str, context: CallContext) -> str:
        self.calls.append((to_phone, context))
        if self.fail:
            raise ExternalProviderError(self.name, "line busy")
        return f"prov-{len(self.calls)}"


# ─── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    import db.models  # noqa: F401

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def voice_provider():
    return FakeVoiceProvider()


@pytest.fixture
def launched():
    """Call ids handed to the dispatcher's launcher."""
    return []


@pytest.fixture
def dispatcher(test_db, voice_provider, launched, clock):
    return VoiceCallDispatcher(test_db, provider=voice_provider, launcher=launched.append, clock=clock)


# ─── Seed Data ──────────────────────────────────────────────────────────────


@pytest.fixture
async def seeded_db(test_db):
    """One organization, one store with a full management chain, three KPIs, escalation ladder."""
    from db.models import (
        District,
        EscalationRule,
        KpiDefinition,
        KpiThreshold,
        Organization,
        Region,
        Store,
    )

    org = Organization(organization_id=uuid.uuid4(), name="Test Retail Co", status="active")
    test_db.add(org)
    await test_db.flush()

    region = Region(
        organization_id=org.organization_id,
        name="Midwest",
        manager_name="Rita Regional",
        manager_phone="+15555550300",
        manager_email="rita@example.com",
    )
    test_db.add(region)
    await test_db.flush()

    district = District(
        organization_id=org.organization_id,
        region_id=region.region_id,
        name="Twin Cities",
        manager_name="Dana District",
        manager_phone="+15555550200",
        manager_email="dana@example.com",
    )
    test_db.add(district)
    await test_db.flush()

    store = Store(
        organization_id=org.organization_id,
        region_id=region.region_id,
        district_id=district.district_id,
        store_code="MN-001",
        name="Downtown Store",
        city="Minneapolis",
        state="MN",
        manager_name="Sam Store",
        manager_phone="+15555550100",
        manager_email="sam@example.com",
    )
    test_db.add(store)
    await test_db.flush()

    definitions = {}
    for code, name, unit, category in [
        ("sales", "Sales", "$", "sales"),
        ("labor_coverage", "Labor Coverage", "%", "labor"),
        ("traffic", "Traffic", "visits", "traffic"),
    ]:
        definition = KpiDefinition(
            organization_id=org.organization_id, kpi_code=code, name=name, unit=unit, category=category
        )
        test_db.add(definition)
        definitions[code] = definition
    await test_db.flush()

    # green ≥ green_min, yellow ≥ yellow_min, red below
    for code, (green_min, yellow_min, red_threshold) in {
        "sales": (-10.0, -20.0, -20.0),
        "labor_coverage": (-3.0, -8.0, -8.0),
        "traffic": (-2.0, -6.0, -6.0),
    }.items():
        test_db.add(
            KpiThreshold(
                kpi_definition_id=definitions[code].kpi_definition_id,
                organization_id=org.organization_id,
                green_min=green_min,
                yellow_min=yellow_min,
                red_threshold=red_threshold,
                comparison_basis="rolling_4w",
            )
        )

    for from_level, to_level, trigger, hours, action in [
        (1, 2, "status_yellow", 48, "create_task"),
        (2, 3, "sla_breach", 24, "ai_call"),
        (3, 4, "sla_breach", 48, "regional_escalation"),
    ]:
        test_db.add(
            EscalationRule(
                organization_id=org.organization_id,
                trigger_condition=trigger,
                duration_hours=hours,
                from_level=from_level,
                to_level=to_level,
                action=action,
            )
        )
    await test_db.commit()

    return {
        "organization": org,
        "region": region,
        "district": district,
        "store": store,
        "definitions": definitions,
    }


async def add_history(db, store, definition, before: date = TODAY, value: float = 100.0, days: int = 28):
    """Flat baseline: ``value`` on each of the ``days`` days before ``before``."""
    from db.models import KpiMetric

    for offset in range(1, days + 1):
        db.add(
            KpiMetric(
                store_id=store.store_id,
                kpi_definition_id=definition.kpi_definition_id,
                metric_date=before - timedelta(days=offset),
                value=value,
                comparison_type="rolling_4w",
                variance_pct=0.0,
                status="green",
            )
        )
    await db.commit()


@pytest.fixture
async def baselined_db(test_db, seeded_db):
    """seeded_db plus a flat 100-per-day history for every KPI."""
    for definition in seeded_db["definitions"].values():
        await add_history(test_db, seeded_db["store"], definition)
    return seeded_db


# ─── API Client ─────────────────────────────────────────────────────────────


@pytest.fixture
async def client(test_db, notifier, dispatcher):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_call_dispatcher] = lambda: dispatcher

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
