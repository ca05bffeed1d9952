"""
Tests for the Alert Manager — alert creation, dedup, lifecycle and tasks.
"""

import uuid
from datetime import timedelta

import pytest
from conftest import T0, TODAY
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from alerts.manager import AlertManager, get_recommended_actions
from core.errors import ConflictError, NotFoundError, ValidationError
from db.models import Alert, Task
from health.kpi_calculator import KpiCalculator


async def _metric(db, store, code, value, day=TODAY):
    return (await KpiCalculator(db).calculate_and_store(store.store_id, code, day, value)).metric


async def _open_alert_count(db, store_id):
    return (
        await db.execute(
            select(func.count(Alert.alert_id)).where(
                Alert.store_id == store_id, Alert.status.in_(("active", "acknowledged"))
            )
        )
    ).scalar_one()


# ── Creation ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCreateAlert:
    async def test_green_metric_is_a_noop(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        metric = await _metric(test_db, store, "sales", 100.0)
        assert await AlertManager(test_db, clock=clock).create_alert(store.store_id, metric) is None
        assert await _open_alert_count(test_db, store.store_id) == 0

    async def test_yellow_alert_and_review_task(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        metric = await _metric(test_db, store, "sales", 88.0)

        outcome = await AlertManager(test_db, clock=clock).create_alert(store.store_id, metric)

        alert, task = outcome.alert, outcome.task
        assert outcome.created is True
        assert alert.severity == "yellow"
        assert alert.escalation_level == 1
        assert alert.requires_acknowledgment is False
        assert alert.status == "active"
        assert alert.alert_date == T0
        assert alert.expires_at == T0 + timedelta(hours=48)
        assert alert.title == "🟨 Sales 12.0% below target"
        assert "Downtown Store: Sales is 12.0% below the baseline." in alert.message
        assert "Current Value: 88 $" in alert.message
        assert "Baseline: 100 $" in alert.message
        assert "⚡ ATTENTION NEEDED" in alert.message
        assert alert.alert_metadata["kpi_code"] == "sales"
        assert alert.alert_metadata["sla_hours"] == 48

        assert task.priority == 3
        assert task.task_type == "review"
        assert task.title == "Review Sales - YELLOW"
        assert task.assigned_to_role == "store_manager"
        assert task.assigned_to_name == "Sam Store"
        assert task.assigned_to_contact == "+15555550100"
        assert task.due_date == alert.expires_at
        assert "Recommended Actions:\n1. Review current promotions and pricing" in task.description
        assert task.task_metadata["recommended_actions"] == get_recommended_actions("sales")

    async def test_red_alert_requires_acknowledgment(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        metric = await _metric(test_db, store, "labor_coverage", 80.0)

        outcome = await AlertManager(test_db, clock=clock).create_alert(store.store_id, metric)

        assert outcome.alert.severity == "red"
        assert outcome.alert.escalation_level == 2
        assert outcome.alert.requires_acknowledgment is True
        assert outcome.alert.expires_at == T0 + timedelta(hours=24)
        assert outcome.alert.title.startswith("🔴 Labor Coverage 20.0% below")
        assert "⚠️ IMMEDIATE ACTION REQUIRED" in outcome.alert.message
        assert outcome.task.priority == 1
        assert outcome.task.task_type == "action"
        assert "1. Fill open shifts immediately" in outcome.task.description

    async def test_open_alert_absorbs_new_breach(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        first = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        second = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 60.0))

        assert second.created is False
        assert second.task is None
        assert second.alert.alert_id == first.alert.alert_id
        assert second.alert.severity == "yellow"
        assert await _open_alert_count(test_db, store.store_id) == 1

    async def test_acknowledged_alert_still_dedups(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        first = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        await manager.acknowledge_alert(first.alert.alert_id, "Sam Store")

        again = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        assert again.created is False

    async def test_resolved_alert_allows_a_new_one(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        first = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        await manager.resolve_alert(first.alert.alert_id)

        again = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        assert again.created is True
        assert again.alert.alert_id != first.alert.alert_id

    async def test_lost_create_race_returns_existing(self, test_db, baselined_db, clock, monkeypatch):
        store = baselined_db["store"]
        store_id = store.store_id
        first = await AlertManager(test_db, clock=clock).create_alert(
            store_id, await _metric(test_db, store, "sales", 88.0)
        )
        first_id = first.alert.alert_id
        metric = await _metric(test_db, store, "sales", 60.0)

        manager = AlertManager(test_db, clock=clock)
        real_find = manager._find_open_alert
        calls = []

        async def find_after_concurrent_insert(for_store, kpi_definition_id):
            calls.append(kpi_definition_id)
            if len(calls) == 1:
                return None
            return await real_find(for_store, kpi_definition_id)

        monkeypatch.setattr(manager, "_find_open_alert", find_after_concurrent_insert)

        outcome = await manager.create_alert(store_id, metric)

        assert outcome.created is False
        assert outcome.task is None
        assert outcome.alert.alert_id == first_id
        assert len(calls) == 2
        assert await _open_alert_count(test_db, store_id) == 1

    async def test_unknown_store(self, test_db, baselined_db, clock):
        metric = await _metric(test_db, baselined_db["store"], "sales", 60.0)
        with pytest.raises(NotFoundError):
            await AlertManager(test_db, clock=clock).create_alert(uuid.uuid4(), metric)

    async def test_generic_actions_for_unknown_kpi(self):
        assert get_recommended_actions("shrink")[0] == "Review current performance trends"


# ── Lifecycle ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestAlertLifecycle:
    async def test_acknowledge(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 60.0))
        clock.advance(hours=2)

        alert = await manager.acknowledge_alert(outcome.alert.alert_id, "Sam Store")

        assert alert.status == "acknowledged"
        assert alert.acknowledged_by == "Sam Store"
        assert alert.acknowledged_at == T0 + timedelta(hours=2)

    async def test_double_acknowledge_conflicts(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 60.0))
        await manager.acknowledge_alert(outcome.alert.alert_id, "Sam Store")

        with pytest.raises(ConflictError, match="acknowledged"):
            await manager.acknowledge_alert(outcome.alert.alert_id, "Someone Else")
        alert = await manager.get_alert(outcome.alert.alert_id)
        assert alert.acknowledged_by == "Sam Store"

    async def test_acknowledge_missing_alert(self, test_db, seeded_db, clock):
        with pytest.raises(NotFoundError):
            await AlertManager(test_db, clock=clock).acknowledge_alert(uuid.uuid4(), "Sam Store")

    async def test_resolve_cascades_to_open_tasks_only(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 60.0))
        alert = outcome.alert

        extra = await manager.create_task(
            store_id=store.store_id,
            alert=alert,
            title="Extra follow-up",
            description="",
            assigned_to_role="store_manager",
            priority=2,
        )
        done = await manager.create_task(
            store_id=store.store_id,
            alert=alert,
            title="Already handled",
            description="",
            assigned_to_role="store_manager",
            priority=4,
        )
        await test_db.commit()
        await manager.complete_task(done.task_id, completed_by="Sam Store", outcome="Fixed on site")
        extra_id, initial_id, done_id = extra.task_id, outcome.task.task_id, done.task_id

        clock.advance(hours=5)
        resolved = await manager.resolve_alert(alert.alert_id)

        assert resolved.status == "resolved"
        assert resolved.resolved_at == T0 + timedelta(hours=5)
        for task_id in (extra_id, initial_id):
            task = await manager.get_task(task_id)
            assert task.status == "completed"
            assert task.completed_at == T0 + timedelta(hours=5)
        untouched = await manager.get_task(done_id)
        assert untouched.completed_by == "Sam Store"
        assert untouched.completed_at == T0

    async def test_double_resolve_conflicts(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 60.0))
        await manager.resolve_alert(outcome.alert.alert_id)

        with pytest.raises(ConflictError):
            await manager.resolve_alert(outcome.alert.alert_id)
        with pytest.raises(ConflictError):
            await manager.acknowledge_alert(outcome.alert.alert_id, "Sam Store")


# ── Batch & Queries ───────────────────────────────────────────────────


@pytest.mark.asyncio
class TestProcessStoreKpis:
    async def test_raises_and_resolves(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        await _metric(test_db, store, "sales", 88.0)
        await _metric(test_db, store, "traffic", 80.0)
        await _metric(test_db, store, "labor_coverage", 100.0)

        results = await manager.process_store_kpis(store.store_id, TODAY)
        assert len(results) == 2
        assert all(r["success"] and r["created"] for r in results)

        active = await manager.get_active_alerts(store.store_id)
        assert [a.severity for a in active] == ["red", "yellow"]

        # Sales recovers the same day
        await _metric(test_db, store, "sales", 99.0)
        results = await manager.process_store_kpis(store.store_id, TODAY)
        resolved = [r for r in results if r.get("resolved")]
        assert len(resolved) == 1
        assert resolved[0]["alert"]["metadata"]["kpi_code"] == "sales"
        assert [r["created"] for r in results if not r.get("resolved")] == [False]

        remaining = await manager.get_active_alerts(store.store_id)
        assert [a.severity for a in remaining] == ["red"]

    async def test_lost_race_inside_batch(self, test_db, baselined_db, clock, monkeypatch):
        store = baselined_db["store"]
        store_id = store.store_id
        existing = await AlertManager(test_db, clock=clock).create_alert(
            store_id, await _metric(test_db, store, "sales", 88.0)
        )
        existing_id = existing.alert.alert_id
        sales_definition_id = existing.alert.kpi_definition_id
        await _metric(test_db, store, "traffic", 80.0)

        manager = AlertManager(test_db, clock=clock)
        real_find = manager._find_open_alert
        missed = []

        async def miss_first_sales_lookup(for_store, kpi_definition_id):
            if kpi_definition_id == sales_definition_id and not missed:
                missed.append(kpi_definition_id)
                return None
            return await real_find(for_store, kpi_definition_id)

        monkeypatch.setattr(manager, "_find_open_alert", miss_first_sales_lookup)

        results = await manager.process_store_kpis(store_id, TODAY)

        assert missed == [sales_definition_id]
        assert len(results) == 2
        assert all(r["success"] for r in results)
        by_created = {r["created"]: r for r in results}
        assert uuid.UUID(by_created[False]["alert"]["alert_id"]) == existing_id
        assert by_created[True]["alert"]["severity"] == "red"
        assert await _open_alert_count(test_db, store_id) == 2

    async def test_database_error_is_isolated_per_kpi(self, test_db, baselined_db, clock, monkeypatch):
        store = baselined_db["store"]
        store_id = store.store_id
        sales_id = (await _metric(test_db, store, "sales", 88.0)).metric_id
        await _metric(test_db, store, "traffic", 80.0)

        manager = AlertManager(test_db, clock=clock)
        real_create = manager.create_alert

        async def failing_for_sales(for_store, metric):
            if metric.metric_id == sales_id:
                raise OperationalError("INSERT INTO alerts", {}, Exception("database is locked"))
            return await real_create(for_store, metric)

        monkeypatch.setattr(manager, "create_alert", failing_for_sales)

        results = await manager.process_store_kpis(store_id, TODAY)

        failed = [r for r in results if not r["success"]]
        created = [r for r in results if r["success"]]
        assert len(failed) == 1
        assert "database is locked" in failed[0]["error"]
        assert len(created) == 1
        assert created[0]["alert"]["severity"] == "red"
        assert await _open_alert_count(test_db, store_id) == 1

    async def test_overdue_alerts(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        await manager.create_alert(store.store_id, await _metric(test_db, store, "traffic", 80.0))
        await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))

        clock.advance(hours=30)
        assert [a.severity for a in await manager.get_overdue_alerts()] == ["red"]
        clock.advance(hours=20)
        assert len(await manager.get_overdue_alerts()) == 2


# ── Tasks ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestTasks:
    async def test_complete_task_once(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))

        task = await manager.complete_task(outcome.task.task_id, completed_by="Sam Store")
        assert task.status == "completed"
        assert task.outcome == "Task completed"
        with pytest.raises(ConflictError):
            await manager.complete_task(outcome.task.task_id)

    async def test_update_status_validates(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        outcome = await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))

        with pytest.raises(ValidationError):
            await manager.update_task_status(outcome.task.task_id, "done")
        task = await manager.update_task_status(outcome.task.task_id, "in_progress")
        assert task.status == "in_progress"
        task = await manager.update_task_status(outcome.task.task_id, "completed")
        assert task.completed_at == T0

    async def test_pending_and_overdue_ordering(self, test_db, baselined_db, clock):
        store = baselined_db["store"]
        manager = AlertManager(test_db, clock=clock)
        await manager.create_alert(store.store_id, await _metric(test_db, store, "sales", 88.0))
        await manager.create_alert(store.store_id, await _metric(test_db, store, "traffic", 80.0))

        pending = await manager.get_pending_tasks()
        assert [t.priority for t in pending] == [1, 3]
        assert await manager.get_overdue_tasks() == []

        clock.advance(hours=25)
        overdue = await manager.get_overdue_tasks()
        assert [t.title for t in overdue] == ["Review Traffic - RED"]

        count = (await test_db.execute(select(func.count(Task.task_id)))).scalar_one()
        assert count == 2
