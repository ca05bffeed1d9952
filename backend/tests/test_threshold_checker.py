"""
Tests for the Threshold Checker — store-level health aggregation.
"""

from datetime import timedelta

import pytest
from conftest import TODAY, add_history
from sqlalchemy import func, select

from db.models import Store, StoreHealthSnapshot
from health.kpi_calculator import KpiCalculator
from health.threshold_checker import (
    StatusCounts,
    ThresholdChecker,
    calculate_health_score,
    determine_escalation_level,
    determine_overall_status,
    is_action_required,
    snapshot_to_dict,
)

# ── Pure Rules ────────────────────────────────────────────────────────


class TestAggregationRules:
    def test_two_yellows_count_as_red(self):
        counts = StatusCounts(red=0, yellow=2, green=1)
        assert determine_overall_status(counts) == "red"
        assert determine_escalation_level(counts) == 2
        assert is_action_required(counts) is True

    def test_single_yellow(self):
        counts = StatusCounts(yellow=1, green=2)
        assert determine_overall_status(counts) == "yellow"
        assert determine_escalation_level(counts) == 1
        assert is_action_required(counts) is False

    def test_any_red(self):
        counts = StatusCounts(red=1, green=5)
        assert determine_overall_status(counts) == "red"
        assert determine_escalation_level(counts) == 2

    def test_health_score_weights(self):
        assert calculate_health_score(StatusCounts(green=1, yellow=1, red=1)) == 53.33
        assert calculate_health_score(StatusCounts(green=3)) == 100.0
        assert calculate_health_score(StatusCounts()) == 100.0


# ── Store Health ──────────────────────────────────────────────────────


async def _record(db, store, values):
    calculator = KpiCalculator(db)
    for code, value in values.items():
        await calculator.calculate_and_store(store.store_id, code, TODAY, value)


@pytest.mark.asyncio
class TestCheckStoreHealth:
    async def test_no_metrics_returns_none(self, test_db, seeded_db):
        assert await ThresholdChecker(test_db).check_store_health(seeded_db["store"].store_id, TODAY) is None

    async def test_healthy_store(self, test_db, baselined_db):
        store = baselined_db["store"]
        await _record(test_db, store, {"sales": 101.0, "labor_coverage": 100.0, "traffic": 99.0})

        health = await ThresholdChecker(test_db).check_store_health(store.store_id, TODAY)
        snapshot = health.snapshot
        assert snapshot.overall_status == "green"
        assert snapshot.health_score == 100.0
        assert snapshot.escalation_level == 0
        assert snapshot.action_required is False
        assert snapshot.summary.startswith("Store is healthy. All 3 KPIs")
        assert snapshot.snapshot_metadata["critical_kpis"] == []

    async def test_single_yellow(self, test_db, baselined_db):
        store = baselined_db["store"]
        await _record(test_db, store, {"sales": 88.0, "labor_coverage": 100.0, "traffic": 100.0})

        health = await ThresholdChecker(test_db).check_store_health(store.store_id, TODAY)
        assert health.snapshot.overall_status == "yellow"
        assert health.snapshot.escalation_level == 1
        assert health.snapshot.yellow_kpi_count == 1
        assert "Sales is 12.0% below target" in health.snapshot.summary

    async def test_two_yellows_escalate_to_level_two(self, test_db, baselined_db):
        store = baselined_db["store"]
        await _record(test_db, store, {"sales": 88.0, "labor_coverage": 95.0, "traffic": 100.0})

        health = await ThresholdChecker(test_db).check_store_health(store.store_id, TODAY)
        assert health.snapshot.overall_status == "red"
        assert health.snapshot.escalation_level == 2
        assert health.snapshot.action_required is True
        assert health.snapshot.health_score == 73.33
        # Yellow labor is critical; yellow sales is not
        critical = [k["kpi_code"] for k in health.snapshot.snapshot_metadata["critical_kpis"]]
        assert critical == ["labor_coverage"]

    async def test_snapshot_is_idempotent(self, test_db, baselined_db):
        store = baselined_db["store"]
        await _record(test_db, store, {"sales": 70.0, "labor_coverage": 95.0, "traffic": 100.0})
        checker = ThresholdChecker(test_db)

        first = snapshot_to_dict((await checker.check_store_health(store.store_id, TODAY)).snapshot)
        second = snapshot_to_dict((await checker.check_store_health(store.store_id, TODAY)).snapshot)

        assert first == second
        count = (
            await test_db.execute(
                select(func.count(StoreHealthSnapshot.snapshot_id)).where(StoreHealthSnapshot.store_id == store.store_id)
            )
        ).scalar_one()
        assert count == 1
        assert "Sales is critical (-30.0% variance)" in first["summary"]


@pytest.mark.asyncio
class TestChainWide:
    async def test_check_all_and_dashboard(self, test_db, baselined_db):
        org = baselined_db["organization"]
        healthy = baselined_db["store"]
        struggling = Store(
            organization_id=org.organization_id,
            store_code="MN-002",
            name="Mall Store",
            manager_name="Max Mall",
        )
        idle = Store(organization_id=org.organization_id, store_code="MN-003", name="No Data Store")
        test_db.add_all([struggling, idle])
        await test_db.commit()
        for definition in baselined_db["definitions"].values():
            await add_history(test_db, struggling, definition)

        await _record(test_db, healthy, {"sales": 100.0, "labor_coverage": 100.0, "traffic": 100.0})
        await _record(test_db, struggling, {"sales": 60.0, "labor_coverage": 100.0, "traffic": 100.0})

        checker = ThresholdChecker(test_db)
        outcome = await checker.check_all_stores_health(TODAY)
        assert [r["store_code"] for r in outcome["results"]] == ["MN-001", "MN-002"]

        overview = outcome["overview"]
        assert overview["total_stores"] == 2
        assert overview["green_stores"] == 1
        assert overview["red_stores"] == 1
        assert overview["average_health_score"] == pytest.approx(83.335, abs=0.01)
        assert [s["store_code"] for s in overview["critical_stores"]] == ["MN-002"]

        assert await checker.get_dashboard_overview(TODAY) == overview
        action = await checker.get_stores_requiring_action(TODAY)
        assert [row["store_code"] for row in action] == ["MN-002"]
        assert action[0]["manager_name"] == "Max Mall"

        empty = await checker.get_dashboard_overview(TODAY - timedelta(days=1))
        assert empty["total_stores"] == 0
        assert empty["average_health_score"] == 0.0
