"""
KPIs Router — metric ingestion and latest status.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_kpi_calculator
from api.responses import batch, ok
from health.kpi_calculator import KpiCalculator

router = APIRouter(prefix="/api/v1/kpis", tags=["kpis"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class KpiCalculateRequest(BaseModel):
    store_id: UUID
    kpi_code: str = Field(..., min_length=1, max_length=100)
    metric_date: date
    value: float
    metadata: dict | None = None


class KpiBatchRequest(BaseModel):
    store_id: UUID
    metric_date: date
    kpi_values: dict[str, float] = Field(..., min_length=1)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/calculate")
async def calculate_kpi(
    body: KpiCalculateRequest,
    calculator: KpiCalculator = Depends(get_kpi_calculator),
):
    """Calculate and store one KPI observation."""
    calculated = await calculator.calculate_and_store(
        body.store_id, body.kpi_code, body.metric_date, body.value, body.metadata
    )
    return ok(calculated.to_dict())


@router.post("/batch")
async def batch_calculate_kpis(
    body: KpiBatchRequest,
    calculator: KpiCalculator = Depends(get_kpi_calculator),
):
    """Calculate several KPIs for one store/day; failures are reported per KPI."""
    results = await calculator.batch_calculate(body.store_id, body.metric_date, body.kpi_values)
    return batch(results)


@router.get("/stores/{store_id}/latest")
async def latest_kpi_status(
    store_id: UUID,
    calculator: KpiCalculator = Depends(get_kpi_calculator),
):
    return ok(await calculator.get_latest_kpi_status(store_id))
