"""
Tasks Router — remediation task queue.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from alerts.manager import AlertManager, task_to_dict
from api.deps import get_alert_manager
from api.responses import ok

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


class CompleteTaskRequest(BaseModel):
    completed_by: str | None = None
    outcome: str | None = None


class TaskStatusRequest(BaseModel):
    status: str


@router.get("/pending")
async def list_pending_tasks(
    limit: int = Query(50, ge=1, le=200),
    manager: AlertManager = Depends(get_alert_manager),
):
    return ok([task_to_dict(t) for t in await manager.get_pending_tasks(limit)])


@router.get("/overdue")
async def list_overdue_tasks(
    limit: int = Query(50, ge=1, le=200),
    manager: AlertManager = Depends(get_alert_manager),
):
    return ok([task_to_dict(t) for t in await manager.get_overdue_tasks(limit)])


@router.post("/{task_id}/complete")
async def complete_task(
    task_id: UUID,
    body: CompleteTaskRequest | None = None,
    manager: AlertManager = Depends(get_alert_manager),
):
    body = body or CompleteTaskRequest()
    task = await manager.complete_task(task_id, completed_by=body.completed_by, outcome=body.outcome)
    return ok(task_to_dict(task))


@router.post("/{task_id}/status")
async def update_task_status(
    task_id: UUID,
    body: TaskStatusRequest,
    manager: AlertManager = Depends(get_alert_manager),
):
    task = await manager.update_task_status(task_id, body.status)
    return ok(task_to_dict(task))
