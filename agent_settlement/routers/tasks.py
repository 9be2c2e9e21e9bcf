"""Task endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.database import get_db
from agent_settlement.schemas.task import TaskComplete, TaskCreate, TaskResponse
from agent_settlement.services import task as task_service

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("", response_model=TaskResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def create_task(
    data: TaskCreate,
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    """Create a task for an agent; wallet and price are resolved up front."""
    task = await task_service.create_task(db, data.requester, data.agent_id, data.description)
    return TaskResponse.model_validate(task)


@router.get("/{task_id}", response_model=TaskResponse, dependencies=[Depends(check_rate_limit)])
async def get_task(
    task_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    task = await task_service.get_task(db, task_id)
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/complete", response_model=TaskResponse, dependencies=[Depends(check_rate_limit)])
async def complete_task(
    task_id: uuid.UUID,
    data: TaskComplete,
    db: AsyncSession = Depends(get_db),
) -> TaskResponse:
    task = await task_service.complete_task(db, task_id, data.result)
    return TaskResponse.model_validate(task)
