"""Task lifecycle: creation through routing, completion, payment back-reference."""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.errors import InvalidState, NotFound
from agent_settlement.models.task import VALID_TRANSITIONS, Task, TaskStatus
from agent_settlement.services import directory, settlement

logger = logging.getLogger(__name__)


def assert_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise 409 if the state transition is not valid."""
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot transition task from {current.value} to {target.value}")


async def create_task(
    db: AsyncSession, requester: str, agent_id: str, description: str
) -> Task:
    """Create a task for a routable agent, fixing the price at creation time."""
    route = await directory.resolve_route(db, agent_id)
    task = Task(
        task_id=uuid.uuid4(),
        requester=requester.lower(),
        agent_id=route.agent_id,
        description=description,
        price=route.price,
        status=TaskStatus.PENDING,
    )
    db.add(task)
    await db.commit()
    await db.refresh(task)
    logger.info("Task %s created: agent=%s price=%s", task.task_id, route.agent_id, route.price)
    return task


async def get_task(db: AsyncSession, task_id: uuid.UUID, for_update: bool = False) -> Task:
    query = select(Task).where(Task.task_id == task_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFound("Task not found")
    return task


async def complete_task(db: AsyncSession, task_id: uuid.UUID, result: str | None = None) -> Task:
    task = await get_task(db, task_id, for_update=True)
    assert_transition(task.status, TaskStatus.COMPLETED)
    task.status = TaskStatus.COMPLETED
    task.result = result
    task.completed_at = datetime.now(UTC)
    await db.commit()
    await db.refresh(task)
    logger.info("Task %s completed", task_id)
    return task


async def link_payment(db: AsyncSession, task_id: uuid.UUID, tx_hash: str) -> Task:
    """Attach a settled payment to its task. Idempotent for the same hash."""
    tx_hash = settlement.normalize_tx_hash(tx_hash)
    task = await get_task(db, task_id, for_update=True)
    if task.payment_tx_hash == tx_hash:
        return task
    if task.payment_tx_hash is not None:
        raise InvalidState("Task is already paid by a different transaction")
    if not await settlement.has(db, tx_hash):
        raise InvalidState("Payment has not been settled")
    other = await db.execute(select(Task.task_id).where(Task.payment_tx_hash == tx_hash))
    if other.scalar_one_or_none() is not None:
        raise InvalidState("Payment is already linked to another task")
    task.payment_tx_hash = tx_hash
    await db.commit()
    await db.refresh(task)
    logger.info("Task %s linked to payment %s", task_id, tx_hash)
    return task
