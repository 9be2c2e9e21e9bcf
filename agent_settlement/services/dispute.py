"""Dispute lifecycle: raise, collect validator votes, resolve once at quorum."""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.config import settings
from agent_settlement.database import insert_ignoring_conflicts
from agent_settlement.errors import (
    AlreadyResolved,
    DuplicateVote,
    Forbidden,
    InvalidState,
    NotFound,
    ValidatorNotRecognized,
)
from agent_settlement.models.dispute import Dispute, DisputeOutcome, DisputeStatus, DisputeVote
from agent_settlement.models.stake import StakeActionKind
from agent_settlement.models.task import TaskDisputeStatus, TaskStatus
from agent_settlement.services import reputation, staking
from agent_settlement.services import task as task_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteResult:
    accepted: bool
    resolved: bool
    votes_cast: int
    outcome: DisputeOutcome | None = None


def decide_outcome(votes: list[bool]) -> DisputeOutcome:
    """Majority of approve_refund votes; a tie goes against the agent."""
    refunds = sum(1 for approve in votes if approve)
    if refunds >= len(votes) - refunds:
        return DisputeOutcome.REFUND
    return DisputeOutcome.RELEASE


async def raise_dispute(
    db: AsyncSession, task_id: uuid.UUID, reason: str, raised_by: str
) -> Dispute:
    """Open a dispute on a completed task. Only the requester may, once per task."""
    task = await task_service.get_task(db, task_id, for_update=True)
    if task.requester != raised_by.lower():
        raise Forbidden("Only the task requester can raise a dispute")
    if task.dispute_status != TaskDisputeStatus.NONE:
        raise InvalidState("A dispute already exists for this task")
    task_service.assert_transition(task.status, TaskStatus.DISPUTED)

    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        task_id=task_id,
        agent_id=task.agent_id,
        raised_by=raised_by.lower(),
        reason=reason,
        status=DisputeStatus.OPEN,
    )
    db.add(dispute)
    task.status = TaskStatus.DISPUTED
    task.dispute_status = TaskDisputeStatus.OPEN
    await db.commit()
    await db.refresh(dispute, attribute_names=["votes"])

    logger.warning(
        "Dispute %s raised on task %s (agent %s) by %s",
        dispute.dispute_id, task_id, task.agent_id, dispute.raised_by,
    )
    return dispute


async def vote_on_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    validator: str,
    approve_refund: bool,
    comment: str | None = None,
) -> VoteResult:
    """Record a validator vote and resolve the dispute when quorum is reached.

    The first vote per validator is binding. Votes serialize per dispute on the
    dispute row lock; the conditional UPDATE guarantees a single resolver.
    """
    validator = validator.lower()
    allowed = {v.lower() for v in settings.dispute_validators}
    if allowed and validator not in allowed:
        raise ValidatorNotRecognized()

    locked = await db.execute(
        select(Dispute.status, Dispute.task_id, Dispute.agent_id)
        .where(Dispute.dispute_id == dispute_id)
        .with_for_update()
    )
    row = locked.one_or_none()
    if row is None:
        raise NotFound("Dispute not found")
    status, task_id, agent_id = row
    if status != DisputeStatus.OPEN:
        await db.rollback()
        raise AlreadyResolved()

    stmt = (
        insert_ignoring_conflicts(db, DisputeVote)
        .values(
            vote_id=uuid.uuid4(),
            dispute_id=dispute_id,
            validator=validator,
            approve_refund=approve_refund,
            comment=comment,
        )
        .on_conflict_do_nothing(index_elements=["dispute_id", "validator"])
        .returning(DisputeVote.vote_id)
    )
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        await db.rollback()
        logger.warning("Duplicate vote from %s on dispute %s ignored", validator, dispute_id)
        raise DuplicateVote()

    logger.info(
        "Vote on dispute %s by %s: %s", dispute_id, validator,
        "refund" if approve_refund else "release",
    )

    votes_result = await db.execute(
        select(DisputeVote.approve_refund).where(DisputeVote.dispute_id == dispute_id)
    )
    votes = list(votes_result.scalars().all())
    if len(votes) < settings.dispute_quorum:
        await db.commit()
        return VoteResult(accepted=True, resolved=False, votes_cast=len(votes))

    outcome = decide_outcome(votes)
    resolved = await db.execute(
        update(Dispute)
        .where(Dispute.dispute_id == dispute_id, Dispute.status == DisputeStatus.OPEN)
        .values(status=DisputeStatus.RESOLVED, outcome=outcome, resolved_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if resolved.rowcount != 1:
        # Another resolver won; this vote arrived after resolution
        await db.rollback()
        raise AlreadyResolved()

    action_id = await _apply_outcome(db, dispute_id, task_id, agent_id, outcome)
    await db.commit()
    logger.info(
        "Dispute %s resolved: %s (%d refund / %d votes)",
        dispute_id, outcome.value, sum(votes), len(votes),
    )

    staking.dispatch_stake_action(action_id)
    return VoteResult(accepted=True, resolved=True, votes_cast=len(votes), outcome=outcome)


async def _apply_outcome(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    task_id: uuid.UUID,
    agent_id: str,
    outcome: DisputeOutcome,
) -> uuid.UUID | None:
    """Move the task out of DISPUTED and queue the single terminal stake action."""
    task = await task_service.get_task(db, task_id, for_update=True)

    if outcome == DisputeOutcome.RELEASE:
        task_service.assert_transition(task.status, TaskStatus.RESOLVED)
        task.status = TaskStatus.RESOLVED
        task.dispute_status = TaskDisputeStatus.RESOLVED_RELEASE
        return None

    task_service.assert_transition(task.status, TaskStatus.REFUNDED)
    task.status = TaskStatus.REFUNDED
    task.dispute_status = TaskDisputeStatus.RESOLVED_REFUND

    agent = await staking.lock_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found")
    forfeited = staking.apply_slash(agent, settings.dispute_slash_amount)
    action_id = await staking.queue_stake_action(
        db,
        StakeActionKind.REFUND,
        agent_id=agent_id,
        amount=forfeited,
        reason=f"Dispute {dispute_id} resolved in favor of the requester",
        task_id=task_id,
        dispute_id=dispute_id,
    )
    await reputation.refresh_score(db, agent_id)
    return action_id


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    result = await db.execute(
        select(Dispute)
        .where(Dispute.dispute_id == dispute_id)
        .execution_options(populate_existing=True)
    )
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFound("Dispute not found")
    return dispute


async def get_disputes(
    db: AsyncSession,
    status: DisputeStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    query = select(Dispute).order_by(Dispute.created_at.desc())
    if status is not None:
        query = query.where(Dispute.status == status)
    result = await db.execute(query.limit(limit).offset(offset))
    return list(result.scalars().all())


async def get_dispute_votes(db: AsyncSession, dispute_id: uuid.UUID) -> list[DisputeVote]:
    await get_dispute(db, dispute_id)
    result = await db.execute(
        select(DisputeVote)
        .where(DisputeVote.dispute_id == dispute_id)
        .order_by(DisputeVote.voted_at.desc())
    )
    return list(result.scalars().all())

