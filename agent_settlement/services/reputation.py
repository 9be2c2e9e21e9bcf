"""Reputation: feedback and validation intake, and the score derived from them.

The stored events (feedback, validations, resolved disputes) are the source of
truth. Agent.reputation_score is a cache that refresh_score recomputes from
scratch, so replaying an event or applying events in a different order always
yields the same value.
"""

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.config import settings
from agent_settlement.database import insert_ignoring_conflicts
from agent_settlement.errors import InvalidState, NotFound, ValidatorNotRecognized
from agent_settlement.models.agent import Agent
from agent_settlement.models.dispute import Dispute, DisputeOutcome, DisputeStatus
from agent_settlement.models.feedback import Feedback, Validation
from agent_settlement.models.stake import StakeActionKind
from agent_settlement.models.task import Task
from agent_settlement.schemas.agent import ReputationResponse
from agent_settlement.services import settlement, staking

logger = logging.getLogger(__name__)

# Deterministic feedback ids when the client does not send one
FEEDBACK_NAMESPACE = uuid.UUID("5b0f3c8e-2d4a-4f6b-9a57-0c1e8d2f4b31")

MAX_SCORE = 5


@dataclass(frozen=True)
class FeedbackResult:
    accepted: bool
    feedback_id: uuid.UUID
    duplicate: bool = False
    reason: str | None = None


def derive_feedback_id(task_id: uuid.UUID, payment_proof: str) -> uuid.UUID:
    return uuid.uuid5(FEEDBACK_NAMESPACE, f"{task_id}:{settlement.normalize_tx_hash(payment_proof)}")


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _recency_weight(created_at: datetime, reference: datetime) -> float:
    """Compute recency weight: 30d=2x, 90d=1.5x, older=1x."""
    age_days = (_as_utc(reference) - _as_utc(created_at)).days
    if age_days <= 30:
        return 2.0
    if age_days <= 90:
        return 1.5
    return 1.0


def feedback_component(events: Iterable[tuple[int, datetime]]) -> float | None:
    """Recency-weighted mean of 1-5 scores, on a 0-100 scale. None without feedback.

    Ages are measured against the newest event rather than the wall clock.
    """
    events = list(events)
    if not events:
        return None
    newest = max(_as_utc(created_at) for _, created_at in events)
    total_weight = 0.0
    weighted_sum = 0.0
    for score, created_at in events:
        w = _recency_weight(created_at, newest)
        weighted_sum += score * w
        total_weight += w
    return weighted_sum / total_weight / MAX_SCORE * 100


def validation_component(passed: int, total: int) -> float | None:
    if total == 0:
        return None
    return passed / total * 100


def compute_score(
    feedback: float | None,
    validation: float | None,
    disputes_lost: int,
) -> float:
    neutral = settings.reputation_default_score
    if feedback is None:
        feedback = neutral
    if validation is None:
        validation = neutral
    score = (
        settings.reputation_feedback_weight * feedback
        + settings.reputation_validation_weight * validation
        - disputes_lost * settings.reputation_dispute_penalty
    )
    return round(max(0.0, min(100.0, score)), 2)


async def _feedback_events(db: AsyncSession, agent_id: str) -> list[tuple[int, datetime]]:
    result = await db.execute(
        select(Feedback.score, Feedback.created_at).where(Feedback.agent_id == agent_id)
    )
    return [(score, created_at) for score, created_at in result.all()]


async def _validation_counts(db: AsyncSession, agent_id: str) -> tuple[int, int]:
    result = await db.execute(
        select(Validation.is_valid, func.count())
        .where(Validation.agent_id == agent_id)
        .group_by(Validation.is_valid)
    )
    counts = dict(result.all())
    passed = counts.get(True, 0)
    return passed, passed + counts.get(False, 0)


async def _dispute_counts(db: AsyncSession, agent_id: str) -> tuple[int, int]:
    """Return (lost, won) among resolved disputes."""
    result = await db.execute(
        select(Dispute.outcome, func.count())
        .where(Dispute.agent_id == agent_id, Dispute.status == DisputeStatus.RESOLVED)
        .group_by(Dispute.outcome)
    )
    counts = dict(result.all())
    return counts.get(DisputeOutcome.REFUND, 0), counts.get(DisputeOutcome.RELEASE, 0)


async def current_score(db: AsyncSession, agent_id: str) -> float:
    """Score computed from the stored events only."""
    passed, total = await _validation_counts(db, agent_id)
    lost, _ = await _dispute_counts(db, agent_id)
    return compute_score(
        feedback_component(await _feedback_events(db, agent_id)),
        validation_component(passed, total),
        lost,
    )


async def refresh_score(db: AsyncSession, agent_id: str) -> float:
    """Recompute and store the cached score. Caller commits.

    Locks the agent row so concurrent refreshes for one agent serialize.
    """
    agent = await staking.lock_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found")
    score = await current_score(db, agent_id)
    previous = agent.reputation_score
    agent.reputation_score = Decimal(str(score))
    if previous is None or Decimal(str(previous)) != agent.reputation_score:
        logger.info("Agent %s reputation %s -> %s", agent_id, previous, score)
    return score


# ---------------------------------------------------------------------------
# Feedback intake
# ---------------------------------------------------------------------------


async def submit_feedback(
    db: AsyncSession,
    agent_id: str,
    task_id: uuid.UUID,
    reviewer: str,
    score: int,
    comment: str | None,
    payment_proof: str,
    feedback_id: uuid.UUID | None = None,
) -> FeedbackResult:
    """Record one review authorized by a settled payment.

    Replaying the same feedback id is a successful no-op. The payment proof
    authorizes exactly one review, whatever id is sent with it.
    """
    proof = settlement.normalize_tx_hash(payment_proof)
    if feedback_id is None:
        feedback_id = derive_feedback_id(task_id, proof)

    if await db.get(Feedback, feedback_id) is not None:
        logger.info("Feedback %s replayed, ignoring", feedback_id)
        return FeedbackResult(accepted=True, feedback_id=feedback_id, duplicate=True)

    result = await db.execute(select(Task).where(Task.task_id == task_id))
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFound("Task not found")
    if task.agent_id != agent_id:
        return FeedbackResult(
            accepted=False, feedback_id=feedback_id,
            reason="Task was not handled by this agent",
        )
    if task.payment_tx_hash != proof or not await settlement.has(db, proof):
        logger.warning("Feedback for task %s rejected: proof %s not settled for it", task_id, proof)
        return FeedbackResult(
            accepted=False, feedback_id=feedback_id,
            reason="Payment proof is not a settled payment for this task",
        )

    comment = comment.strip() if comment and comment.strip() else None
    stmt = (
        insert_ignoring_conflicts(db, Feedback)
        .values(
            feedback_id=feedback_id,
            agent_id=agent_id,
            task_id=task_id,
            reviewer=reviewer.lower(),
            score=score,
            comment=comment,
            payment_proof=proof,
        )
        .on_conflict_do_nothing()
        .returning(Feedback.feedback_id)
    )
    inserted = (await db.execute(stmt)).scalar_one_or_none()
    if inserted is None:
        await db.rollback()
        # Lost a race: either the same id (a replay) or the proof under another id
        if await db.get(Feedback, feedback_id) is not None:
            return FeedbackResult(accepted=True, feedback_id=feedback_id, duplicate=True)
        return FeedbackResult(
            accepted=False, feedback_id=feedback_id,
            reason="Payment proof has already been used for feedback",
        )

    task.review_score = score
    task.review_comment = comment

    action_id = None
    if score < settings.low_score_threshold:
        action_id = await _slash_for_low_score(db, agent_id, task_id, feedback_id, score, comment)

    await refresh_score(db, agent_id)
    await db.commit()
    logger.info("Feedback %s recorded: agent=%s task=%s score=%d", feedback_id, agent_id, task_id, score)

    staking.dispatch_stake_action(action_id)
    return FeedbackResult(accepted=True, feedback_id=feedback_id)


async def _slash_for_low_score(
    db: AsyncSession,
    agent_id: str,
    task_id: uuid.UUID,
    feedback_id: uuid.UUID,
    score: int,
    comment: str | None,
) -> uuid.UUID | None:
    if settings.require_comment_for_slash and not comment:
        logger.info("Low score %d for agent %s without comment, not slashing", score, agent_id)
        return None

    agent = await staking.lock_agent(db, agent_id)
    if agent is None:
        raise NotFound("Agent not found")
    forfeited = staking.apply_slash(agent, settings.feedback_slash_amount)
    reason = f"Review score {score}/{MAX_SCORE} - {(comment or 'Low score')[:100]}"
    return await staking.queue_stake_action(
        db,
        StakeActionKind.SLASH,
        agent_id=agent_id,
        amount=forfeited,
        reason=reason,
        task_id=task_id,
        feedback_id=feedback_id,
    )


# ---------------------------------------------------------------------------
# Validator attestations
# ---------------------------------------------------------------------------


async def record_validation(
    db: AsyncSession,
    agent_id: str,
    task_id: uuid.UUID,
    validator: str,
    is_valid: bool,
    comments: str | None = None,
) -> tuple[Validation, bool]:
    """Store one attestation per (task, validator). Returns (row, created)."""
    validator = validator.lower()
    allowed = {v.lower() for v in settings.dispute_validators}
    if allowed and validator not in allowed:
        raise ValidatorNotRecognized()

    result = await db.execute(select(Task).where(Task.task_id == task_id))
    task = result.scalar_one_or_none()
    if task is None:
        raise NotFound("Task not found")
    if task.agent_id != agent_id:
        raise InvalidState("Task was not handled by this agent")

    stmt = (
        insert_ignoring_conflicts(db, Validation)
        .values(
            validation_id=uuid.uuid4(),
            agent_id=agent_id,
            task_id=task_id,
            validator=validator,
            is_valid=is_valid,
            comments=comments,
        )
        .on_conflict_do_nothing(index_elements=["task_id", "validator"])
        .returning(Validation.validation_id)
    )
    created = (await db.execute(stmt)).scalar_one_or_none() is not None
    if created:
        await refresh_score(db, agent_id)
    await db.commit()

    existing = await db.execute(
        select(Validation).where(Validation.task_id == task_id, Validation.validator == validator)
    )
    validation = existing.scalar_one()
    if created:
        logger.info(
            "Validation recorded: agent=%s task=%s validator=%s valid=%s",
            agent_id, task_id, validator, is_valid,
        )
    return validation, created


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_reputation(db: AsyncSession, agent_id: str) -> ReputationResponse:
    """Compute full reputation summary for an agent."""
    result = await db.execute(select(Agent).where(Agent.agent_id == agent_id))
    agent = result.scalar_one_or_none()
    if agent is None:
        raise NotFound("Agent not found")

    events = await _feedback_events(db, agent_id)
    passed, total = await _validation_counts(db, agent_id)
    lost, won = await _dispute_counts(db, agent_id)

    distribution = {score: 0 for score in range(1, MAX_SCORE + 1)}
    for score, _ in events:
        distribution[score] += 1
    average = round(sum(s for s, _ in events) / len(events), 2) if events else None

    return ReputationResponse(
        agent_id=agent_id,
        reputation_score=compute_score(
            feedback_component(events), validation_component(passed, total), lost,
        ),
        cached_score=agent.reputation_score,
        review_count=len(events),
        average_score=average,
        distribution=distribution,
        validation_count=total,
        validation_pass_rate=round(passed / total, 4) if total else None,
        disputes_lost=lost,
        disputes_won=won,
    )


async def get_feedback_for_agent(
    db: AsyncSession, agent_id: str, limit: int = 20, offset: int = 0
) -> list[Feedback]:
    result = await db.execute(
        select(Feedback)
        .where(Feedback.agent_id == agent_id)
        .order_by(Feedback.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def get_validations_for_agent(
    db: AsyncSession, agent_id: str, limit: int = 20, offset: int = 0
) -> list[Validation]:
    result = await db.execute(
        select(Validation)
        .where(Validation.agent_id == agent_id)
        .order_by(Validation.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
