"""Outbox of requests to the on-chain staking collaborator."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agent_settlement.database import Base
from agent_settlement.models.types import Uint256


class StakeActionKind(enum.Enum):
    SLASH = "slash"
    REFUND = "refund"


class StakeActionStatus(enum.Enum):
    PENDING = "pending"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StakeAction(Base):
    """One row per terminal side effect.

    The unique origin columns (dispute_id / feedback_id) are what guarantees a
    resolved dispute or a low-score review triggers at most one request.
    """
    __tablename__ = "stake_actions"

    action_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[StakeActionKind] = mapped_column(
        Enum(StakeActionKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    agent_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    task_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), nullable=True
    )
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    feedback_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("feedback.feedback_id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    amount: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[StakeActionStatus] = mapped_column(
        Enum(StakeActionStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=StakeActionStatus.PENDING,
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
