"""Dispute and validator vote models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agent_settlement.database import Base


class DisputeStatus(enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeOutcome(enum.Enum):
    REFUND = "refund"
    RELEASE = "release"


class Dispute(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.task_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    agent_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    raised_by: Mapped[str] = mapped_column(String(42), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    outcome: Mapped[DisputeOutcome | None] = mapped_column(
        Enum(DisputeOutcome, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    votes = relationship(
        "DisputeVote", lazy="selectin", order_by="DisputeVote.voted_at",
    )


class DisputeVote(Base):
    __tablename__ = "dispute_votes"
    __table_args__ = (
        UniqueConstraint("dispute_id", "validator", name="uq_dispute_votes_dispute_validator"),
    )

    vote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.dispute_id", ondelete="RESTRICT"), nullable=False
    )
    validator: Mapped[str] = mapped_column(String(42), nullable=False)
    approve_refund: Mapped[bool] = mapped_column(Boolean, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
