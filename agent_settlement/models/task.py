"""Task SQLAlchemy model: a unit of work routed to one agent."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from agent_settlement.database import Base
from agent_settlement.models.types import Uint256


class TaskStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


class TaskDisputeStatus(enum.Enum):
    NONE = "none"
    OPEN = "open"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_RELEASE = "resolved_release"


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: {TaskStatus.DISPUTED},
    TaskStatus.DISPUTED: {TaskStatus.RESOLVED, TaskStatus.REFUNDED},
    TaskStatus.RESOLVED: set(),
    TaskStatus.REFUNDED: set(),
}


class Task(Base):
    __tablename__ = "tasks"

    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    requester: Mapped[str] = mapped_column(String(42), nullable=False)
    agent_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("agents.agent_id", ondelete="RESTRICT"), nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[int] = mapped_column(Uint256, nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    # Back-reference by hash only; the Payment row lives in the settlement ledger
    payment_tx_hash: Mapped[str | None] = mapped_column(String(66), unique=True, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review_comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_status: Mapped[TaskDisputeStatus] = mapped_column(
        Enum(TaskDisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TaskDisputeStatus.NONE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
