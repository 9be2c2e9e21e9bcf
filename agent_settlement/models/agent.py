"""Agent SQLAlchemy model."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agent_settlement.database import Base
from agent_settlement.models.types import Uint256


class Agent(Base):
    __tablename__ = "agents"

    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    service_type: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    endpoint_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, default="")
    price_per_request: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Materialized view over feedback/validation/dispute events; see services.reputation
    reputation_score: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("50.00")
    )
    staked_amount: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    slashed_amount: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    minimum_stake: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    staking_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def effective_stake(self) -> int:
        return max(0, self.staked_amount - self.slashed_amount)
