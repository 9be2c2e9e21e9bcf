"""Settled payment model. Append-only: one row per transaction hash, ever."""

import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from agent_settlement.database import Base
from agent_settlement.models.types import Uint256

NATIVE_TOKEN = "native"


class PaymentStatus(enum.Enum):
    COMPLETED = "completed"


class Payment(Base):
    __tablename__ = "payments"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    payer: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(42), nullable=True)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    token: Mapped[str] = mapped_column(
        String(42), nullable=False, default=NATIVE_TOKEN,
        doc="Stablecoin contract address, or 'native' for the chain's own asset",
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.COMPLETED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
