"""Settlement ledger: the single source of truth for "has this payment been applied"."""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.database import insert_ignoring_conflicts
from agent_settlement.errors import NotFound
from agent_settlement.models.payment import NATIVE_TOKEN, Payment, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InsertResult:
    inserted: bool


def normalize_tx_hash(tx_hash: str) -> str:
    tx_hash = tx_hash.strip().lower()
    if not tx_hash.startswith("0x"):
        tx_hash = f"0x{tx_hash}"
    return tx_hash


async def has(db: AsyncSession, tx_hash: str) -> bool:
    result = await db.execute(
        select(Payment.tx_hash).where(Payment.tx_hash == normalize_tx_hash(tx_hash))
    )
    return result.scalar_one_or_none() is not None


async def find(db: AsyncSession, tx_hash: str) -> Payment | None:
    result = await db.execute(
        select(Payment).where(Payment.tx_hash == normalize_tx_hash(tx_hash))
    )
    return result.scalar_one_or_none()


async def get_payment(db: AsyncSession, tx_hash: str) -> Payment:
    payment = await find(db, tx_hash)
    if payment is None:
        raise NotFound("Payment not found")
    return payment


async def insert_if_absent(
    db: AsyncSession,
    tx_hash: str,
    payer: str,
    amount: int,
    recipient: str | None = None,
    token: str = NATIVE_TOKEN,
) -> InsertResult:
    """Record a settled payment with one atomic check-and-insert.

    Concurrent callers for the same hash all reach the database; the primary
    key lets exactly one INSERT through and the others get inserted=False.
    """
    tx_hash = normalize_tx_hash(tx_hash)
    stmt = (
        insert_ignoring_conflicts(db, Payment)
        .values(
            tx_hash=tx_hash,
            payer=payer.lower(),
            recipient=recipient.lower() if recipient else None,
            amount=amount,
            token=token.lower() if token != NATIVE_TOKEN else token,
            status=PaymentStatus.COMPLETED,
        )
        .on_conflict_do_nothing(index_elements=["tx_hash"])
        .returning(Payment.tx_hash)
    )
    result = await db.execute(stmt)
    inserted = result.scalar_one_or_none() is not None
    await db.commit()

    if inserted:
        logger.info("Payment %s recorded: payer=%s amount=%s token=%s", tx_hash, payer, amount, token)
    else:
        logger.info("Payment %s already recorded by a concurrent writer", tx_hash)
    return InsertResult(inserted=inserted)
