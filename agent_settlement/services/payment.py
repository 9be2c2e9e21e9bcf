"""Payment verification: confirm a claimed transfer on-chain, then settle it once.

Verification failures are returned as VerificationResult values, never raised,
so the caller (task/payment flow) decides whether to retry. Only
LEDGER_UNAVAILABLE and NOT_FINAL are worth retrying with the same claim.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.config import settings
from agent_settlement.errors import InvalidState, LedgerUnavailable, UndecodableTransfer
from agent_settlement.models.agent import Agent
from agent_settlement.models.payment import NATIVE_TOKEN
from agent_settlement.services import settlement
from agent_settlement.services import task as task_service
from agent_settlement.services.ledger import LedgerClient, decode_transfer

logger = logging.getLogger(__name__)


class AmountPolicy(enum.Enum):
    STRICT = "strict"
    LENIENT = "lenient"


class VerificationReason(enum.Enum):
    NOT_FOUND = "not_found"
    SENDER_MISMATCH = "sender_mismatch"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNDECODABLE_TRANSFER = "undecodable_transfer"
    REVERTED = "reverted"
    NOT_FINAL = "not_final"
    LEDGER_UNAVAILABLE = "ledger_unavailable"


_MESSAGES = {
    VerificationReason.NOT_FOUND: "Transaction not found",
    VerificationReason.SENDER_MISMATCH: "Transaction was not sent by the claimed payer",
    VerificationReason.RECIPIENT_MISMATCH: "Transaction does not pay the expected recipient",
    VerificationReason.AMOUNT_MISMATCH: "Transferred amount does not match the claimed amount",
    VerificationReason.UNDECODABLE_TRANSFER: "Transaction is not a readable token transfer",
    VerificationReason.REVERTED: "Transaction reverted on chain",
    VerificationReason.NOT_FINAL: "Transaction is not final yet",
    VerificationReason.LEDGER_UNAVAILABLE: "Blockchain node is unavailable, try again later",
}

_RETRYABLE = {VerificationReason.LEDGER_UNAVAILABLE, VerificationReason.NOT_FINAL}


@dataclass
class VerificationResult:
    accepted: bool
    reason: VerificationReason | None = None
    already_recorded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.reason is not None:
            return _MESSAGES[self.reason]
        if self.already_recorded:
            return "Payment already recorded"
        return "Payment verified and recorded"

    @property
    def retryable(self) -> bool:
        return self.reason in _RETRYABLE


def _reject(reason: VerificationReason) -> VerificationResult:
    return VerificationResult(accepted=False, reason=reason)


def _resolve_policy(policy: AmountPolicy | None) -> AmountPolicy:
    if policy is not None:
        return policy
    return AmountPolicy(settings.payment_amount_policy)


def _amount_rejected(
    tx_hash: str, amount: int, claimed_amount: int, policy: AmountPolicy, warnings: list[str],
) -> bool:
    """True when a mismatch rejects the claim. Lenient mismatches are added to warnings."""
    if amount == claimed_amount:
        return False
    if policy == AmountPolicy.STRICT:
        logger.warning("Transaction %s amount mismatch: %s vs %s", tx_hash, amount, claimed_amount)
        return True
    logger.warning(
        "Transaction %s amount mismatch accepted under lenient policy: %s vs %s",
        tx_hash, amount, claimed_amount,
    )
    warnings.append(VerificationReason.AMOUNT_MISMATCH.value)
    return False


async def verify_and_record(
    db: AsyncSession,
    ledger: LedgerClient,
    tx_hash: str,
    claimed_payer: str,
    claimed_amount: int,
    *,
    expected_recipient: str | None = None,
    amount_policy: AmountPolicy | None = None,
) -> VerificationResult:
    """Verify a claimed payment against the ledger and record it exactly once."""
    tx_hash = settlement.normalize_tx_hash(tx_hash)
    policy = _resolve_policy(amount_policy)

    # 1. Idempotent short-circuit: a recorded hash is never re-verified on chain,
    # but the stored row must still meet this claim's expectations
    recorded = await settlement.find(db, tx_hash)
    if recorded is not None:
        if recorded.payer != claimed_payer.lower():
            logger.warning(
                "Payment %s already recorded for %s, claimed by %s", tx_hash, recorded.payer, claimed_payer,
            )
            return _reject(VerificationReason.SENDER_MISMATCH)
        if expected_recipient is not None and recorded.recipient != expected_recipient.lower():
            logger.warning(
                "Payment %s already recorded to %s, expected %s",
                tx_hash, recorded.recipient, expected_recipient,
            )
            return _reject(VerificationReason.RECIPIENT_MISMATCH)
        warnings: list[str] = []
        if _amount_rejected(tx_hash, recorded.amount, claimed_amount, policy, warnings):
            return _reject(VerificationReason.AMOUNT_MISMATCH)
        logger.info("Payment %s already processed", tx_hash)
        return VerificationResult(accepted=True, already_recorded=True, warnings=warnings)

    try:
        # 2. Fetch the transaction
        tx = await ledger.fetch_transaction(tx_hash)
        if tx is None:
            logger.warning("Transaction %s not found", tx_hash)
            return _reject(VerificationReason.NOT_FOUND)

        # 3. Sender
        if tx.sender != claimed_payer.lower():
            logger.warning("Transaction %s sender mismatch: %s vs %s", tx_hash, tx.sender, claimed_payer)
            return _reject(VerificationReason.SENDER_MISMATCH)

        # 4-6. Recipient and amount, by asset
        stablecoin = settings.stablecoin_contract_address.lower()
        if stablecoin and tx.to == stablecoin:
            try:
                transfer = decode_transfer(tx)
            except UndecodableTransfer as e:
                logger.warning("Transaction %s: %s", tx_hash, e.detail)
                return _reject(VerificationReason.UNDECODABLE_TRANSFER)
            recipient, amount, token = transfer.to, transfer.amount, stablecoin
        else:
            logger.info("Transaction %s is not a stablecoin transfer, checking native value", tx_hash)
            recipient, amount, token = tx.to, tx.value, NATIVE_TOKEN

        if expected_recipient is not None and recipient != expected_recipient.lower():
            logger.warning(
                "Transaction %s recipient mismatch: %s vs %s", tx_hash, recipient, expected_recipient,
            )
            return _reject(VerificationReason.RECIPIENT_MISMATCH)

        warnings = []
        if _amount_rejected(tx_hash, amount, claimed_amount, policy, warnings):
            return _reject(VerificationReason.AMOUNT_MISMATCH)

        # 7. Finality
        receipt = await ledger.fetch_receipt(tx_hash)
        if receipt is None:
            return _reject(VerificationReason.NOT_FINAL)
        if receipt.status == 0:
            logger.warning("Transaction %s reverted in block %s", tx_hash, receipt.block_number)
            return _reject(VerificationReason.REVERTED)
        required = settings.payment_confirmations_required
        if required > 1:
            confirmations = await ledger.block_number() - receipt.block_number + 1
            if confirmations < required:
                logger.info(
                    "Transaction %s has %d/%d confirmations", tx_hash, confirmations, required,
                )
                return _reject(VerificationReason.NOT_FINAL)

    except LedgerUnavailable:
        logger.warning("Verification of %s deferred: ledger unavailable", tx_hash)
        return _reject(VerificationReason.LEDGER_UNAVAILABLE)

    # 8. Record. Losing a race to a concurrent writer is still a success.
    inserted = await settlement.insert_if_absent(
        db, tx_hash, payer=tx.sender, amount=amount, recipient=recipient, token=token,
    )
    return VerificationResult(
        accepted=True,
        already_recorded=not inserted.inserted,
        warnings=warnings,
    )


async def verify_task_payment(
    db: AsyncSession,
    ledger: LedgerClient,
    task_id: uuid.UUID,
    tx_hash: str,
    claimed_payer: str,
    claimed_amount: int | None = None,
    amount_policy: AmountPolicy | None = None,
) -> VerificationResult:
    """Verify a payment for a task: the task's price and agent wallet are the expectation.

    On acceptance the task keeps a back-reference to the transaction hash.
    """
    task = await task_service.get_task(db, task_id)
    tx_hash = settlement.normalize_tx_hash(tx_hash)
    if task.payment_tx_hash is not None and task.payment_tx_hash != tx_hash:
        raise InvalidState("Task is already paid by a different transaction")

    agent_result = await db.execute(select(Agent).where(Agent.agent_id == task.agent_id))
    agent = agent_result.scalar_one()
    price = task.price
    expected_recipient = agent.wallet_address or None

    verification = await verify_and_record(
        db,
        ledger,
        tx_hash,
        claimed_payer,
        price if claimed_amount is None else claimed_amount,
        expected_recipient=expected_recipient,
        amount_policy=amount_policy,
    )

    if verification.accepted:
        await task_service.link_payment(db, task_id, tx_hash)
    return verification
