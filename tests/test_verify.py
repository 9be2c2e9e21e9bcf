"""Tests for payment verification against the ledger."""

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_settlement.config import settings
from agent_settlement.errors import InvalidState
from agent_settlement.models.payment import NATIVE_TOKEN, Payment, PaymentStatus
from agent_settlement.services import settlement
from agent_settlement.services.payment import (
    AmountPolicy,
    VerificationReason,
    verify_and_record,
    verify_task_payment,
)
from agent_settlement.services.task import get_task
from tests.conftest import (
    AGENT_WALLET,
    OTHER_PAYER,
    PAYER,
    FakeLedger,
    add_agent,
    add_task,
    stablecoin,
    tx_hash,
)


async def _payment_count(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(Payment))
    return result.scalar() or 0


@pytest.mark.asyncio
async def test_stablecoin_transfer_accepted(db_session: AsyncSession, ledger: FakeLedger) -> None:
    """Payer 0xAAA pays 20000 through the stablecoin contract: accepted and recorded."""
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)

    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.accepted
    assert result.reason is None
    assert not result.already_recorded
    assert result.warnings == []

    payment = await settlement.get_payment(db_session, tx_hash(1))
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.payer == PAYER
    assert payment.recipient == AGENT_WALLET
    assert payment.amount == 20000
    assert payment.token == stablecoin()


@pytest.mark.asyncio
async def test_replay_with_other_payer_rejected(db_session: AsyncSession, ledger: FakeLedger) -> None:
    """The same transaction claimed by 0xBBB: sender mismatch and no new row."""
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    calls = ledger.calls

    result = await verify_and_record(db_session, ledger, tx_hash(1), OTHER_PAYER, 20000)
    assert not result.accepted
    assert result.reason == VerificationReason.SENDER_MISMATCH
    assert await _payment_count(db_session) == 1
    assert ledger.calls == calls

    payment = await settlement.get_payment(db_session, tx_hash(1))
    assert payment.payer == PAYER


@pytest.mark.asyncio
async def test_replay_is_idempotent_without_ledger_call(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    first = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    calls = ledger.calls

    # Even with the node down, a recorded hash answers from the ledger table
    ledger.unavailable = True
    second = await verify_and_record(db_session, ledger, tx_hash(1).upper().replace("0X", "0x"), PAYER, 20000)

    assert first.accepted and not first.already_recorded
    assert second.accepted and second.already_recorded
    assert second.message == "Payment already recorded"
    assert ledger.calls == calls
    assert await _payment_count(db_session) == 1


@pytest.mark.asyncio
async def test_transaction_not_found(db_session: AsyncSession, ledger: FakeLedger) -> None:
    result = await verify_and_record(db_session, ledger, tx_hash(404), PAYER, 20000)
    assert not result.accepted
    assert result.reason == VerificationReason.NOT_FOUND
    assert result.message == "Transaction not found"
    assert not result.retryable
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_sender_mismatch(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    result = await verify_and_record(db_session, ledger, tx_hash(1), OTHER_PAYER, 20000)
    assert result.reason == VerificationReason.SENDER_MISMATCH
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_sender_comparison_ignores_case(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER.upper().replace("0X", "0x"), 20000)
    assert result.accepted


@pytest.mark.asyncio
async def test_recipient_mismatch(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, OTHER_PAYER, 20000)
    result = await verify_and_record(
        db_session, ledger, tx_hash(1), PAYER, 20000, expected_recipient=AGENT_WALLET,
    )
    assert result.reason == VerificationReason.RECIPIENT_MISMATCH
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_amount_mismatch_strict(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 10000)
    result = await verify_and_record(
        db_session, ledger, tx_hash(1), PAYER, 20000, amount_policy=AmountPolicy.STRICT,
    )
    assert not result.accepted
    assert result.reason == VerificationReason.AMOUNT_MISMATCH
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_amount_mismatch_lenient_records_actual_amount(
    db_session: AsyncSession, ledger: FakeLedger,
) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 10000)
    result = await verify_and_record(
        db_session, ledger, tx_hash(1), PAYER, 20000, amount_policy=AmountPolicy.LENIENT,
    )
    assert result.accepted
    assert result.warnings == ["amount_mismatch"]

    payment = await settlement.get_payment(db_session, tx_hash(1))
    assert payment.amount == 10000


@pytest.mark.asyncio
async def test_amount_policy_defaults_to_settings(db_session: AsyncSession, ledger: FakeLedger) -> None:
    object.__setattr__(settings, "payment_amount_policy", "strict")
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 10000)
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.reason == VerificationReason.AMOUNT_MISMATCH


@pytest.mark.asyncio
async def test_undecodable_stablecoin_call(db_session: AsyncSession, ledger: FakeLedger) -> None:
    # approve(address,uint256) sent to the stablecoin
    ledger.add_raw(tx_hash(1), PAYER, stablecoin(), bytes.fromhex("095ea7b3") + b"\x00" * 64)
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.reason == VerificationReason.UNDECODABLE_TRANSFER
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_native_transfer_accepted(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_native(tx_hash(1), PAYER, AGENT_WALLET, 10**17)
    result = await verify_and_record(
        db_session, ledger, tx_hash(1), PAYER, 10**17, expected_recipient=AGENT_WALLET,
    )
    assert result.accepted

    payment = await settlement.get_payment(db_session, tx_hash(1))
    assert payment.token == NATIVE_TOKEN
    assert payment.amount == 10**17
    assert payment.recipient == AGENT_WALLET


@pytest.mark.asyncio
async def test_reverted_transaction(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000, status=0)
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.reason == VerificationReason.REVERTED
    assert not result.retryable
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_pending_transaction_is_not_final(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000, mined=False)
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.reason == VerificationReason.NOT_FINAL
    assert result.retryable
    assert await _payment_count(db_session) == 0


@pytest.mark.asyncio
async def test_confirmations_required(db_session: AsyncSession, ledger: FakeLedger) -> None:
    object.__setattr__(settings, "payment_confirmations_required", 3)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000, block=99)
    ledger.head = 100

    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.reason == VerificationReason.NOT_FINAL

    ledger.head = 101
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.accepted


@pytest.mark.asyncio
async def test_ledger_unavailable_is_retryable(db_session: AsyncSession, ledger: FakeLedger) -> None:
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    ledger.unavailable = True

    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert not result.accepted
    assert result.reason == VerificationReason.LEDGER_UNAVAILABLE
    assert result.retryable
    assert await _payment_count(db_session) == 0

    ledger.unavailable = False
    result = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert result.accepted


@pytest.mark.asyncio
async def test_concurrent_verifications_record_once(
    session_factory: async_sessionmaker[AsyncSession], ledger: FakeLedger,
) -> None:
    """Ten concurrent claims for one hash: all accepted, one row, one first writer."""
    ledger.add_transfer(tx_hash(9), PAYER, AGENT_WALLET, 20000)

    async def claim() -> tuple[bool, bool]:
        async with session_factory() as db:
            result = await verify_and_record(db, ledger, tx_hash(9), PAYER, 20000)
            return result.accepted, result.already_recorded

    results = await asyncio.gather(*(claim() for _ in range(10)))
    assert all(accepted for accepted, _ in results)
    assert sum(1 for _, already in results if not already) == 1

    async with session_factory() as db:
        assert await _payment_count(db) == 1


# ---------------------------------------------------------------------------
# Task payments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_task_payment_links_task(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)

    result = await verify_task_payment(db_session, ledger, task.task_id, tx_hash(1), PAYER)
    assert result.accepted

    refreshed = await get_task(db_session, task.task_id)
    assert refreshed.payment_tx_hash == tx_hash(1)


@pytest.mark.asyncio
async def test_task_payment_to_wrong_wallet(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, OTHER_PAYER, 20000)

    result = await verify_task_payment(db_session, ledger, task.task_id, tx_hash(1), PAYER)
    assert result.reason == VerificationReason.RECIPIENT_MISMATCH

    refreshed = await get_task(db_session, task.task_id)
    assert refreshed.payment_tx_hash is None


@pytest.mark.asyncio
async def test_task_payment_uses_task_price(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 15000)

    result = await verify_task_payment(
        db_session, ledger, task.task_id, tx_hash(1), PAYER, amount_policy=AmountPolicy.STRICT,
    )
    assert result.reason == VerificationReason.AMOUNT_MISMATCH


@pytest.mark.asyncio
async def test_task_already_paid_by_other_hash(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    ledger.add_transfer(tx_hash(2), PAYER, AGENT_WALLET, 20000)
    await verify_task_payment(db_session, ledger, task.task_id, tx_hash(1), PAYER)

    with pytest.raises(InvalidState):
        await verify_task_payment(db_session, ledger, task.task_id, tx_hash(2), PAYER)


@pytest.mark.asyncio
async def test_payment_cannot_pay_two_tasks(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    first = await add_task(db_session, price=20000)
    second = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    await verify_task_payment(db_session, ledger, first.task_id, tx_hash(1), PAYER)

    with pytest.raises(InvalidState):
        await verify_task_payment(db_session, ledger, second.task_id, tx_hash(1), PAYER)


@pytest.mark.asyncio
async def test_recorded_payment_to_other_wallet_cannot_pay_task(
    db_session: AsyncSession, ledger: FakeLedger,
) -> None:
    """A hash settled through a plain verification still has to pay the task's agent."""
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    stranger = "0x" + "e" * 40
    ledger.add_transfer(tx_hash(1), PAYER, stranger, 20000)

    first = await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)
    assert first.accepted

    result = await verify_task_payment(db_session, ledger, task.task_id, tx_hash(1), PAYER)
    assert not result.accepted
    assert result.reason == VerificationReason.RECIPIENT_MISMATCH

    refreshed = await get_task(db_session, task.task_id)
    assert refreshed.payment_tx_hash is None


@pytest.mark.asyncio
async def test_recorded_underpayment_cannot_pay_task_strict(
    db_session: AsyncSession, ledger: FakeLedger,
) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 15000)
    await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 15000)
    calls = ledger.calls

    result = await verify_task_payment(
        db_session, ledger, task.task_id, tx_hash(1), PAYER, amount_policy=AmountPolicy.STRICT,
    )
    assert result.reason == VerificationReason.AMOUNT_MISMATCH
    assert ledger.calls == calls

    lenient = await verify_task_payment(
        db_session, ledger, task.task_id, tx_hash(1), PAYER, amount_policy=AmountPolicy.LENIENT,
    )
    assert lenient.accepted and lenient.already_recorded
    assert lenient.warnings == ["amount_mismatch"]


@pytest.mark.asyncio
async def test_recorded_payment_to_agent_links_task(db_session: AsyncSession, ledger: FakeLedger) -> None:
    await add_agent(db_session)
    task = await add_task(db_session, price=20000)
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    await verify_and_record(db_session, ledger, tx_hash(1), PAYER, 20000)

    result = await verify_task_payment(db_session, ledger, task.task_id, tx_hash(1), PAYER)
    assert result.accepted and result.already_recorded

    refreshed = await get_task(db_session, task.task_id)
    assert refreshed.payment_tx_hash == tx_hash(1)


@pytest.mark.asyncio
async def test_unconfigured_stablecoin_checks_native_value(
    db_session: AsyncSession, ledger: FakeLedger,
) -> None:
    """Without a configured contract a token call is not decoded; its native value is compared."""
    ledger.add_transfer(tx_hash(1), PAYER, AGENT_WALLET, 20000)
    object.__setattr__(settings, "stablecoin_contract_address", "")

    result = await verify_and_record(
        db_session, ledger, tx_hash(1), PAYER, 20000, amount_policy=AmountPolicy.STRICT,
    )
    assert result.reason == VerificationReason.AMOUNT_MISMATCH
    assert await _payment_count(db_session) == 0
