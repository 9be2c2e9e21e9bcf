"""Stake bookkeeping and the on-chain staking collaborator.

Off-chain stake fields on Agent are written only here. Requests to the
staking contract go through the stake_actions outbox: a row is inserted in the
same transaction as the event that caused it (dispute resolution, low-score
review), and a background task sends it after commit.
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime

from eth_account import Account
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import AsyncHTTPProvider, AsyncWeb3

from agent_settlement.config import settings
from agent_settlement.database import insert_ignoring_conflicts
from agent_settlement.models.agent import Agent
from agent_settlement.models.stake import StakeAction, StakeActionKind, StakeActionStatus

logger = logging.getLogger(__name__)

STAKING_ABI = [
    {
        "inputs": [
            {"name": "agent", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "reason", "type": "string"},
        ],
        "name": "slash",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "taskId", "type": "string"}],
        "name": "refund",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

_RECEIPT_TIMEOUT_SECONDS = 120

# Keeps background dispatch tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Off-chain bookkeeping
# ---------------------------------------------------------------------------


def apply_slash(agent: Agent, amount: int) -> int:
    """Forfeit up to ``amount`` of the agent's remaining stake. Returns the amount taken.

    The caller must hold the agent row lock (SELECT ... FOR UPDATE).
    """
    forfeited = min(amount, agent.effective_stake)
    agent.slashed_amount = agent.slashed_amount + forfeited
    if agent.active and agent.minimum_stake > 0 and agent.effective_stake < agent.minimum_stake:
        agent.active = False
        logger.warning(
            "Agent %s deactivated: effective stake %s below minimum %s",
            agent.agent_id, agent.effective_stake, agent.minimum_stake,
        )
    logger.info("Agent %s slashed %s (requested %s)", agent.agent_id, forfeited, amount)
    return forfeited


def apply_stake(agent: Agent, amount: int, tx_hash: str | None = None) -> None:
    """Add stake; activates the agent once its effective stake meets the minimum."""
    agent.staked_amount = agent.staked_amount + amount
    if tx_hash:
        agent.staking_tx_hash = tx_hash
    if not agent.active and agent.effective_stake >= agent.minimum_stake:
        agent.active = True
        logger.info("Agent %s activated with effective stake %s", agent.agent_id, agent.effective_stake)


async def lock_agent(db: AsyncSession, agent_id: str) -> Agent | None:
    result = await db.execute(
        select(Agent).where(Agent.agent_id == agent_id).with_for_update()
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


async def queue_stake_action(
    db: AsyncSession,
    kind: StakeActionKind,
    agent_id: str,
    amount: int,
    reason: str,
    task_id: uuid.UUID | None = None,
    dispute_id: uuid.UUID | None = None,
    feedback_id: uuid.UUID | None = None,
) -> uuid.UUID | None:
    """Insert a stake action unless one already exists for the same origin.

    Does not commit; the row becomes visible together with the event that
    caused it. Returns the new action id, or None if the origin already had one.
    """
    status = StakeActionStatus.PENDING
    if not settings.staking_configured:
        status = StakeActionStatus.SKIPPED

    stmt = (
        insert_ignoring_conflicts(db, StakeAction)
        .values(
            action_id=uuid.uuid4(),
            kind=kind,
            agent_id=agent_id,
            task_id=task_id,
            dispute_id=dispute_id,
            feedback_id=feedback_id,
            amount=amount,
            reason=reason[:256],
            status=status,
            processed_at=datetime.now(UTC) if status == StakeActionStatus.SKIPPED else None,
        )
        .on_conflict_do_nothing()
        .returning(StakeAction.action_id)
    )
    result = await db.execute(stmt)
    action_id = result.scalar_one_or_none()

    if action_id is None:
        logger.info(
            "Stake action for dispute=%s feedback=%s already queued", dispute_id, feedback_id,
        )
    elif status == StakeActionStatus.SKIPPED:
        logger.warning(
            "Staking contract not configured: %s of %s for agent %s recorded as skipped",
            kind.value, amount, agent_id,
        )
    else:
        logger.info("Queued %s action %s for agent %s amount=%s", kind.value, action_id, agent_id, amount)
    return action_id


def dispatch_stake_action(action_id: uuid.UUID | None) -> None:
    """Send a committed pending action in the background. Never blocks the caller."""
    if action_id is None or not settings.staking_configured:
        return
    task = asyncio.create_task(process_stake_action(action_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def get_stake_actions(
    db: AsyncSession, agent_id: str, limit: int = 50
) -> list[StakeAction]:
    result = await db.execute(
        select(StakeAction)
        .where(StakeAction.agent_id == agent_id)
        .order_by(StakeAction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Collaborator client
# ---------------------------------------------------------------------------


class StakingClient:
    """Signs and sends slash/refund calls to the staking contract."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=self.w3.to_checksum_address(contract_address),
            abi=STAKING_ABI,
        )

    @classmethod
    def from_settings(cls) -> "StakingClient":
        return cls(
            settings.resolved_rpc_url,
            settings.staking_contract_address,
            settings.slasher_private_key,
        )

    async def slash(self, agent_address: str, amount: int, reason: str) -> str:
        fn = self.contract.functions.slash(
            self.w3.to_checksum_address(agent_address), amount, reason,
        )
        return await self._send(fn)

    async def refund(self, task_id: str) -> str:
        return await self._send(self.contract.functions.refund(task_id))

    async def _send(self, fn) -> str:  # type: ignore[no-untyped-def]
        nonce = await self.w3.eth.get_transaction_count(self.account.address)
        tx = await fn.build_transaction({
            "from": self.account.address,
            "nonce": nonce,
            "chainId": settings.chain_id,
            "maxFeePerGas": await self.w3.eth.gas_price * 2,
            "maxPriorityFeePerGas": await self.w3.eth.max_priority_fee,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=_RECEIPT_TIMEOUT_SECONDS,
        )
        if receipt["status"] == 0:
            raise RuntimeError(f"Staking transaction {AsyncWeb3.to_hex(tx_hash)} reverted")
        return AsyncWeb3.to_hex(tx_hash)


# ---------------------------------------------------------------------------
# Background processor
# ---------------------------------------------------------------------------


async def process_stake_action(
    action_id: uuid.UUID,
    session_factory: async_sessionmaker | None = None,
    client: StakingClient | None = None,
) -> None:
    """Background task: send one pending action and record the outcome.

    The pending -> sending transition is a conditional UPDATE committed before
    the collaborator is called, so of any number of concurrent workers for the
    same action exactly one sends it.
    """
    if session_factory is None:
        from agent_settlement.database import async_session_factory as session_factory

    async with session_factory() as db:
        claim = await db.execute(
            update(StakeAction)
            .where(
                StakeAction.action_id == action_id,
                StakeAction.status == StakeActionStatus.PENDING,
            )
            .values(status=StakeActionStatus.SENDING)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claim.rowcount != 1:
            logger.info("Stake action %s is not pending, skipping", action_id)
            return

        result = await db.execute(
            select(StakeAction).where(StakeAction.action_id == action_id)
        )
        action = result.scalar_one()

        agent_result = await db.execute(select(Agent).where(Agent.agent_id == action.agent_id))
        agent = agent_result.scalar_one()

        try:
            if client is None:
                client = StakingClient.from_settings()
            if action.kind == StakeActionKind.SLASH:
                if not agent.wallet_address:
                    raise RuntimeError(f"Agent {agent.agent_id} has no wallet to slash")
                tx_hash = await client.slash(agent.wallet_address, action.amount, action.reason)
            else:
                tx_hash = await client.refund(str(action.task_id))
        except Exception as e:
            logger.error("Stake action %s (%s) failed: %s", action_id, action.kind.value, e)
            action.status = StakeActionStatus.FAILED
            action.error_message = str(e)[:1000]
            action.processed_at = datetime.now(UTC)
            await db.commit()
            return

        action.status = StakeActionStatus.CONFIRMED
        action.tx_hash = tx_hash
        action.processed_at = datetime.now(UTC)
        await db.commit()
        logger.info(
            "Stake action %s confirmed: %s agent=%s tx=%s",
            action_id, action.kind.value, action.agent_id, tx_hash,
        )


async def recover_stake_actions(session_factory: async_sessionmaker | None = None) -> int:
    """Re-spawn every pending action. Called once at startup."""
    if session_factory is None:
        from agent_settlement.database import async_session_factory as session_factory

    async with session_factory() as db:
        result = await db.execute(
            select(StakeAction.action_id).where(StakeAction.status == StakeActionStatus.PENDING)
        )
        pending = list(result.scalars().all())
        result = await db.execute(
            select(StakeAction.action_id).where(StakeAction.status == StakeActionStatus.SENDING)
        )
        interrupted = list(result.scalars().all())

    # A send that was cut off may have reached the chain; never resend it blindly
    for action_id in interrupted:
        logger.warning("Stake action %s was interrupted while sending, needs manual review", action_id)

    for action_id in pending:
        dispatch_stake_action(action_id)
    if pending:
        logger.info("Recovered %d pending stake actions", len(pending))
    return len(pending)
