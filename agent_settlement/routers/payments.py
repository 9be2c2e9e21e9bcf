"""Payment verification endpoints."""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.database import get_db
from agent_settlement.errors import NotFound
from agent_settlement.schemas.common import validate_tx_hash
from agent_settlement.schemas.payment import PaymentResponse, PaymentVerifyRequest, VerificationResponse
from agent_settlement.services import payment as payment_service
from agent_settlement.services import settlement
from agent_settlement.services.ledger import LedgerClient, get_ledger_client
from agent_settlement.services.payment import AmountPolicy, VerificationReason

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/verify",
    response_model=VerificationResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def verify_payment(
    data: PaymentVerifyRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger_client),
) -> VerificationResponse:
    """Verify a claimed on-chain payment and record it once.

    Accepted (new or already recorded) answers 200. A rejected claim answers
    402 with the reason; an unreachable ledger answers 503 with Retry-After.
    """
    policy = AmountPolicy(data.amount_policy) if data.amount_policy else None
    if data.task_id is not None:
        result = await payment_service.verify_task_payment(
            db, ledger, data.task_id, data.tx_hash, data.payer,
            claimed_amount=data.amount, amount_policy=policy,
        )
    else:
        result = await payment_service.verify_and_record(
            db, ledger, data.tx_hash, data.payer, data.amount, amount_policy=policy,
        )

    if result.reason == VerificationReason.LEDGER_UNAVAILABLE:
        response.status_code = 503
        response.headers["Retry-After"] = "5"
    elif not result.accepted:
        response.status_code = 402

    return VerificationResponse(
        tx_hash=data.tx_hash,
        accepted=result.accepted,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        already_recorded=result.already_recorded,
        retryable=result.retryable,
        warnings=result.warnings,
    )


@router.get(
    "/{tx_hash}",
    response_model=PaymentResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_payment(
    tx_hash: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Look up a settled payment by transaction hash."""
    try:
        tx_hash = validate_tx_hash(tx_hash)
    except ValueError:
        raise NotFound("Payment not found") from None
    payment = await settlement.get_payment(db, tx_hash)
    return PaymentResponse.model_validate(payment)
