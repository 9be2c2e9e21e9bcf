"""Pydantic v2 schemas for payment verification."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agent_settlement.schemas.common import serialize_enum, validate_address, validate_tx_hash


class PaymentVerifyRequest(BaseModel):
    tx_hash: str = Field(..., min_length=64, max_length=66)
    payer: str = Field(..., min_length=42, max_length=42)
    # Smallest unit of the asset. Optional when task_id supplies the price.
    amount: int | None = Field(None, ge=0)
    task_id: uuid.UUID | None = None
    amount_policy: Literal["strict", "lenient"] | None = None

    @field_validator("tx_hash")
    @classmethod
    def check_tx_hash(cls, v: str) -> str:
        return validate_tx_hash(v)

    @field_validator("payer")
    @classmethod
    def check_payer(cls, v: str) -> str:
        return validate_address(v)

    @model_validator(mode="after")
    def require_amount_or_task(self) -> "PaymentVerifyRequest":
        if self.amount is None and self.task_id is None:
            raise ValueError("Either amount or task_id is required")
        return self


class VerificationResponse(BaseModel):
    tx_hash: str
    accepted: bool
    reason: str | None = None
    message: str
    already_recorded: bool = False
    retryable: bool = False
    warnings: list[str] = []


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tx_hash: str
    payer: str
    recipient: str | None
    amount: int
    token: str
    status: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return serialize_enum(v)
