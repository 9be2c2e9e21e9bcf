"""Pydantic v2 schemas for Agent and directory endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_settlement.schemas.common import serialize_enum, validate_address, validate_agent_id, validate_tx_hash


def _validate_endpoint_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError("endpoint_url must use http or https")
    if not parsed.hostname:
        raise ValueError("endpoint_url must have a valid hostname")
    return url


class AgentCreate(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    service_type: str = Field("general", min_length=1, max_length=64)
    description: str | None = Field(None, max_length=4096)
    endpoint_url: str | None = Field(None, max_length=2048)
    wallet_address: str | None = None
    price_per_request: int | None = Field(None, ge=0)
    minimum_stake: int | None = Field(None, ge=0)

    @field_validator("agent_id")
    @classmethod
    def check_agent_id(cls, v: str) -> str:
        return validate_agent_id(v)

    @field_validator("wallet_address")
    @classmethod
    def check_wallet(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_address(v)

    @field_validator("endpoint_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_endpoint_url(v)


class AgentUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    service_type: str | None = Field(None, min_length=1, max_length=64)
    description: str | None = Field(None, max_length=4096)
    endpoint_url: str | None = Field(None, max_length=2048)
    wallet_address: str | None = None
    price_per_request: int | None = Field(None, ge=0)
    active: bool | None = None

    @field_validator("wallet_address")
    @classmethod
    def check_wallet(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return v
        return validate_address(v)

    @field_validator("endpoint_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_endpoint_url(v)


class AgentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    agent_id: str
    name: str
    service_type: str
    description: str | None
    endpoint_url: str | None
    wallet_address: str
    price_per_request: int | None
    active: bool
    reputation_score: Decimal
    staked_amount: int
    slashed_amount: int
    effective_stake: int
    minimum_stake: int
    staking_tx_hash: str | None
    created_at: datetime
    updated_at: datetime


class StakeRequest(BaseModel):
    amount: int = Field(..., gt=0)
    tx_hash: str | None = None

    @field_validator("tx_hash")
    @classmethod
    def check_tx_hash(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_tx_hash(v)


class StakeActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action_id: uuid.UUID
    kind: str
    agent_id: str
    task_id: uuid.UUID | None
    dispute_id: uuid.UUID | None
    feedback_id: uuid.UUID | None
    amount: int
    reason: str
    status: str
    tx_hash: str | None
    error_message: str | None
    created_at: datetime
    processed_at: datetime | None

    @field_validator("kind", "status", mode="before")
    @classmethod
    def serialize_enums(cls, v: object) -> str:
        return serialize_enum(v)


class WalletResponse(BaseModel):
    agent_id: str
    wallet_address: str


class PriceResponse(BaseModel):
    agent_id: str | None
    price: int
    is_default: bool


class RouteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    agent_id: str
    wallet_address: str
    price: int


class ReputationResponse(BaseModel):
    agent_id: str
    reputation_score: float
    cached_score: Decimal
    review_count: int
    average_score: float | None = None
    distribution: dict[int, int]
    validation_count: int
    validation_pass_rate: float | None = None
    disputes_lost: int
    disputes_won: int
