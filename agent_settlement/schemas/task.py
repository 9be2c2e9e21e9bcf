"""Pydantic v2 schemas for Tasks."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_settlement.schemas.common import serialize_enum, validate_address, validate_agent_id


class TaskCreate(BaseModel):
    requester: str = Field(..., min_length=42, max_length=42)
    agent_id: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., min_length=1, max_length=10_000)

    @field_validator("requester")
    @classmethod
    def check_requester(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("agent_id")
    @classmethod
    def check_agent_id(cls, v: str) -> str:
        return validate_agent_id(v)


class TaskComplete(BaseModel):
    result: str | None = Field(None, max_length=100_000)


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: uuid.UUID
    requester: str
    agent_id: str
    description: str
    price: int
    status: str
    payment_tx_hash: str | None
    result: str | None
    review_score: int | None
    review_comment: str | None
    dispute_status: str
    created_at: datetime
    completed_at: datetime | None

    @field_validator("status", "dispute_status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return serialize_enum(v)
