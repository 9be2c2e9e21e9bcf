"""Pydantic v2 schemas for Disputes and validator votes."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_settlement.schemas.common import serialize_enum, validate_address


class DisputeCreate(BaseModel):
    task_id: uuid.UUID
    reason: str = Field(..., min_length=1, max_length=4096)
    raised_by: str = Field(..., min_length=42, max_length=42)

    @field_validator("raised_by")
    @classmethod
    def check_raised_by(cls, v: str) -> str:
        return validate_address(v)


class VoteCreate(BaseModel):
    validator: str = Field(..., min_length=42, max_length=42)
    approve_refund: bool
    comment: str | None = Field(None, max_length=4096)

    @field_validator("validator")
    @classmethod
    def check_validator(cls, v: str) -> str:
        return validate_address(v)


class DisputeVoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vote_id: uuid.UUID
    dispute_id: uuid.UUID
    validator: str
    approve_refund: bool
    comment: str | None
    voted_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    task_id: uuid.UUID
    agent_id: str
    raised_by: str
    reason: str
    status: str
    outcome: str | None
    created_at: datetime
    resolved_at: datetime | None
    votes: list[DisputeVoteResponse] = []

    @field_validator("status", "outcome", mode="before")
    @classmethod
    def serialize_enums(cls, v: object) -> str | None:
        if v is None:
            return None
        return serialize_enum(v)


class VoteResultResponse(BaseModel):
    dispute_id: uuid.UUID
    accepted: bool
    resolved: bool
    outcome: str | None = None
    votes_cast: int
    quorum: int
