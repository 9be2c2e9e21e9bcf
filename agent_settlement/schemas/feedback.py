"""Pydantic v2 schemas for Feedback and validator attestations."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_settlement.schemas.common import validate_address, validate_agent_id, validate_tx_hash


class FeedbackCreate(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=64)
    task_id: uuid.UUID
    reviewer: str = Field(..., min_length=42, max_length=42)
    score: int = Field(..., ge=1, le=5)
    comment: str | None = Field(None, max_length=4096)
    payment_proof: str = Field(..., min_length=64, max_length=66)
    # Idempotency key; derived from task + payment proof when omitted
    feedback_id: uuid.UUID | None = None

    @field_validator("agent_id")
    @classmethod
    def check_agent_id(cls, v: str) -> str:
        return validate_agent_id(v)

    @field_validator("reviewer")
    @classmethod
    def check_reviewer(cls, v: str) -> str:
        return validate_address(v)

    @field_validator("payment_proof")
    @classmethod
    def check_proof(cls, v: str) -> str:
        return validate_tx_hash(v)


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    feedback_id: uuid.UUID
    agent_id: str
    task_id: uuid.UUID
    reviewer: str
    score: int
    comment: str | None
    payment_proof: str
    created_at: datetime


class FeedbackSubmitResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    reason: str | None = None
    feedback_id: uuid.UUID
    reputation_score: float | None = None


class ValidationCreate(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=64)
    task_id: uuid.UUID
    validator: str = Field(..., min_length=42, max_length=42)
    is_valid: bool
    comments: str | None = Field(None, max_length=4096)

    @field_validator("agent_id")
    @classmethod
    def check_agent_id(cls, v: str) -> str:
        return validate_agent_id(v)

    @field_validator("validator")
    @classmethod
    def check_validator(cls, v: str) -> str:
        return validate_address(v)


class ValidationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    validation_id: uuid.UUID
    agent_id: str
    task_id: uuid.UUID
    validator: str
    is_valid: bool
    comments: str | None
    created_at: datetime
