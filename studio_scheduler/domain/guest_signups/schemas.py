from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class GuestSignupRequest(BaseModel):
    guest_name: str = Field(min_length=1, max_length=120)
    guest_email: EmailStr
    guest_phone: str = Field(min_length=3, max_length=32)

    @field_validator("guest_email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("guest_name", "guest_phone")
    @classmethod
    def strip_value(cls, value: str) -> str:
        return value.strip()


class GuestSignupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    signup_id: int
    instance_id: int | None
    guest_name: str
    status: str
    decided_by: str | None = None
    created_at: datetime


class RescheduleProposalRequest(BaseModel):
    proposed_instance_id: int


class RescheduleProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_id: int
    signup_id: int
    proposed_instance_id: int | None
    expires_at: datetime
    used_at: datetime | None = None


class RescheduleConfirmRequest(BaseModel):
    token: str = Field(min_length=1, max_length=64)
