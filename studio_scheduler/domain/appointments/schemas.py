from __future__ import annotations

from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from studio_scheduler.domain.appointments import statuses


class AppointmentRequest(BaseModel):
    staff_ref: str = Field(min_length=1, max_length=64)
    appointment_date: date
    start_time: time
    duration_minutes: int = Field(default=60, ge=1, le=24 * 60)
    category: str = statuses.OTHER
    notes: str | None = Field(default=None, max_length=2000)
    client_ref: str | None = Field(default=None, max_length=64)
    guest_name: str | None = Field(default=None, max_length=120)
    guest_email: EmailStr | None = None
    guest_phone: str | None = Field(default=None, max_length=32)

    @field_validator("category")
    @classmethod
    def normalize_category(cls, value: str) -> str:
        return statuses.normalize_category(value)

    @field_validator("start_time")
    @classmethod
    def truncate_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator("guest_email")
    @classmethod
    def lower_email(cls, value: str | None) -> str | None:
        return value.lower() if value else value


class PublicAppointmentRequest(AppointmentRequest):
    guest_name: str = Field(min_length=1, max_length=120)
    guest_email: EmailStr
    guest_phone: str = Field(min_length=3, max_length=32)

    @model_validator(mode="after")
    def drop_client_ref(self) -> "PublicAppointmentRequest":
        self.client_ref = None
        return self


class AppointmentDecisionRequest(BaseModel):
    accept: bool
    notes: str | None = Field(default=None, max_length=2000)


class AppointmentRescheduleProposalRequest(BaseModel):
    proposed_date: date
    proposed_time: time

    @field_validator("proposed_time")
    @classmethod
    def truncate_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    appointment_id: int
    staff_ref: str
    client_ref: str | None = None
    guest_name: str | None = None
    appointment_date: date
    start_time: time
    end_time: time
    duration_minutes: int
    category: str
    status: str
    signal_pending: bool
    notes: str | None = None


class AppointmentRescheduleProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proposal_id: int
    appointment_id: int
    proposed_date: date
    proposed_time: time
    expires_at: datetime
    used_at: datetime | None = None


class FreeSlotsResponse(BaseModel):
    staff_ref: str
    date: date
    duration_minutes: int
    slots: list[time]
