from __future__ import annotations

from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionInstanceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    location: str | None = Field(default=None, max_length=120)
    instructor_ref: str = Field(min_length=1, max_length=64)
    session_date: date
    start_time: time
    duration_minutes: int = Field(default=60, ge=1, le=24 * 60)
    capacity: int = Field(default=10, ge=1)

    @field_validator("start_time")
    @classmethod
    def truncate_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class SessionInstancePatch(BaseModel):
    """Fields an edit may change; unset fields are left untouched."""

    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    location: str | None = Field(default=None, max_length=120)
    instructor_ref: str | None = Field(default=None, min_length=1, max_length=64)
    session_date: date | None = None
    start_time: time | None = None
    duration_minutes: int | None = Field(default=None, ge=1, le=24 * 60)
    capacity: int | None = Field(default=None, ge=1)

    @field_validator("start_time")
    @classmethod
    def truncate_seconds(cls, value: time | None) -> time | None:
        if value is None:
            return value
        return value.replace(second=0, microsecond=0)


class SessionInstanceResponse(BaseModel):
    instance_id: int
    name: str
    description: str | None
    location: str | None
    instructor_ref: str
    session_date: date
    start_time: time
    duration_minutes: int
    capacity: int
    participant_count: int
    seats_left: int
    series_id: int | None
    parent_series_id: int | None
    is_generated_instance: bool
    is_overridden: bool


class EnrollmentRequest(BaseModel):
    client_ref: str | None = Field(default=None, max_length=64)


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    enrollment_id: int
    instance_id: int | None
    client_ref: str
    status: str
    source: str
    session_date: date
    session_time: time
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class BookingResponse(BaseModel):
    outcome: str
    instance_id: int
    client_ref: str
    enrollment: EnrollmentResponse | None = None


class CancellationResponse(BaseModel):
    outcome: str
    instance_id: int
    client_ref: str
    affected: int
    instance_ids: list[int]
    promoted: int


class CascadeResponse(BaseModel):
    reference_instance_id: int
    affected_instance_ids: list[int]
    cancelled_enrollments: int = 0
