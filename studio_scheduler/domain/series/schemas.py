from __future__ import annotations

from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RecurringSeriesBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    location: str | None = Field(default=None, max_length=120)
    instructor_ref: str = Field(min_length=1, max_length=64)
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    series_start_date: date
    series_end_date: date
    capacity: int = Field(default=10, ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def truncate_seconds(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @model_validator(mode="after")
    def validate_times(self) -> "RecurringSeriesBase":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class RecurringSeriesCreate(RecurringSeriesBase):
    pass


class RecurringSeriesUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    location: str | None = Field(default=None, max_length=120)
    instructor_ref: str | None = Field(default=None, min_length=1, max_length=64)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: time | None = None
    end_time: time | None = None
    series_start_date: date | None = None
    series_end_date: date | None = None
    capacity: int | None = Field(default=None, ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def truncate_seconds(cls, value: time | None) -> time | None:
        if value is None:
            return value
        return value.replace(second=0, microsecond=0)


class RecurringSeriesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    series_id: int
    name: str
    description: str | None = None
    location: str | None = None
    instructor_ref: str
    day_of_week: int
    start_time: time
    end_time: time
    series_start_date: date
    series_end_date: date
    capacity: int
    created_at: datetime
    updated_at: datetime


class RecurringSeriesGenerateRequest(BaseModel):
    as_of: date | None = None
    until: date | None = None


class GeneratedInstanceReport(BaseModel):
    instance_id: int
    session_date: date
    start_time: time


class RecurringSeriesGenerateResponse(BaseModel):
    series_id: int
    created: list[GeneratedInstanceReport]
    skipped_dates: list[date]


class SeriesDeleteResponse(BaseModel):
    series_id: int
    deleted_instance_ids: list[int]
    cancelled_enrollments: int
    deactivated_subscriptions: int


class RecurringSeriesCreateResponse(BaseModel):
    series: RecurringSeriesResponse
    generated: RecurringSeriesGenerateResponse


class SeriesUpdateResponse(BaseModel):
    series: RecurringSeriesResponse
    affected_instance_ids: list[int]
    created_instance_ids: list[int]
    deleted_instance_ids: list[int]
