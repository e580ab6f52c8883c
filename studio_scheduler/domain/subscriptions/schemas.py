from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field


class SeriesSubscriptionRequest(BaseModel):
    end_date: date
    client_ref: str | None = Field(default=None, max_length=64)


class SeriesSubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: int
    client_ref: str
    series_id: int | None
    subscription_start_date: date
    subscription_end_date: date
    is_active: bool
    created_at: datetime


class SubscriptionEnrollmentReport(BaseModel):
    instance_id: int
    session_date: date
    outcome: str


class SeriesSubscribeResponse(BaseModel):
    subscription: SeriesSubscriptionResponse
    enrollments: list[SubscriptionEnrollmentReport]
