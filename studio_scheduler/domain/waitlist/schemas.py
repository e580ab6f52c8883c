from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class WaitlistJoinRequest(BaseModel):
    client_ref: str | None = Field(default=None, max_length=64)


class WaitlistEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entry_id: int
    instance_id: int | None
    client_ref: str
    status: str
    created_at: datetime
    notified_at: datetime | None = None


class WaitlistJoinResponse(BaseModel):
    outcome: str
    instance_id: int
    client_ref: str
    position: int | None = None
    entry: WaitlistEntryResponse | None = None
