from datetime import datetime
from pydantic import BaseModel, Field


class ChannelIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    rtmp_in_key: str | None = None


class ChannelOut(BaseModel):
    id: str
    name: str
    owner_account: str | None = None
    description: str | None = None
    is_live: bool
    schedule_active: bool
    status: str
    hls_url: str | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True
