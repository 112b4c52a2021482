from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from onair.schemas.video_asset import VideoAssetOut


class ProgramIn(BaseModel):
    title: str = Field(..., min_length=1)
    type: Literal["vod", "live"] = "vod"
    start_time: datetime
    duration_minutes: int = Field(..., gt=0)
    asset_id: str | None = None
    repeat_pattern: Literal["none", "daily", "weekly"] | None = None


class ProgramOut(BaseModel):
    id: str
    channel_id: str
    title: str
    type: str
    start_time: datetime
    duration_minutes: int
    asset_id: str | None = None
    repeat_pattern: str | None = None
    asset: VideoAssetOut | None = None

    class Config:
        from_attributes = True


class ProgressOut(BaseModel):
    elapsed_ms: int
    duration_ms: int
    percentage: float
    remaining_ms: int
