from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class OutputConfig(BaseModel):
    protocol: Literal["hls", "rtmp", "udp", "rtp", "http"]
    target_url: str = Field(..., min_length=1, alias="targetUrl")
    bitrate: int | None = Field(default=None, gt=0)
    resolution: str | None = None

    class Config:
        populate_by_name = True


class ActionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    output_config: OutputConfig | None = Field(default=None, alias="outputConfig")

    class Config:
        populate_by_name = True


class ActionError(BaseModel):
    kind: str
    message: str
    hint: str | None = None


class ActionResult(BaseModel):
    success: bool
    data: Any = None
    error: ActionError | None = None


class ProviderWebhookIn(BaseModel):
    channel_id: str = Field(..., alias="channelId")
    event: Literal["stream_started", "stream_stopped", "live_disconnected", "source_switched", "error"]
    timestamp: datetime | None = None
    data: dict[str, Any] | None = None
    error: str | None = None

    class Config:
        populate_by_name = True
