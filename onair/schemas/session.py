from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SessionMetadata(BaseModel):
    external_job_id: str | None = None
    current_title: str | None = None
    program_count: int | None = None
    loop: bool | None = None
    stopped_at: datetime | None = None
    last_error_at: datetime | None = None
    # Status to return to once an error on a running session clears.
    resume_status: str | None = None
    # Unrecognised provider or player diagnostics.
    extra: dict[str, Any] = Field(default_factory=dict)


class SessionOut(BaseModel):
    id: str
    channel_id: str
    status: str
    source_type: str
    current_program_id: str | None = None
    playlist_position: int
    started_at: datetime | None = None
    last_heartbeat: datetime | None = None
    error_message: str | None = None
    stream_url: str | None = None
    hls_manifest_url: str | None = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    updated_at: datetime | None = None


class ExecutionLogOut(BaseModel):
    id: str
    session_id: str
    program_id: str | None = None
    program_title: str | None = None
    status: str
    started_at: datetime
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True
