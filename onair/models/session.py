import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from onair.db import Base, utcnow

SESSION_IDLE = "idle"
SESSION_ACTIVE = "active"
SESSION_STREAMING = "streaming"
SESSION_ERROR = "error"
# States in which the provider may still be producing output for the channel.
RUNNING_STATES = {SESSION_ACTIVE, SESSION_STREAMING, SESSION_ERROR}

SOURCE_PLAYLIST = "playlist"
SOURCE_LIVE = "live"


class StreamingSession(Base):
    __tablename__ = "streaming_session"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), ForeignKey("channel.id"), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default=SESSION_IDLE)
    source_type = Column(String(16), nullable=False, default=SOURCE_PLAYLIST)
    current_program_id = Column(String(36), nullable=True)  # weak reference, no FK
    playlist_position = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=True)
    last_heartbeat = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    stream_url = Column(String, nullable=True)
    hls_manifest_url = Column(String, nullable=True)
    metadata_json = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATES
