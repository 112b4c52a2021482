import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from onair.db import Base

LOG_PLAYING = "playing"
LOG_COMPLETED = "completed"
LOG_STOPPED = "stopped"
LOG_ERROR = "error"


class PlaylistExecutionLog(Base):
    __tablename__ = "playlist_execution_log"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("streaming_session.id"), nullable=False, index=True)
    program_id = Column(String(36), nullable=True)  # weak reference, no FK
    program_title = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default=LOG_PLAYING)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
