import uuid
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from onair.db import Base, utcnow


class StreamOutput(Base):
    __tablename__ = "stream_output"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), ForeignKey("channel.id"), nullable=False, index=True)
    session_id = Column(String(36), nullable=True)
    protocol = Column(String(16), nullable=False)
    target_url = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_status = Column(String(32), nullable=True)
    bitrate_kbps = Column(Integer, nullable=True)
    resolution = Column(String(16), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TransmissionLog(Base):
    __tablename__ = "transmission_log"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), ForeignKey("channel.id"), nullable=False, index=True)
    protocol = Column(String(16), nullable=True)
    target = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default="active")
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
