import uuid
from sqlalchemy import Boolean, Column, DateTime, String, Text
from onair.db import Base, utcnow


class Channel(Base):
    __tablename__ = "channel"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_account = Column(String, nullable=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    is_live = Column(Boolean, nullable=False, default=False)
    schedule_active = Column(Boolean, nullable=False, default=False)
    status = Column(String(32), nullable=False, default="offline")
    hls_url = Column(String, nullable=True)
    rtmp_in_key = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
