import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from onair.db import Base, utcnow

PROGRAM_TYPES = {"vod", "live"}
REPEAT_PATTERNS = {"none", "daily", "weekly"}


class ProgramEntry(Base):
    __tablename__ = "program_schedule"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), ForeignKey("channel.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    type = Column(String(8), nullable=False, default="vod")
    start_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    asset_id = Column(String(36), ForeignKey("video_asset.id"), nullable=True)
    repeat_pattern = Column(String(8), nullable=True)  # none | daily | weekly
    created_at = Column(DateTime, default=utcnow)

    asset = relationship("VideoAsset", lazy="joined")
