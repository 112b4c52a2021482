import uuid
from sqlalchemy import Column, DateTime, Integer, String
from onair.db import Base, utcnow


class VideoAsset(Base):
    __tablename__ = "video_asset"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_account = Column(String, nullable=True)
    title = Column(String, nullable=False)
    file_url = Column(String, nullable=False)
    hls_url = Column(String, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
