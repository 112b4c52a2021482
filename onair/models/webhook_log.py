import uuid
from sqlalchemy import Column, DateTime, Integer, String, Text
from onair.db import Base, utcnow


class WebhookLog(Base):
    __tablename__ = "webhook_log"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    payload_json = Column(Text, nullable=False, default="{}")
    response_status = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
