import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onair.db import utcnow
from onair.models.webhook_log import WebhookLog
from onair.services.realtime import hub

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    channel_id: str | None
    event_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    response_status: int | None = None


class EventQueue:
    """Collects audit events during an action; delivery happens after the response."""

    def __init__(self) -> None:
        self._pending: list[AuditEvent] = []

    def emit(
        self,
        channel_id: str | None,
        event_type: str,
        payload: dict[str, Any] | None = None,
        response_status: int | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            channel_id=channel_id,
            event_type=event_type,
            payload=dict(payload or {}),
            response_status=response_status,
        )
        self._pending.append(event)
        return event

    @property
    def pending(self) -> list[AuditEvent]:
        return list(self._pending)

    def drain(self) -> list[AuditEvent]:
        events, self._pending = self._pending, []
        return events


def write_event(bind, event: AuditEvent) -> bool:
    # Own session so a failed audit write can never roll back the action it describes.
    try:
        with Session(bind=bind) as db:
            db.add(
                WebhookLog(
                    channel_id=event.channel_id,
                    event_type=event.event_type,
                    payload_json=json.dumps(
                        {**event.payload, "timestamp": event.created_at.isoformat()},
                        default=str,
                    ),
                    response_status=event.response_status,
                    created_at=event.created_at,
                )
            )
            db.commit()
        return True
    except SQLAlchemyError:
        logger.exception(
            "audit event write failed channel=%s event=%s", event.channel_id, event.event_type
        )
        return False


async def deliver_events(bind, events: list[AuditEvent]) -> int:
    written = 0
    for event in events:
        if write_event(bind, event):
            written += 1
        await hub.publish(
            "broadcast_event",
            {
                "channel_id": event.channel_id,
                "event_type": event.event_type,
                "payload": json.loads(json.dumps(event.payload, default=str)),
            },
        )
    return written
