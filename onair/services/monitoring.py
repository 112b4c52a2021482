import json
import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onair.models.execution_log import LOG_COMPLETED, PlaylistExecutionLog
from onair.models.output import StreamOutput, TransmissionLog
from onair.models.session import RUNNING_STATES, StreamingSession
from onair.models.webhook_log import WebhookLog
from onair.schemas.session import ExecutionLogOut
from onair.services.session_machine import serialize_session

logger = logging.getLogger(__name__)

LOG_TYPES = {"all", "sessions", "playlist", "webhook", "transmission"}
MAX_LOG_LIMIT = 500
ERROR_EVENT_TYPES = ("stream_error",)

T = TypeVar("T")


def _degrade(db: Session, label: str, read: Callable[[], T], fallback: T) -> T:
    try:
        return read()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("monitoring read failed: %s; returning partial result", label, exc_info=True)
        return fallback


def _normalize_limit(limit: Any) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return 100
    return max(1, min(value, MAX_LOG_LIMIT))


def _webhook_row(row: WebhookLog) -> dict:
    try:
        payload = json.loads(row.payload_json or "{}")
    except ValueError:
        payload = {"raw": row.payload_json}
    return {
        "id": row.id,
        "channel_id": row.channel_id,
        "event_type": row.event_type,
        "payload": payload,
        "response_status": row.response_status,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def _output_row(row: StreamOutput) -> dict:
    return {
        "id": row.id,
        "session_id": row.session_id,
        "protocol": row.protocol,
        "target_url": row.target_url,
        "is_active": row.is_active,
        "last_status": row.last_status,
        "bitrate_kbps": row.bitrate_kbps,
        "resolution": row.resolution,
    }


def _transmission_row(row: TransmissionLog) -> dict:
    return {
        "id": row.id,
        "protocol": row.protocol,
        "target": row.target,
        "status": row.status,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "ended_at": row.ended_at.isoformat() if row.ended_at else None,
        "error_message": row.error_message,
    }


def get_logs(db: Session, channel_id: str, limit: Any = 100, log_type: str = "all") -> dict:
    limit = _normalize_limit(limit)
    log_type = (log_type or "all").strip().lower()
    if log_type not in LOG_TYPES:
        log_type = "all"

    output: dict[str, list] = {}
    if log_type in {"all", "sessions"}:
        sessions = _degrade(
            db,
            "sessions",
            lambda: db.query(StreamingSession)
            .filter(StreamingSession.channel_id == channel_id)
            .order_by(StreamingSession.created_at.desc())
            .limit(limit)
            .all(),
            [],
        )
        output["sessions"] = [serialize_session(row) for row in sessions]

    if log_type in {"all", "playlist"}:
        rows = _degrade(
            db,
            "playlist logs",
            lambda: db.query(PlaylistExecutionLog)
            .join(StreamingSession, StreamingSession.id == PlaylistExecutionLog.session_id)
            .filter(StreamingSession.channel_id == channel_id)
            .order_by(PlaylistExecutionLog.started_at.desc())
            .limit(limit)
            .all(),
            [],
        )
        output["playlist_logs"] = [ExecutionLogOut.model_validate(row).model_dump(mode="json") for row in rows]

    if log_type in {"all", "webhook"}:
        rows = _degrade(
            db,
            "webhook logs",
            lambda: db.query(WebhookLog)
            .filter(WebhookLog.channel_id == channel_id)
            .order_by(WebhookLog.created_at.desc())
            .limit(limit)
            .all(),
            [],
        )
        output["webhook_logs"] = [_webhook_row(row) for row in rows]

    if log_type in {"all", "transmission"}:
        rows = _degrade(
            db,
            "transmission logs",
            lambda: db.query(TransmissionLog)
            .filter(TransmissionLog.channel_id == channel_id)
            .order_by(TransmissionLog.created_at.desc())
            .limit(limit)
            .all(),
            [],
        )
        output["transmission_logs"] = [_transmission_row(row) for row in rows]
    return output


def _streaming_seconds(db: Session, channel_id: str, now: datetime) -> int:
    rows = (
        db.query(PlaylistExecutionLog.started_at, PlaylistExecutionLog.ended_at, PlaylistExecutionLog.duration_seconds)
        .join(StreamingSession, StreamingSession.id == PlaylistExecutionLog.session_id)
        .filter(StreamingSession.channel_id == channel_id)
        .all()
    )
    total = 0
    for started_at, ended_at, duration_seconds in rows:
        if duration_seconds is not None:
            total += duration_seconds
        elif started_at is not None:
            total += max(0, int(((ended_at or now) - started_at).total_seconds()))
    return total


def get_stats(db: Session, channel_id: str, now: datetime) -> dict:
    session = _degrade(
        db,
        "active session",
        lambda: db.query(StreamingSession)
        .filter(StreamingSession.channel_id == channel_id, StreamingSession.status.in_(RUNNING_STATES))
        .first(),
        None,
    )
    streaming_seconds = _degrade(db, "streaming time", lambda: _streaming_seconds(db, channel_id, now), 0)
    programs_played = _degrade(
        db,
        "programs played",
        lambda: db.query(func.count(PlaylistExecutionLog.id))
        .join(StreamingSession, StreamingSession.id == PlaylistExecutionLog.session_id)
        .filter(StreamingSession.channel_id == channel_id, PlaylistExecutionLog.status == LOG_COMPLETED)
        .scalar()
        or 0,
        0,
    )
    error_count = _degrade(
        db,
        "error count",
        lambda: db.query(func.count(WebhookLog.id))
        .filter(WebhookLog.channel_id == channel_id, WebhookLog.event_type.in_(ERROR_EVENT_TYPES))
        .scalar()
        or 0,
        0,
    )
    outputs = _degrade(
        db,
        "active outputs",
        lambda: db.query(StreamOutput)
        .filter(StreamOutput.channel_id == channel_id, StreamOutput.is_active.is_(True))
        .all(),
        [],
    )
    return {
        "is_active": session is not None,
        "active_session": serialize_session(session),
        "total_streaming_minutes": round(streaming_seconds / 60),
        "programs_played": int(programs_played),
        "error_count": int(error_count),
        "active_outputs": len(outputs),
        "outputs": [_output_row(row) for row in outputs],
    }
