"""
Per-channel session record and its execution log.

States: ``idle``, ``active`` (source ``playlist`` or ``live``), ``streaming``
(output transmission switched on) and ``error``. Functions here only mutate
ORM objects inside the caller's unit of work; the orchestrator commits once
per action, so a program switch always lands together with the close of the
previous execution log entry and the open of the next one.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from onair.models.execution_log import LOG_PLAYING, PlaylistExecutionLog
from onair.models.program import ProgramEntry
from onair.models.session import (
    SESSION_ACTIVE,
    SESSION_ERROR,
    SESSION_IDLE,
    SESSION_STREAMING,
    SOURCE_LIVE,
    SOURCE_PLAYLIST,
    StreamingSession,
)
from onair.schemas.session import SessionMetadata, SessionOut

logger = logging.getLogger(__name__)


def read_metadata(session: StreamingSession) -> SessionMetadata:
    raw = (session.metadata_json or "").strip()
    if not raw:
        return SessionMetadata()
    try:
        return SessionMetadata.model_validate_json(raw)
    except ValueError:
        logger.warning("unreadable session metadata session=%s, starting fresh", session.id)
        return SessionMetadata()


def write_metadata(session: StreamingSession, metadata: SessionMetadata) -> None:
    session.metadata_json = metadata.model_dump_json(exclude_none=True)


def update_metadata(session: StreamingSession, **changes: Any) -> SessionMetadata:
    metadata = read_metadata(session).model_copy(update=changes)
    write_metadata(session, metadata)
    return metadata


def merge_diagnostics(session: StreamingSession, values: dict[str, Any]) -> SessionMetadata:
    current = read_metadata(session)
    known = {name for name in SessionMetadata.model_fields if name != "extra"}
    merged = current.model_dump()
    extra = dict(current.extra)
    for key, value in (values or {}).items():
        if key in known:
            merged[key] = value
        else:
            extra[key] = value
    merged["extra"] = extra
    metadata = SessionMetadata.model_validate(merged)
    write_metadata(session, metadata)
    return metadata


def serialize_session(session: StreamingSession | None) -> dict | None:
    if session is None:
        return None
    return SessionOut(
        id=session.id,
        channel_id=session.channel_id,
        status=session.status,
        source_type=session.source_type,
        current_program_id=session.current_program_id,
        playlist_position=session.playlist_position or 0,
        started_at=session.started_at,
        last_heartbeat=session.last_heartbeat,
        error_message=session.error_message,
        stream_url=session.stream_url,
        hls_manifest_url=session.hls_manifest_url,
        metadata=read_metadata(session),
        updated_at=session.updated_at,
    ).model_dump(mode="json")


def get_session(db: Session, channel_id: str) -> StreamingSession | None:
    return db.query(StreamingSession).filter(StreamingSession.channel_id == channel_id).first()


def upsert_session(db: Session, channel_id: str) -> StreamingSession:
    session = get_session(db, channel_id)
    if session:
        return session
    try:
        with db.begin_nested():
            session = StreamingSession(channel_id=channel_id, status=SESSION_IDLE, source_type=SOURCE_PLAYLIST)
            db.add(session)
            db.flush()
        return session
    except IntegrityError:
        # Another worker created the row between our read and insert.
        logger.info("session row for channel=%s created concurrently, reusing it", channel_id)
        session = get_session(db, channel_id)
        if session is None:
            raise
        return session


def open_log(db: Session, session: StreamingSession, program: ProgramEntry, now: datetime) -> PlaylistExecutionLog:
    entry = PlaylistExecutionLog(
        session_id=session.id,
        program_id=program.id,
        program_title=program.title,
        status=LOG_PLAYING,
        started_at=now,
    )
    db.add(entry)
    db.flush()
    return entry


def open_logs(db: Session, session_id: str) -> list[PlaylistExecutionLog]:
    return (
        db.query(PlaylistExecutionLog)
        .filter(PlaylistExecutionLog.session_id == session_id, PlaylistExecutionLog.ended_at.is_(None))
        .all()
    )


def close_open_logs(db: Session, session: StreamingSession, status: str, now: datetime) -> int:
    closed = 0
    for entry in open_logs(db, session.id):
        entry.status = status
        entry.ended_at = now
        entry.duration_seconds = max(0, int((now - entry.started_at).total_seconds()))
        closed += 1
    return closed


def switch_program(
    db: Session,
    session: StreamingSession,
    program: ProgramEntry | None,
    position: int | None,
    now: datetime,
    close_status: str,
) -> PlaylistExecutionLog | None:
    close_open_logs(db, session, close_status, now)
    session.current_program_id = program.id if program is not None else None
    if position is not None:
        session.playlist_position = position
    session.last_heartbeat = now
    update_metadata(session, current_title=program.title if program is not None else None)
    if program is None:
        return None
    return open_log(db, session, program, now)


def activate(
    db: Session,
    session: StreamingSession,
    program: ProgramEntry,
    position: int,
    now: datetime,
    close_status: str,
    metadata: SessionMetadata,
) -> PlaylistExecutionLog:
    session.status = SESSION_ACTIVE
    session.source_type = SOURCE_PLAYLIST
    session.started_at = now
    session.error_message = None
    write_metadata(session, metadata)
    return switch_program(db, session, program, position, now, close_status)


def set_source(session: StreamingSession, source_type: str, now: datetime) -> None:
    if source_type not in {SOURCE_PLAYLIST, SOURCE_LIVE}:
        raise ValueError(f"unknown source type: {source_type}")
    session.source_type = source_type
    session.last_heartbeat = now


def recover(session: StreamingSession) -> None:
    if session.status == SESSION_ERROR:
        resume_status = read_metadata(session).resume_status
        session.status = resume_status if resume_status in {SESSION_ACTIVE, SESSION_STREAMING} else SESSION_ACTIVE
        session.error_message = None
        update_metadata(session, resume_status=None)


def deactivate(db: Session, session: StreamingSession, close_status: str, now: datetime) -> int:
    closed = close_open_logs(db, session, close_status, now)
    session.status = SESSION_IDLE
    session.last_heartbeat = now
    update_metadata(session, stopped_at=now, resume_status=None)
    return closed


def mark_error(db: Session, session: StreamingSession, message: str, now: datetime) -> None:
    session.error_message = message
    session.last_heartbeat = now
    if session.status == SESSION_IDLE:
        # Nothing is on air; keep the error for monitoring without reviving the session.
        update_metadata(session, last_error_at=now)
        return
    if session.status != SESSION_ERROR:
        update_metadata(session, last_error_at=now, resume_status=session.status)
    else:
        update_metadata(session, last_error_at=now)
    session.status = SESSION_ERROR
    # The program keeps playing; the open log only records what went wrong.
    for entry in open_logs(db, session.id):
        entry.error_message = message

