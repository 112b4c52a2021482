import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy import text

from onair.config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    # Naive UTC wall clock, matching the DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_sqlite_schema(bind=None):
    """
    Lightweight runtime schema patching for SQLite.

    `Base.metadata.create_all()` won't add new columns to existing tables.
    This keeps local/dev installs working without requiring Alembic.
    """
    bind = bind or engine
    if bind.dialect.name != "sqlite":
        return

    with bind.begin() as conn:
        session_cols = conn.execute(text("PRAGMA table_info(streaming_session)")).fetchall()
        session_col_names = {row[1] for row in session_cols}  # (cid, name, type, notnull, dflt_value, pk)
        if session_cols:
            if "version" not in session_col_names:
                conn.execute(text("ALTER TABLE streaming_session ADD COLUMN version INTEGER DEFAULT 1"))
            if "hls_manifest_url" not in session_col_names:
                conn.execute(text("ALTER TABLE streaming_session ADD COLUMN hls_manifest_url VARCHAR"))
            if "stream_url" not in session_col_names:
                conn.execute(text("ALTER TABLE streaming_session ADD COLUMN stream_url VARCHAR"))
            conn.execute(text("UPDATE streaming_session SET version=1 WHERE version IS NULL"))
            conn.execute(
                text(
                    "UPDATE streaming_session SET playlist_position=0 "
                    "WHERE playlist_position IS NULL OR playlist_position < 0"
                )
            )

            duplicates = conn.execute(
                text(
                    "SELECT channel_id, count(*) FROM streaming_session "
                    "GROUP BY channel_id HAVING count(*) > 1"
                )
            ).fetchall()
            if duplicates:
                # Session rows are history; never drop them to satisfy the index.
                logger.warning(
                    "streaming_session holds duplicate rows for %d channel(s); unique index not created",
                    len(duplicates),
                )
            else:
                conn.execute(
                    text(
                        "CREATE UNIQUE INDEX IF NOT EXISTS ux_streaming_session_channel "
                        "ON streaming_session(channel_id)"
                    )
                )

        log_cols = conn.execute(text("PRAGMA table_info(playlist_execution_log)")).fetchall()
        if log_cols:
            conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS ix_execution_log_open "
                    "ON playlist_execution_log(session_id, ended_at)"
                )
            )

        channel_cols = conn.execute(text("PRAGMA table_info(channel)")).fetchall()
        channel_col_names = {row[1] for row in channel_cols}
        if channel_cols:
            if "schedule_active" not in channel_col_names:
                conn.execute(text("ALTER TABLE channel ADD COLUMN schedule_active INTEGER DEFAULT 0"))
            if "rtmp_in_key" not in channel_col_names:
                conn.execute(text("ALTER TABLE channel ADD COLUMN rtmp_in_key VARCHAR"))
            conn.execute(text("UPDATE channel SET status='offline' WHERE status IS NULL OR trim(status)=''"))
            conn.execute(text("UPDATE channel SET schedule_active=0 WHERE schedule_active IS NULL"))
