from datetime import datetime, timezone

from sqlalchemy.orm import Session

from onair.errors import InvalidAction
from onair.models.program import PROGRAM_TYPES, REPEAT_PATTERNS, ProgramEntry
from onair.models.video_asset import VideoAsset


def list_programs(db: Session, channel_id: str) -> list[ProgramEntry]:
    return (
        db.query(ProgramEntry)
        .filter(ProgramEntry.channel_id == channel_id)
        .order_by(ProgramEntry.start_time.asc(), ProgramEntry.created_at.asc(), ProgramEntry.id.asc())
        .all()
    )


def get_program(db: Session, program_id: str | None) -> ProgramEntry | None:
    if not program_id:
        return None
    return db.get(ProgramEntry, program_id)


def normalize_start_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)


def _normalize_repeat(value: str | None) -> str | None:
    pattern = (value or "none").strip().lower()
    if pattern not in REPEAT_PATTERNS:
        raise InvalidAction("repeat_pattern must be none, daily or weekly.")
    return None if pattern == "none" else pattern


def add_program(
    db: Session,
    channel_id: str,
    title: str,
    program_type: str,
    start_time: datetime,
    duration_minutes: int,
    asset_id: str | None = None,
    repeat_pattern: str | None = None,
    owner_account: str | None = None,
) -> ProgramEntry:
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise InvalidAction("Program title cannot be empty.")
    program_type = (program_type or "vod").strip().lower()
    if program_type not in PROGRAM_TYPES:
        raise InvalidAction("Program type must be vod or live.")
    if duration_minutes is None or int(duration_minutes) <= 0:
        raise InvalidAction("duration_minutes must be a positive integer.")

    if asset_id:
        asset = db.get(VideoAsset, asset_id)
        if asset is None:
            raise InvalidAction(f"Unknown asset_id: {asset_id}")
        if asset.owner_account and owner_account and asset.owner_account != owner_account:
            raise InvalidAction("The asset belongs to another account.")

    program = ProgramEntry(
        channel_id=channel_id,
        title=cleaned_title,
        type=program_type,
        start_time=normalize_start_time(start_time),
        duration_minutes=int(duration_minutes),
        asset_id=asset_id or None,
        repeat_pattern=_normalize_repeat(repeat_pattern),
    )
    db.add(program)
    db.flush()
    return program


def remove_program(db: Session, channel_id: str, program_id: str) -> bool:
    program = db.get(ProgramEntry, program_id)
    if program is None or program.channel_id != channel_id:
        return False
    # Sessions and execution logs keep their weak program ids as history.
    db.delete(program)
    db.flush()
    return True
