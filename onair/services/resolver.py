"""
Pure schedule resolution: what is on air at an instant and what follows.

Nothing here touches the database. Functions accept any objects carrying the
program columns (``id``, ``start_time``, ``duration_minutes`` and optionally
``created_at``, ``repeat_pattern``, ``type``, ``asset``), so they can be
called on every heartbeat and tested with plain namespaces.
"""

from datetime import datetime, timedelta
from typing import Any, Iterable

from onair.config import TIE_BREAK

_REPEAT_PERIODS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def _period(entry: Any) -> timedelta | None:
    return _REPEAT_PERIODS.get((getattr(entry, "repeat_pattern", None) or "none").strip().lower())


def _insertion_key(entry: Any) -> tuple[datetime, str]:
    return (getattr(entry, "created_at", None) or datetime.min, str(entry.id))


def latest_start(entry: Any, now: datetime) -> datetime | None:
    """Most recent occurrence of ``entry`` starting at or before ``now``."""
    start = entry.start_time
    if start > now:
        return None
    period = _period(entry)
    if period is None:
        return start
    return start + ((now - start) // period) * period


def upcoming_start(entry: Any, now: datetime) -> datetime | None:
    """First occurrence of ``entry`` starting strictly after ``now``."""
    start = entry.start_time
    if start > now:
        return start
    period = _period(entry)
    if period is None:
        return None
    return latest_start(entry, now) + period


def _pick(candidates: list[tuple[datetime, Any]], tie_break: str) -> Any:
    pick_latest = tie_break != "earliest"
    return sorted(
        candidates,
        key=lambda item: _insertion_key(item[1]),
        reverse=pick_latest,
    )[0][1]


def resolve_current_and_next(
    entries: Iterable[Any],
    now: datetime,
    tie_break: str = TIE_BREAK,
) -> tuple[Any | None, Any | None]:
    current_candidates: list[tuple[datetime, Any]] = []
    next_candidates: list[tuple[datetime, Any]] = []
    for entry in entries:
        started = latest_start(entry, now)
        if started is not None:
            current_candidates.append((started, entry))
        starts_next = upcoming_start(entry, now)
        if starts_next is not None:
            next_candidates.append((starts_next, entry))

    current = None
    if current_candidates:
        newest = max(started for started, _ in current_candidates)
        current = _pick([item for item in current_candidates if item[0] == newest], tie_break)

    following = None
    if next_candidates:
        soonest = min(start for start, _ in next_candidates)
        following = _pick([item for item in next_candidates if item[0] == soonest], tie_break)

    return current, following


def compute_progress(current: Any, now: datetime) -> dict[str, int | float]:
    start = latest_start(current, now) or current.start_time
    duration_ms = int(current.duration_minutes) * 60 * 1000
    elapsed_ms = int((now - start).total_seconds() * 1000)
    if duration_ms <= 0:
        percentage = 100.0
    else:
        percentage = min(100.0, max(0.0, elapsed_ms / duration_ms * 100))
    return {
        "elapsed_ms": elapsed_ms,
        "duration_ms": duration_ms,
        "percentage": round(percentage, 2),
        "remaining_ms": max(0, duration_ms - elapsed_ms),
    }


def is_airing(entry: Any, now: datetime) -> bool:
    started = latest_start(entry, now)
    if started is None:
        return False
    return now < started + timedelta(minutes=int(entry.duration_minutes))


def ordered_window(entries: Iterable[Any], limit: int) -> list[Any]:
    ordered = sorted(entries, key=lambda entry: (entry.start_time, _insertion_key(entry)))
    return ordered[:limit]


def position_of(window: list[Any], program_id: str | None) -> int | None:
    if program_id is None:
        return None
    for index, entry in enumerate(window):
        if str(entry.id) == str(program_id):
            return index
    return None


def playable_url(entry: Any) -> str | None:
    asset = getattr(entry, "asset", None)
    if asset is None:
        return None
    if (getattr(entry, "type", "vod") or "vod") == "live":
        return asset.hls_url or asset.file_url
    return asset.file_url or asset.hls_url


def split_timeline(entries: Iterable[Any], now: datetime, tie_break: str = TIE_BREAK) -> dict[str, Any]:
    entries = list(entries)
    current, _ = resolve_current_and_next(entries, now, tie_break)
    if current is not None and not is_airing(current, now):
        current = None

    past: list[Any] = []
    upcoming: list[Any] = []
    for entry in entries:
        if current is not None and entry is current:
            continue
        if _period(entry) is not None or latest_start(entry, now) is None:
            upcoming.append(entry)
        elif not is_airing(entry, now):
            past.append(entry)
    return {"current": current, "past": past, "upcoming": upcoming}
