"""
Broadcast orchestrator: turns operator intents into provider commands and
local state.

Each action runs under the channel's lock in a fixed order: resolve the
schedule, call the provider, then persist. Local state is never marked
active before the provider confirms, and a confirmed stop always leaves the
session idle. Audit events go to an :class:`EventQueue` and are delivered
after the action returns, so a failed audit write never fails the action.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from onair.config import PLAYLIST_EXHAUSTED_POLICY, PLAYLIST_WINDOW, TIE_BREAK
from onair.db import utcnow
from onair.errors import (
    AccessDenied,
    ChannelNotFound,
    ExternalProviderError,
    InvalidAction,
    NoActiveSession,
    NoScheduledContent,
    OnAirError,
    PersistenceError,
    PersistenceInconsistency,
)
from onair.models.channel import Channel
from onair.models.execution_log import LOG_COMPLETED, LOG_STOPPED, PlaylistExecutionLog
from onair.models.output import StreamOutput, TransmissionLog
from onair.models.program import ProgramEntry
from onair.models.session import (
    SESSION_ACTIVE,
    SESSION_STREAMING,
    SOURCE_LIVE,
    SOURCE_PLAYLIST,
    StreamingSession,
)
from onair.schemas.broadcast import ActionError, ActionResult, OutputConfig, ProviderWebhookIn
from onair.schemas.program import ProgramOut
from onair.schemas.session import SessionMetadata
from onair.services import monitoring, resolver, session_machine
from onair.services.events import EventQueue
from onair.services.locks import ChannelLocks, channel_locks
from onair.services.provider import (
    TRANSMIT_PROTOCOLS,
    ProviderError,
    TranscodingProvider,
    default_output_path,
)
from onair.services.schedule_store import list_programs

logger = logging.getLogger(__name__)

LIVE_DISCONNECTED_NOTE = "Live source disconnected, switched to playlist"


def authorize_channel(db: Session, channel_id: str, account_id: str | None) -> Channel:
    channel = db.get(Channel, channel_id)
    if channel is None:
        raise ChannelNotFound(f"Channel {channel_id} not found.")
    if channel.owner_account and channel.owner_account != (account_id or "").strip():
        raise AccessDenied("Channel not found or access denied.")
    return channel


def serialize_program(program: ProgramEntry | None) -> dict | None:
    if program is None:
        return None
    return ProgramOut.model_validate(program).model_dump(mode="json")


class Orchestrator:
    def __init__(
        self,
        db: Session,
        provider: TranscodingProvider,
        events: EventQueue | None = None,
        clock: Callable[[], datetime] = utcnow,
        locks: ChannelLocks = channel_locks,
        playlist_window: int = PLAYLIST_WINDOW,
        exhausted_policy: str = PLAYLIST_EXHAUSTED_POLICY,
        tie_break: str = TIE_BREAK,
    ):
        self.db = db
        self.provider = provider
        self.events = events if events is not None else EventQueue()
        self.clock = clock
        self.locks = locks
        self.playlist_window = playlist_window
        self.exhausted_policy = exhausted_policy
        self.tie_break = tie_break

    # -- helpers -----------------------------------------------------------

    def _channel(self, channel_id: str) -> Channel:
        channel = self.db.get(Channel, channel_id)
        if channel is None:
            raise ChannelNotFound(f"Channel {channel_id} not found.")
        return channel

    def authorize(self, channel_id: str, account_id: str | None) -> Channel:
        return authorize_channel(self.db, channel_id, account_id)

    def _running_session(self, channel_id: str) -> StreamingSession:
        session = session_machine.get_session(self.db, channel_id)
        if session is None or not session.is_running:
            raise NoActiveSession("No active session found for this channel.")
        return session

    def _emit(self, channel_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.events.emit(channel_id, event_type, payload)

    def _commit(self, channel_id: str, action: str, after_provider: bool) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            if after_provider:
                logger.exception(
                    "provider accepted %s but local state was not saved channel=%s", action, channel_id
                )
                self._emit(channel_id, "persistence_inconsistency", {"action": action, "error": str(exc)})
                raise PersistenceInconsistency(
                    f"The provider accepted '{action}' but the local state could not be saved."
                ) from exc
            logger.exception("could not save %s channel=%s", action, channel_id)
            raise PersistenceError(f"Could not save '{action}' for this channel.") from exc

    def _window(self, programs: list[ProgramEntry]) -> list[ProgramEntry]:
        return resolver.ordered_window(programs, len(programs))

    def _provider_playlist(self, window: list[ProgramEntry], position: int) -> list[dict[str, Any]]:
        playlist: list[dict[str, Any]] = []
        count = len(window)
        for offset in range(count):
            entry = window[(position + offset) % count]
            media_url = resolver.playable_url(entry)
            if not media_url:
                continue
            playlist.append(
                {
                    "type": entry.type,
                    "mediaUrl": media_url,
                    "durationSeconds": int(entry.duration_minutes) * 60,
                    "title": entry.title,
                }
            )
            if len(playlist) >= self.playlist_window:
                break
        return playlist

    def _point_channel_at(
        self,
        channel: Channel,
        session: StreamingSession,
        program: ProgramEntry | None,
        prefer_manifest: bool = False,
    ) -> None:
        program_url = resolver.playable_url(program) if program is not None else None
        if prefer_manifest:
            url = session.hls_manifest_url or program_url
        else:
            url = program_url or session.hls_manifest_url
        if url:
            channel.hls_url = url
        channel.is_live = True
        channel.schedule_active = True

    # -- state-changing actions -------------------------------------------

    def start(self, channel_id: str, output_config: OutputConfig | None = None, output_path: str | None = None) -> dict:
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = session_machine.get_session(self.db, channel_id)
            if session is not None and session.status in {SESSION_ACTIVE, SESSION_STREAMING}:
                logger.info("start ignored, session already active channel=%s", channel_id)
                current = self.db.get(ProgramEntry, session.current_program_id) if session.current_program_id else None
                return {
                    "session_id": session.id,
                    "status": session.status,
                    "already_active": True,
                    "current_program": serialize_program(current),
                    "stream": {
                        "external_job_id": session_machine.read_metadata(session).external_job_id,
                        "hls_url": session.hls_manifest_url,
                    },
                }

            now = self.clock()
            programs = list_programs(self.db, channel_id)
            if not programs:
                raise NoScheduledContent("No programs found in schedule.")
            current, upcoming = resolver.resolve_current_and_next(programs, now, self.tie_break)
            program = current or upcoming
            window = self._window(programs)
            position = resolver.position_of(window, program.id) or 0
            playlist = self._provider_playlist(window, position)
            if not playlist:
                raise NoScheduledContent("Scheduled programs have no playable media.")

            try:
                stream = self.provider.start(channel_id, playlist, output_path or default_output_path(channel_id))
            except ProviderError as exc:
                logger.warning("provider start failed channel=%s: %s", channel_id, exc.message)
                self._emit(channel_id, "stream_start_failed", {"error": exc.message})
                raise ExternalProviderError(exc.message) from exc

            session = session_machine.upsert_session(self.db, channel_id)
            session_machine.activate(
                self.db,
                session,
                program,
                position,
                now,
                close_status=LOG_STOPPED,
                metadata=SessionMetadata(
                    external_job_id=stream.external_job_id,
                    current_title=program.title,
                    program_count=len(window),
                    loop=self.exhausted_policy == "loop",
                ),
            )
            session.stream_url = stream.hls_url
            session.hls_manifest_url = stream.hls_url
            self._point_channel_at(channel, session, program, prefer_manifest=True)
            channel.status = "ready"
            if output_config is not None:
                self.db.add(
                    StreamOutput(
                        channel_id=channel_id,
                        session_id=session.id,
                        protocol=output_config.protocol,
                        target_url=output_config.target_url,
                        is_active=True,
                        last_status="active",
                        bitrate_kbps=output_config.bitrate,
                        resolution=output_config.resolution,
                    )
                )
            self._commit(channel_id, "start", after_provider=True)

            next_program = upcoming if upcoming is not None and upcoming is not program else None
            self._emit(
                channel_id,
                "stream_started",
                {"session_id": session.id, "program_id": program.id, "program_title": program.title},
            )
            return {
                "session_id": session.id,
                "status": session.status,
                "already_active": False,
                "position": position,
                "current_program": serialize_program(program),
                "next_program": serialize_program(next_program),
                "stream": {
                    "external_job_id": stream.external_job_id,
                    "hls_url": stream.hls_url,
                    "iframe_url": stream.iframe_url,
                },
            }

    def stop(self, channel_id: str, notify_provider: bool = True, reason: str | None = None) -> dict:
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = session_machine.get_session(self.db, channel_id)
            if session is None or not session.is_running:
                logger.info("stop is a no-op, channel already idle channel=%s", channel_id)
                return {"stopped": False, "already_idle": True, "session_id": session.id if session else None}
            return self._stop_session(channel, session, notify_provider, reason)

    def _stop_session(
        self,
        channel: Channel,
        session: StreamingSession,
        notify_provider: bool,
        reason: str | None = None,
    ) -> dict:
        provider_error: ProviderError | None = None
        if notify_provider:
            try:
                self.provider.stop(channel.id)
            except ProviderError as exc:
                # Local cleanup still runs; the provider error is raised after commit.
                logger.warning("provider stop failed channel=%s: %s", channel.id, exc.message)
                provider_error = exc

        now = self.clock()
        closed = session_machine.deactivate(self.db, session, LOG_STOPPED, now)
        (
            self.db.query(StreamOutput)
            .filter(StreamOutput.channel_id == channel.id, StreamOutput.is_active.is_(True))
            .update({"is_active": False, "last_status": "stopped"}, synchronize_session=False)
        )
        (
            self.db.query(TransmissionLog)
            .filter(TransmissionLog.channel_id == channel.id, TransmissionLog.ended_at.is_(None))
            .update({"ended_at": now, "status": "stopped"}, synchronize_session=False)
        )
        channel.is_live = False
        channel.schedule_active = False
        channel.status = "offline"
        self._commit(channel.id, "stop", after_provider=notify_provider and provider_error is None)

        self._emit(
            channel.id,
            "stream_stopped",
            {
                "session_id": session.id,
                "closed_logs": closed,
                "reason": reason,
                "provider_error": provider_error.message if provider_error else None,
            },
        )
        if provider_error is not None:
            raise ExternalProviderError(provider_error.message) from provider_error
        return {"stopped": True, "already_idle": False, "session_id": session.id, "closed_logs": closed}

    def advance_to_next(self, channel_id: str) -> dict:
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = self._running_session(channel_id)
            programs = list_programs(self.db, channel_id)
            if not programs:
                raise NoScheduledContent("No programs found in schedule.")
            window = self._window(programs)

            next_position = (session.playlist_position or 0) + 1
            wrapped = next_position >= len(window)
            if wrapped:
                if self.exhausted_policy == "stop":
                    logger.info("playlist exhausted, stopping channel=%s", channel_id)
                    stopped = self._stop_session(channel, session, notify_provider=True, reason="playlist_exhausted")
                    return {"program": None, "position": None, "wrapped": False, **stopped}
                next_position = 0

            program = window[next_position]
            now = self.clock()
            session_machine.switch_program(self.db, session, program, next_position, now, LOG_COMPLETED)
            session_machine.recover(session)
            self._point_channel_at(channel, session, program)
            self._commit(channel_id, "advance_to_next", after_provider=False)

            self._emit(
                channel_id,
                "program_advanced",
                {"session_id": session.id, "program_id": program.id, "position": next_position, "wrapped": wrapped},
            )
            return {"program": serialize_program(program), "position": next_position, "wrapped": wrapped}

    def switch_to_live(self, channel_id: str) -> dict:
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = self._running_session(channel_id)
            session_machine.set_source(session, SOURCE_LIVE, self.clock())
            channel.is_live = True
            self._commit(channel_id, "switch_to_live", after_provider=False)
            self._emit(channel_id, "switched_to_live", {"session_id": session.id})
            return {"session": session_machine.serialize_session(session)}

    def fallback_to_playlist(self, channel_id: str, reason: str | None = None) -> dict:
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = self._running_session(channel_id)
            now = self.clock()
            programs = list_programs(self.db, channel_id)
            current, _ = resolver.resolve_current_and_next(programs, now, self.tie_break)

            current_id = current.id if current is not None else None
            if current_id != session.current_program_id:
                position = resolver.position_of(self._window(programs), current_id)
                session_machine.switch_program(self.db, session, current, position, now, LOG_COMPLETED)
            session_machine.set_source(session, SOURCE_PLAYLIST, now)
            if reason:
                session.error_message = reason
            if current is not None:
                self._point_channel_at(channel, session, current)
            self._commit(channel_id, "fallback_to_playlist", after_provider=False)

            self._emit(
                channel_id,
                "fallback_to_playlist",
                {"session_id": session.id, "program_id": current_id, "reason": reason},
            )
            return {"session": session_machine.serialize_session(session), "program": serialize_program(current)}

    def transmit(self, channel_id: str, protocol: str = "hls", target: str | None = None) -> dict:
        protocol = (protocol or "hls").strip().lower()
        if protocol not in TRANSMIT_PROTOCOLS:
            raise InvalidAction(f"Unsupported transmission protocol: {protocol}")
        with self.locks.hold(channel_id):
            channel = self._channel(channel_id)
            session = self._running_session(channel_id)
            target = (target or "").strip() or default_output_path(channel_id)
            try:
                stream = self.provider.transmit(channel_id, protocol, target)
            except ProviderError as exc:
                logger.warning("provider transmit failed channel=%s: %s", channel_id, exc.message)
                self._emit(channel_id, "transmission_failed", {"protocol": protocol, "error": exc.message})
                raise ExternalProviderError(exc.message) from exc

            now = self.clock()
            channel.status = "streaming"
            channel.is_live = True
            channel.schedule_active = True
            channel.hls_url = stream.hls_url
            session.status = SESSION_STREAMING
            session.stream_url = stream.hls_url
            session.last_heartbeat = now

            output = (
                self.db.query(StreamOutput)
                .filter(StreamOutput.channel_id == channel_id, StreamOutput.protocol == protocol)
                .first()
            )
            target_url = stream.hls_url if protocol == "hls" else target
            if output is None:
                output = StreamOutput(channel_id=channel_id, protocol=protocol, target_url=target_url)
                self.db.add(output)
            output.session_id = session.id
            output.target_url = target_url
            output.is_active = True
            output.last_status = "active"
            self.db.add(
                TransmissionLog(channel_id=channel_id, protocol=protocol, target=target, status="active", started_at=now)
            )
            self._commit(channel_id, "transmit", after_provider=True)

            self._emit(channel_id, "transmission_started", {"protocol": protocol, "target": target, "hls_url": stream.hls_url})
            return {
                "hls_url": stream.hls_url,
                "iframe_url": stream.iframe_url,
                "session": session_machine.serialize_session(session),
            }

    def report_error(self, channel_id: str, message: str | None, details: dict[str, Any] | None = None) -> dict:
        message = (message or "").strip() or "Unknown error"
        with self.locks.hold(channel_id):
            self._channel(channel_id)
            session = session_machine.get_session(self.db, channel_id)
            logger.error("error reported channel=%s: %s", channel_id, message)
            if session is not None:
                session_machine.mark_error(self.db, session, message, self.clock())
                self._commit(channel_id, "report_error", after_provider=False)
            self._emit(channel_id, "stream_error", {"message": message, "details": details or {}})
            return {"message": "Error reported", "session": session_machine.serialize_session(session)}

    def heartbeat(self, channel_id: str, metadata: dict[str, Any] | None = None) -> dict:
        with self.locks.hold(channel_id):
            self._channel(channel_id)
            session = self._running_session(channel_id)
            session.last_heartbeat = self.clock()
            if metadata:
                session_machine.merge_diagnostics(session, metadata)
            self._commit(channel_id, "heartbeat", after_provider=False)
            self._emit(channel_id, "heartbeat", {"session_id": session.id, "metadata_keys": sorted(metadata or {})})
            return {"message": "Heartbeat updated", "session": session_machine.serialize_session(session)}

    # -- read-only views ---------------------------------------------------

    def status(self, channel_id: str, include_provider: bool = False) -> dict:
        self._channel(channel_id)
        now = self.clock()
        session = session_machine.get_session(self.db, channel_id)
        programs = list_programs(self.db, channel_id)
        current, upcoming = resolver.resolve_current_and_next(programs, now, self.tie_break)

        provider_status = None
        if include_provider and session is not None and session.is_running:
            try:
                provider_status = self.provider.status(channel_id)
            except ProviderError as exc:
                logger.warning("provider status failed channel=%s: %s", channel_id, exc.message)
                provider_status = {"error": exc.message}

        return {
            "active": session is not None and session.is_running,
            "session": session_machine.serialize_session(session),
            "current_program": serialize_program(current),
            "next_program": serialize_program(upcoming),
            "progress": resolver.compute_progress(current, now) if current is not None else None,
            "provider": provider_status,
        }

    def get_playlist(self, channel_id: str) -> dict:
        self._channel(channel_id)
        programs = list_programs(self.db, channel_id)
        timeline = resolver.split_timeline(programs, self.clock(), self.tie_break)
        return {
            "current": serialize_program(timeline["current"]),
            "past": [serialize_program(entry) for entry in timeline["past"]],
            "upcoming": [serialize_program(entry) for entry in timeline["upcoming"]],
            "total_count": len(programs),
        }

    def get_current(self, channel_id: str) -> dict:
        self._channel(channel_id)
        now = self.clock()
        current, upcoming = resolver.resolve_current_and_next(list_programs(self.db, channel_id), now, self.tie_break)
        payload = serialize_program(current)
        if payload is not None:
            payload["progress"] = resolver.compute_progress(current, now)
        return {"current": payload, "next": serialize_program(upcoming)}

    def get_schedule(self, channel_id: str) -> dict:
        self._channel(channel_id)
        programs = list_programs(self.db, channel_id)
        history: dict[str, list[PlaylistExecutionLog]] = {}
        program_ids = [entry.id for entry in programs]
        if program_ids:
            logs = (
                self.db.query(PlaylistExecutionLog)
                .filter(PlaylistExecutionLog.program_id.in_(program_ids))
                .order_by(PlaylistExecutionLog.started_at.desc())
                .all()
            )
            for entry in logs:
                history.setdefault(entry.program_id, []).append(entry)

        enriched = []
        for entry in programs:
            payload = serialize_program(entry)
            runs = history.get(entry.id, [])
            payload["execution_count"] = len(runs)
            payload["last_played"] = runs[0].started_at.isoformat() if runs else None
            payload["last_status"] = runs[0].status if runs else None
            enriched.append(payload)
        return {"programs": enriched, "total": len(programs)}

    def get_logs(self, channel_id: str, limit: Any = 100, log_type: str = "all") -> dict:
        self._channel(channel_id)
        return monitoring.get_logs(self.db, channel_id, limit, log_type)

    def get_stats(self, channel_id: str) -> dict:
        self._channel(channel_id)
        return monitoring.get_stats(self.db, channel_id, self.clock())

    # -- provider callbacks ------------------------------------------------

    def handle_provider_event(self, webhook: ProviderWebhookIn) -> dict:
        channel_id = webhook.channel_id
        self.events.emit(
            channel_id,
            webhook.event,
            webhook.model_dump(mode="json", by_alias=True),
            response_status=200,
        )
        logger.info("provider webhook %s channel=%s", webhook.event, channel_id)

        if webhook.event == "stream_started":
            with self.locks.hold(channel_id):
                channel = self._channel(channel_id)
                channel.status = "streaming"
                channel.is_live = True
                self._commit(channel_id, "stream_started", after_provider=False)
            return {"channel_status": "streaming"}
        if webhook.event == "stream_stopped":
            return self.stop(channel_id, notify_provider=False, reason="provider_stopped")
        if webhook.event == "live_disconnected":
            return self.fallback_to_playlist(channel_id, reason=LIVE_DISCONNECTED_NOTE)
        if webhook.event == "source_switched":
            source = str((webhook.data or {}).get("sourceType") or SOURCE_PLAYLIST).strip().lower()
            if source == SOURCE_LIVE:
                return self.switch_to_live(channel_id)
            return self.fallback_to_playlist(channel_id)
        return self.report_error(channel_id, webhook.error, webhook.data)

    # -- request boundary ----------------------------------------------------

    def _run(self, action: str, channel_id: str, data: dict[str, Any], output_config: OutputConfig | None) -> dict:
        if action == "start":
            return self.start(channel_id, output_config, data.get("output_path") or data.get("outputPath"))
        if action == "stop":
            return self.stop(channel_id)
        if action in {"advance_to_next", "next"}:
            return self.advance_to_next(channel_id)
        if action == "switch_to_live":
            return self.switch_to_live(channel_id)
        if action == "fallback_to_playlist":
            return self.fallback_to_playlist(channel_id, data.get("reason"))
        if action == "status":
            return self.status(channel_id, bool(data.get("include_provider", False)))
        if action == "get_playlist":
            return self.get_playlist(channel_id)
        if action == "get_current":
            return self.get_current(channel_id)
        if action == "get_schedule":
            return self.get_schedule(channel_id)
        if action == "report_error":
            return self.report_error(channel_id, data.get("message"), data.get("details"))
        if action == "heartbeat":
            return self.heartbeat(channel_id, data.get("metadata"))
        if action == "get_logs":
            return self.get_logs(channel_id, data.get("limit", 100), data.get("log_type") or data.get("logType") or "all")
        if action == "get_stats":
            return self.get_stats(channel_id)
        if action == "transmit":
            return self.transmit(channel_id, data.get("protocol") or "hls", data.get("target"))
        raise InvalidAction(f"Unknown action: {action}")

    def dispatch(
        self,
        action: str,
        channel_id: str,
        data: dict[str, Any] | None = None,
        output_config: OutputConfig | None = None,
        account_id: str | None = None,
    ) -> ActionResult:
        action = (action or "").strip().lower()
        logger.info("%s channel=%s", action, channel_id)
        try:
            self.authorize(channel_id, account_id)
            result = self._run(action, channel_id, data or {}, output_config)
            return ActionResult(success=True, data=result)
        except OnAirError as exc:
            self.db.rollback()
            logger.info("%s failed channel=%s kind=%s: %s", action, channel_id, exc.kind, exc.message)
            return ActionResult(success=False, error=ActionError(**exc.to_dict()))
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("%s failed on a database error channel=%s", action, channel_id)
            error = PersistenceError(f"Could not complete '{action}' because of a database error.")
            return ActionResult(success=False, error=ActionError(**error.to_dict()))
        except Exception as exc:
            self.db.rollback()
            logger.exception("%s failed unexpectedly channel=%s", action, channel_id)
            return ActionResult(
                success=False,
                error=ActionError(kind="internal_error", message=str(exc) or "Internal error"),
            )
