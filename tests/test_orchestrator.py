import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from conftest import NOW, FakeClock, FakeProvider, schedule
from onair.db import Base
from onair.errors import (
    ExternalProviderError,
    InvalidAction,
    NoActiveSession,
    NoScheduledContent,
    PersistenceInconsistency,
)
from onair.models.channel import Channel
from onair.models.execution_log import PlaylistExecutionLog
from onair.models.output import StreamOutput, TransmissionLog
from onair.models.program import ProgramEntry
from onair.models.session import StreamingSession
from onair.schemas.broadcast import OutputConfig
from onair.services.events import write_event
from onair.services.locks import ChannelLocks
from onair.services.orchestrator import Orchestrator
from onair.services.provider import default_hls_url
from onair.services.session_machine import get_session, read_metadata
from onair.services.schedule_store import add_program


def three_programs(db, channel):
    return schedule(db, channel.id, ("Alpha", -10, 30), ("Bravo", 20, 30), ("Charlie", 50, 30))


def execution_logs(db, session_id):
    return (
        db.query(PlaylistExecutionLog)
        .filter(PlaylistExecutionLog.session_id == session_id)
        .order_by(PlaylistExecutionLog.started_at.asc(), PlaylistExecutionLog.program_title.asc())
        .all()
    )


def test_start_plays_current_program(db, channel, provider, orchestrator):
    alpha, bravo, _ = three_programs(db, channel)
    orch = orchestrator()

    result = orch.start(channel.id)

    assert result["already_active"] is False
    assert result["current_program"]["id"] == alpha.id
    assert result["next_program"]["id"] == bravo.id
    assert result["position"] == 0
    assert provider.count("start") == 1
    _, playlist, output_path = provider.last("start")
    assert [item["title"] for item in playlist] == ["Alpha", "Bravo", "Charlie"]
    assert playlist[0]["durationSeconds"] == 1800
    assert output_path == f"streams/{channel.id}"

    session = get_session(db, channel.id)
    assert session.status == "active"
    assert session.source_type == "playlist"
    assert session.current_program_id == alpha.id
    assert read_metadata(session).external_job_id == "job-1"
    db.refresh(channel)
    assert channel.is_live is True
    assert channel.schedule_active is True
    assert channel.hls_url == default_hls_url(channel.id)
    logs = execution_logs(db, session.id)
    assert len(logs) == 1 and logs[0].ended_at is None and logs[0].program_id == alpha.id
    assert [event.event_type for event in orch.events.pending] == ["stream_started"]


def test_start_before_anything_airs_uses_next_program(db, channel, provider, orchestrator):
    schedule(db, channel.id, ("Later", 30, 30), ("Soon", 5, 30))
    result = orchestrator().start(channel.id)
    assert result["current_program"]["title"] == "Soon"
    assert result["position"] == 0


def test_start_on_empty_schedule_makes_no_provider_call(db, channel, provider, orchestrator):
    with pytest.raises(NoScheduledContent):
        orchestrator().start(channel.id)
    assert provider.calls == []
    assert get_session(db, channel.id) is None


def test_start_without_playable_media_is_refused(db, channel, provider, orchestrator):
    add_program(db, channel.id, title="Bare", program_type="vod", start_time=NOW, duration_minutes=30)
    db.commit()
    with pytest.raises(NoScheduledContent):
        orchestrator().start(channel.id)
    assert provider.calls == []


def test_provider_failure_leaves_state_unchanged(db, channel, provider, orchestrator):
    three_programs(db, channel)
    provider.fail_on["start"] = "quota exceeded for account"
    orch = orchestrator()

    with pytest.raises(ExternalProviderError) as excinfo:
        orch.start(channel.id)

    assert excinfo.value.message == "quota exceeded for account"
    assert get_session(db, channel.id) is None
    db.refresh(channel)
    assert channel.is_live is False
    assert db.query(PlaylistExecutionLog).count() == 0
    assert [event.event_type for event in orch.events.pending] == ["stream_start_failed"]


def test_second_start_is_idempotent(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    first = orch.start(channel.id)
    second = orch.start(channel.id)
    assert second["already_active"] is True
    assert second["session_id"] == first["session_id"]
    assert provider.count("start") == 1
    assert db.query(StreamingSession).count() == 1


def test_start_after_error_restarts_session(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    orch.report_error(channel.id, "decoder crashed")
    result = orch.start(channel.id)
    assert result["already_active"] is False
    assert provider.count("start") == 2
    session = get_session(db, channel.id)
    assert session.status == "active"
    assert session.error_message is None
    assert len([log for log in execution_logs(db, session.id) if log.ended_at is None]) == 1


def test_commit_failure_after_provider_start_is_reported(db, channel, provider, orchestrator, monkeypatch):
    three_programs(db, channel)

    def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", failing_commit)
    orch = orchestrator()
    with pytest.raises(PersistenceInconsistency):
        orch.start(channel.id)
    assert provider.count("start") == 1
    assert "persistence_inconsistency" in [event.event_type for event in orch.events.pending]


def test_stop_is_idempotent(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()

    idle = orch.stop(channel.id)
    assert idle["already_idle"] is True
    assert provider.calls == []

    orch.start(channel.id)
    stopped = orch.stop(channel.id)
    assert stopped["stopped"] is True
    assert provider.count("stop") == 1

    again = orch.stop(channel.id)
    assert again["already_idle"] is True
    assert provider.count("stop") == 1

    session = get_session(db, channel.id)
    assert session.status == "idle"
    db.refresh(channel)
    assert channel.is_live is False
    assert channel.schedule_active is False
    assert channel.status == "offline"


def test_stop_cleans_up_even_when_provider_fails(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    provider.fail_on["stop"] = "job not found"

    with pytest.raises(ExternalProviderError):
        orch.stop(channel.id)

    session = get_session(db, channel.id)
    assert session.status == "idle"
    assert all(log.ended_at is not None for log in execution_logs(db, session.id))


def test_advance_walks_the_schedule_and_wraps(db, channel, provider, orchestrator):
    alpha, bravo, charlie = three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)

    first = orch.advance_to_next(channel.id)
    second = orch.advance_to_next(channel.id)
    third = orch.advance_to_next(channel.id)

    assert (first["program"]["id"], first["position"]) == (bravo.id, 1)
    assert (second["program"]["id"], second["position"]) == (charlie.id, 2)
    assert (third["program"]["id"], third["position"], third["wrapped"]) == (alpha.id, 0, True)
    assert get_session(db, channel.id).current_program_id == alpha.id


def test_advance_with_stop_policy_ends_session(db, channel, provider, orchestrator):
    schedule(db, channel.id, ("Only", -5, 30))
    orch = orchestrator(exhausted_policy="stop")
    orch.start(channel.id)

    result = orch.advance_to_next(channel.id)

    assert result["program"] is None
    assert result["stopped"] is True
    assert provider.count("stop") == 1
    assert get_session(db, channel.id).status == "idle"


def test_advance_requires_running_session(db, channel, orchestrator):
    three_programs(db, channel)
    with pytest.raises(NoActiveSession):
        orchestrator().advance_to_next(channel.id)


def test_execution_log_closes_each_program(db, channel, clock, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    clock.advance(minutes=30)
    orch.advance_to_next(channel.id)
    clock.advance(minutes=30)
    orch.advance_to_next(channel.id)
    clock.advance(minutes=10)
    orch.stop(channel.id)

    logs = execution_logs(db, get_session(db, channel.id).id)
    assert [log.program_title for log in logs] == ["Alpha", "Bravo", "Charlie"]
    assert [log.status for log in logs] == ["completed", "completed", "stopped"]
    assert [log.duration_seconds for log in logs] == [1800, 1800, 600]
    assert all(log.ended_at is not None for log in logs)


def test_switch_to_live_and_fallback(db, channel, clock, orchestrator):
    alpha, bravo, _ = three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)

    live = orch.switch_to_live(channel.id)
    assert live["session"]["source_type"] == "live"

    back = orch.fallback_to_playlist(channel.id)
    assert back["session"]["source_type"] == "playlist"
    assert back["program"]["id"] == alpha.id
    session = get_session(db, channel.id)
    assert len(execution_logs(db, session.id)) == 1

    orch.switch_to_live(channel.id)
    clock.advance(minutes=25)
    moved = orch.fallback_to_playlist(channel.id, reason="Live source disconnected, switched to playlist")
    assert moved["program"]["id"] == bravo.id
    session = get_session(db, channel.id)
    assert session.error_message == "Live source disconnected, switched to playlist"
    logs = execution_logs(db, session.id)
    assert [(log.program_title, log.status) for log in logs] == [("Alpha", "completed"), ("Bravo", "playing")]


def test_report_error_then_advance_recovers(db, channel, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)

    reported = orch.report_error(channel.id, "encoder stalled", {"code": 17})
    assert reported["session"]["status"] == "error"
    open_log = [log for log in execution_logs(db, reported["session"]["id"]) if log.ended_at is None][0]
    assert open_log.error_message == "encoder stalled"

    orch.advance_to_next(channel.id)
    session = get_session(db, channel.id)
    assert session.status == "active"
    assert session.error_message is None


def test_report_error_without_session(db, channel, orchestrator):
    orch = orchestrator()
    result = orch.report_error(channel.id, None)
    assert result["session"] is None
    event = orch.events.pending[0]
    assert (event.event_type, event.payload["message"]) == ("stream_error", "Unknown error")


def test_heartbeat_merges_diagnostics(db, channel, clock, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    clock.advance(seconds=30)

    result = orch.heartbeat(channel.id, {"current_title": "Alpha (live cut)", "bitrate": 3200})

    assert result["session"]["metadata"]["current_title"] == "Alpha (live cut)"
    assert result["session"]["metadata"]["extra"] == {"bitrate": 3200}
    assert get_session(db, channel.id).last_heartbeat == clock.now


def test_transmit_switches_session_to_streaming(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()

    with pytest.raises(InvalidAction):
        orch.transmit(channel.id, "carrier-pigeon", None)
    with pytest.raises(NoActiveSession):
        orch.transmit(channel.id, "rtmp", "rtmp://ingest.test/live")

    orch.start(channel.id)
    result = orch.transmit(channel.id, "rtmp", "rtmp://ingest.test/live")

    assert result["session"]["status"] == "streaming"
    assert provider.last("transmit") == (channel.id, "rtmp", "rtmp://ingest.test/live")
    output = db.query(StreamOutput).filter(StreamOutput.channel_id == channel.id).one()
    assert (output.protocol, output.target_url, output.is_active) == ("rtmp", "rtmp://ingest.test/live", True)
    db.refresh(channel)
    assert channel.status == "streaming"

    orch.stop(channel.id)
    db.expire_all()
    assert db.query(StreamOutput).one().is_active is False
    assert db.query(TransmissionLog).one().ended_at is not None


def test_start_records_output_config(db, channel, orchestrator):
    three_programs(db, channel)
    config = OutputConfig(protocol="rtmp", targetUrl="rtmp://ingest.test/app", bitrate=4500, resolution="1080p")
    orchestrator().start(channel.id, output_config=config)
    output = db.query(StreamOutput).one()
    assert (output.target_url, output.bitrate_kbps, output.is_active) == ("rtmp://ingest.test/app", 4500, True)


def test_status_and_playlist_views(db, channel, provider, orchestrator):
    alpha, bravo, charlie = three_programs(db, channel)
    orch = orchestrator()

    idle = orch.status(channel.id)
    assert idle["active"] is False
    assert idle["current_program"]["id"] == alpha.id
    assert idle["progress"]["percentage"] == pytest.approx(33.33)

    orch.start(channel.id)
    provider.fail_on["status"] = "upstream unavailable"
    running = orch.status(channel.id, include_provider=True)
    assert running["active"] is True
    assert running["provider"] == {"error": "upstream unavailable"}

    playlist = orch.get_playlist(channel.id)
    assert playlist["current"]["id"] == alpha.id
    assert [item["id"] for item in playlist["upcoming"]] == [bravo.id, charlie.id]
    assert playlist["total_count"] == 3

    current = orch.get_current(channel.id)
    assert current["current"]["progress"]["remaining_ms"] == 20 * 60 * 1000
    assert current["next"]["id"] == bravo.id

    listing = orch.get_schedule(channel.id)
    counts = {item["id"]: item["execution_count"] for item in listing["programs"]}
    assert counts == {alpha.id: 1, bravo.id: 0, charlie.id: 0}


def test_stats_and_logs(db, engine, channel, clock, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    clock.advance(minutes=30)
    orch.advance_to_next(channel.id)
    orch.report_error(channel.id, "frame drops")
    for event in orch.events.drain():
        assert write_event(engine, event)

    stats = orch.get_stats(channel.id)
    assert stats["is_active"] is True
    assert stats["programs_played"] == 1
    assert stats["error_count"] == 1
    assert stats["total_streaming_minutes"] == 30

    logs = orch.get_logs(channel.id, limit=10, log_type="playlist")
    assert list(logs) == ["playlist_logs"]
    assert len(logs["playlist_logs"]) == 2

    everything = orch.get_logs(channel.id)
    assert set(everything) == {"sessions", "playlist_logs", "webhook_logs", "transmission_logs"}
    assert {row["event_type"] for row in everything["webhook_logs"]} == {
        "stream_started",
        "program_advanced",
        "stream_error",
    }


def test_removed_program_keeps_history(db, channel, orchestrator):
    alpha, _, _ = three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    db.delete(db.get(ProgramEntry, alpha.id))
    db.commit()

    status = orch.status(channel.id)
    assert status["session"]["current_program_id"] == alpha.id
    result = orch.advance_to_next(channel.id)
    assert result["program"]["title"] == "Charlie"


def test_dispatch_wraps_errors(db, channel, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()

    unknown = orch.dispatch("rewind", channel.id, account_id="acct-1")
    assert unknown.success is False
    assert unknown.error.kind == "invalid_action"
    assert unknown.error.hint

    denied = orch.dispatch("start", channel.id, account_id="someone-else")
    assert denied.error.kind == "access_denied"

    missing = orch.dispatch("status", "no-such-channel", account_id="acct-1")
    assert missing.error.kind == "channel_not_found"

    started = orch.dispatch("start", channel.id, account_id="acct-1")
    assert started.success is True
    advanced = orch.dispatch("next", channel.id, account_id="acct-1")
    assert advanced.data["position"] == 1


def test_concurrent_starts_create_one_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    with factory() as setup:
        channel = Channel(name="Race")
        setup.add(channel)
        setup.commit()
        channel_id = channel.id
        schedule(setup, channel_id, ("Alpha", -10, 30), ("Bravo", 20, 30))

    provider = FakeProvider()
    locks = ChannelLocks()
    barrier = threading.Barrier(4)
    results = []

    def worker():
        with factory() as db:
            orch = Orchestrator(db, provider, clock=FakeClock(), locks=locks)
            barrier.wait()
            results.append(orch.dispatch("start", channel_id))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(result.success for result in results)
    assert sum(1 for result in results if not result.data["already_active"]) == 1
    assert provider.count("start") == 1
    with factory() as db:
        assert db.query(StreamingSession).count() == 1
    engine.dispose()


def test_error_on_stopped_channel_keeps_it_idle(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    orch.stop(channel.id)
    provider.fail_on["stop"] = "job not found"

    reported = orch.report_error(channel.id, "late provider error")

    assert reported["session"]["status"] == "idle"
    assert reported["session"]["error_message"] == "late provider error"
    assert reported["session"]["metadata"]["last_error_at"] is not None
    assert orch.status(channel.id)["active"] is False
    with pytest.raises(NoActiveSession):
        orch.advance_to_next(channel.id)
    assert orch.stop(channel.id)["already_idle"] is True
    assert provider.count("stop") == 1
    assert provider.count("start") == 1
    db.refresh(channel)
    assert channel.is_live is False


def test_error_on_never_started_channel_keeps_it_idle(db, channel, provider, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()

    assert orch.report_error(channel.id, "spurious")["session"] is None
    with pytest.raises(NoActiveSession):
        orch.advance_to_next(channel.id)
    assert orch.stop(channel.id)["already_idle"] is True
    assert orch.status(channel.id)["active"] is False
    assert provider.calls == []


def test_advance_points_channel_at_program_media(db, channel, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    db.refresh(channel)
    assert channel.hls_url == default_hls_url(channel.id)

    orch.advance_to_next(channel.id)

    db.refresh(channel)
    assert channel.hls_url == "https://cdn.test/bravo.mp4"
    assert channel.is_live is True


def test_error_while_transmitting_recovers_to_streaming(db, channel, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    orch.transmit(channel.id, "rtmp", "rtmp://ingest.test/live")

    assert orch.report_error(channel.id, "dropped frames")["session"]["status"] == "error"
    result = orch.advance_to_next(channel.id)

    session = get_session(db, channel.id)
    assert result["position"] == 1
    assert session.status == "streaming"
    assert read_metadata(session).resume_status is None
    db.refresh(channel)
    assert channel.status == "streaming"


def test_heartbeat_is_audited(db, channel, orchestrator):
    three_programs(db, channel)
    orch = orchestrator()
    orch.start(channel.id)
    orch.events.drain()

    orch.heartbeat(channel.id, {"bitrate": 3000})

    event = orch.events.pending[0]
    assert (event.event_type, event.payload["metadata_keys"]) == ("heartbeat", ["bitrate"])
