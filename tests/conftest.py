import os

os.environ["ONAIR_DATABASE_URL"] = "sqlite://"
os.environ["ONAIR_API_KEY"] = ""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from onair.api.broadcast import get_clock
from onair.db import Base, get_db
from onair.main import app
from onair.models.channel import Channel
from onair.models.video_asset import VideoAsset
from onair.services.locks import ChannelLocks
from onair.services.orchestrator import Orchestrator
from onair.services.provider import (
    ProviderError,
    ProviderStream,
    TranscodingProvider,
    default_hls_url,
    default_iframe_url,
    get_provider,
)
from onair.services.schedule_store import add_program

NOW = datetime(2024, 5, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider(TranscodingProvider):
    """Records every command; ``fail_on`` maps a command name to the error message it raises."""

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.fail_on: dict[str, str] = {}

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise ProviderError(self.fail_on[name], status_code=502)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def last(self, name: str) -> tuple:
        return [args for call, args in self.calls if call == name][-1]

    def start(self, channel_id, playlist, output_path):
        self._record("start", channel_id, playlist, output_path)
        return ProviderStream(
            hls_url=default_hls_url(channel_id),
            iframe_url=default_iframe_url(channel_id),
            external_job_id="job-1",
        )

    def stop(self, channel_id):
        self._record("stop", channel_id)
        return {"stopped": True}

    def status(self, channel_id):
        self._record("status", channel_id)
        return {"state": "running"}

    def transmit(self, channel_id, protocol, target):
        self._record("transmit", channel_id, protocol, target)
        return ProviderStream(
            hls_url=default_hls_url(channel_id),
            iframe_url=default_iframe_url(channel_id),
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(db, provider, clock):
    def build(**kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("locks", ChannelLocks())
        return Orchestrator(db, provider, **kwargs)

    return build


@pytest.fixture
def channel(db):
    item = Channel(name="Channel One", owner_account="acct-1")
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def make_asset(db, title: str, hls_url: str | None = None) -> VideoAsset:
    asset = VideoAsset(
        title=title,
        file_url=f"https://cdn.test/{title.lower().replace(' ', '-')}.mp4",
        hls_url=hls_url,
        duration_minutes=30,
    )
    db.add(asset)
    db.flush()
    return asset


def schedule(db, channel_id: str, *entries):
    """Add ``(title, offset_minutes, duration_minutes)`` entries relative to NOW, each with its own asset."""
    programs = []
    for index, (title, offset, minutes) in enumerate(entries):
        asset = make_asset(db, title)
        program = add_program(
            db,
            channel_id,
            title=title,
            program_type="vod",
            start_time=NOW + timedelta(minutes=offset),
            duration_minutes=minutes,
            asset_id=asset.id,
        )
        program.created_at = NOW - timedelta(days=1) + timedelta(seconds=index)
        programs.append(program)
    db.commit()
    return programs


@pytest.fixture
def client(session_factory, provider, clock):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
