import asyncio

import pytest

from localstream import create_app
from localstream.models import QualityTier
from localstream.services.allocation import AllocationEngine
from localstream.services.catalog import QualityTierCatalog
from localstream.services.probe import ProbeService
from localstream.services.registry import StreamRegistry
from localstream.services.relay import SignalingRelay

TIERS = [
    QualityTier("720p30", 1280, 720, 30, 2_000_000, 3_000_000, 4_000_000),
    QualityTier("1080p30", 1920, 1080, 30, 4_000_000, 6_000_000, 8_000_000),
]


class FakeEmitter:
    def __init__(self):
        self.sent = []

    def emit(self, event, data, to=None):
        self.sent.append((event, data, to))

    def to(self, sid, event=None):
        return [(e, d) for e, d, t in self.sent if t == sid and (event is None or e == event)]

    def broadcasts(self, event):
        return [d for e, d, t in self.sent if t is None and e == event]


class FakeClock:
    """Monotonic clock and sleep that only move when told to."""

    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def catalog():
    return QualityTierCatalog(TIERS, default_tier="720p30")


@pytest.fixture
def engine(catalog):
    return AllocationEngine(catalog)


@pytest.fixture
def emitter():
    return FakeEmitter()


@pytest.fixture
def relay(engine, emitter):
    return SignalingRelay(
        engine,
        StreamRegistry(),
        ProbeService(fallback_mbps=6.0),
        emitter=emitter,
        viewer_base_url="http://192.168.1.10:3000",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_and_socketio():
    return create_app(SOCKETIO_ASYNC_MODE="threading", PUBLIC_HOST="192.168.1.10")


@pytest.fixture
def app(app_and_socketio):
    app, _ = app_and_socketio
    app.config["TESTING"] = True
    return app


@pytest.fixture
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture
def client(app):
    return app.test_client()
