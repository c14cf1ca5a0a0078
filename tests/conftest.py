import asyncio
import itertools

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import InMemoryBackend
from client.media import MediaDevices, MediaStream, MediaTrack
from client.transport import PeerTransport
from errors import MediaAccessDenied
from services.relay import SignalRelay, TextRelay


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeMediaDevices(MediaDevices):
    """Hands out fake tracks; ``allow_video`` / ``allow_audio`` simulate permission prompts."""

    def __init__(self, allow_video=True, allow_audio=True):
        self.allow_video = allow_video
        self.allow_audio = allow_audio
        self.requests = []
        self.streams = []

    async def get_user_media(self, audio=True, video=True):
        # every stream handed out before must be released first
        self.requests.append({
            "audio": audio,
            "video": video,
            "previous_released": all(t.stopped for s in self.streams for t in s.tracks),
        })
        if (video and not self.allow_video) or (audio and not self.allow_audio):
            raise MediaAccessDenied("Permission denied")
        tracks = []
        if audio:
            tracks.append(MediaTrack("audio", id=f"mic-{len(self.streams)}"))
        if video:
            tracks.append(MediaTrack("video", id=f"cam-{len(self.streams)}"))
        stream = MediaStream(tracks)
        self.streams.append(stream)
        return stream


class FakeTransport(PeerTransport):
    """Connects as soon as an offer/answer pair has been applied on this side."""

    def __init__(self, ice_servers=None):
        super().__init__(ice_servers)
        self.tracks = []
        self.local_description = None
        self.remote_description = None
        self.candidates = []
        self.closed = False

    def add_track(self, track):
        self.tracks.append(track)

    async def create_offer(self):
        return {"type": "offer", "sdp": f"offer-sdp-{len(self.tracks)}"}

    async def create_answer(self):
        if not self.remote_description or self.remote_description["type"] != "offer":
            raise RuntimeError("No remote offer")
        return {"type": "answer", "sdp": "answer-sdp"}

    async def set_local_description(self, description):
        self.local_description = description
        self.emit("icecandidate", {"candidate": f"candidate-{description['type']}", "sdpMid": "0"})
        if description["type"] == "answer":
            self._connect()

    async def set_remote_description(self, description):
        self.remote_description = description
        if description["type"] == "answer":
            self._connect()

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    def _connect(self):
        self.emit("connectionstatechange", "connecting")
        self.emit("track", MediaTrack("video", id="remote-video"))
        self.emit("connectionstatechange", "connected")

    async def close(self):
        self.closed = True
        self.connection_state = "closed"


class InProcessApi:
    """Client API backed directly by the relay services."""

    def __init__(self, store):
        self.store = store
        self.sent = []

    async def send_signal(self, sender, recipient, kind, data):
        self.sent.append({"from": sender, "to": recipient, "type": kind, "data": data})
        SignalRelay(self.store).send({"from": sender, "to": recipient, "type": kind, "data": data})

    async def get_signals(self, user_id):
        return SignalRelay(self.store).poll(user_id)

    async def send_message(self, user_id, message):
        TextRelay(self.store).send(user_id, message)

    async def get_messages(self, user_id):
        return TextRelay(self.store).poll(user_id)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def store(clock):
    return InMemoryBackend(clock=clock)

@pytest.fixture
def client(store):
    return TestClient(create_app(store=store, anon_key=""))

@pytest.fixture
def sequential_usernames(monkeypatch):
    """Deterministic, distinct display names."""
    counter = itertools.count(1)
    monkeypatch.setattr("services.matchmaking.generate_username", lambda: f"Stranger_{next(counter)}")

@pytest.fixture
def media_devices():
    return FakeMediaDevices()

@pytest.fixture
def make_media_devices():
    return FakeMediaDevices

@pytest.fixture
def transports():
    """Factory that records every transport it builds."""
    built = []

    def factory(ice_servers):
        transport = FakeTransport(ice_servers)
        built.append(transport)
        return transport

    factory.built = built
    return factory

@pytest.fixture
def inprocess_api(store):
    return InProcessApi(store)

@pytest.fixture
def waiter():
    return wait_until
