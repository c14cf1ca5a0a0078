"""Client-side peer negotiation.

``PeerSession`` drives one pairing from local media capture to a connected
peer transport:

    idle -> acquiring_media -> negotiating -> connected
      \\___________________\\______________\\____> disconnected

Signals travel through the relay by polling. The smaller user id sends the
offer, so both sides agree on the initiator without an extra message.
Stopping the poll loop is the only cancellation signal; a poll that was
already in flight finishes but its envelopes are dropped.
"""
import asyncio
from enum import Enum
from typing import Callable, Optional, Set

from constants import ICE_SERVERS, SIGNAL_POLL_INTERVAL
from errors import TransientIOError
from logging_config import get_logger
from client.media import MediaDevices, MediaStream, MediaTrack, acquire_local_media
from client.transport import PeerTransport

logger = get_logger(__name__)


class SessionPhase(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring_media"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def is_initiator(user_id: str, partner_id: str) -> bool:
    return user_id < partner_id


class PeerSession:
    def __init__(
        self,
        user_id: str,
        partner_id: str,
        api,
        media_devices: MediaDevices,
        transport_factory: Callable[[list], PeerTransport],
        poll_interval: float = SIGNAL_POLL_INTERVAL,
        on_state_change: Optional[Callable[[SessionPhase, str], None]] = None,
        on_remote_track: Optional[Callable[[MediaTrack], None]] = None,
        on_disconnect: Optional[Callable[[], None]] = None,
    ):
        self.user_id = user_id
        self.partner_id = partner_id
        self.api = api
        self.media_devices = media_devices
        self.transport_factory = transport_factory
        self.poll_interval = poll_interval
        self.on_state_change = on_state_change
        self.on_remote_track = on_remote_track
        self.on_disconnect = on_disconnect

        self.phase = SessionPhase.IDLE
        self.connection_state = "new"
        self.local_stream: Optional[MediaStream] = None
        self.remote_tracks = []
        self.transport: Optional[PeerTransport] = None

        self._closed = False
        self._stop = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def initiator(self) -> bool:
        return is_initiator(self.user_id, self.partner_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def _set_phase(self, phase: SessionPhase):
        if self.phase == phase:
            return
        logger.info(f"Session {self.user_id}->{self.partner_id}: {self.phase.value} -> {phase.value}")
        self.phase = phase
        if self.on_state_change:
            self.on_state_change(phase, self.connection_state)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def start(self):
        if self.phase != SessionPhase.IDLE:
            raise RuntimeError(f"Session already started ({self.phase.value})")

        self._set_phase(SessionPhase.ACQUIRING_MEDIA)
        stream = await acquire_local_media(self.media_devices)
        if self._closed:
            # ended while the permission prompt was open
            if stream:
                stream.stop()
            return
        self.local_stream = stream

        self.transport = self.transport_factory(ICE_SERVERS)
        for track in stream.tracks if stream else []:
            self.transport.add_track(track)
        self.transport.on("icecandidate", self._on_ice_candidate)
        self.transport.on("track", self._on_track)
        self.transport.on("connectionstatechange", self._on_connection_state)

        self._set_phase(SessionPhase.NEGOTIATING)
        self._poll_task = asyncio.ensure_future(self._poll_loop())

        if self.initiator:
            try:
                offer = await self.transport.create_offer()
                await self.transport.set_local_description(offer)
                await self._send("offer", self.transport.local_description or offer)
            except Exception as e:
                logger.error(f"Failed to create offer for {self.partner_id}: {e}", exc_info=True)

    async def _send(self, kind: str, data):
        if self._closed:
            return
        try:
            await self.api.send_signal(self.user_id, self.partner_id, kind, data)
            logger.debug(f"Sent {kind} to {self.partner_id}")
        except TransientIOError as e:
            logger.error(f"Failed to send {kind} to {self.partner_id}: {e}")

    async def _poll_loop(self):
        while not self._stop.is_set():
            try:
                signals = await self.api.get_signals(self.user_id)
            except TransientIOError as e:
                logger.debug(f"Signal poll skipped: {e}")
                signals = []
            except Exception as e:
                logger.error(f"Error polling signals: {e}", exc_info=True)
                signals = []

            for signal in signals:
                if self._stop.is_set():
                    logger.debug(f"Discarding {len(signals)} signal(s) received after session end")
                    break
                await self.handle_signal(signal)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def handle_signal(self, signal: dict):
        transport = self.transport
        if transport is None or self._closed:
            return
        sender, kind, data = signal.get("from"), signal.get("type"), signal.get("data")
        if sender != self.partner_id:
            logger.debug(f"Ignoring {kind} from {sender}, current partner is {self.partner_id}")
            return

        try:
            if kind == "offer":
                await transport.set_remote_description(data)
                answer = await transport.create_answer()
                await transport.set_local_description(answer)
                await self._send("answer", transport.local_description or answer)
            elif kind == "answer":
                await transport.set_remote_description(data)
            elif kind == "ice-candidate":
                await transport.add_ice_candidate(data)
            else:
                logger.warning(f"Unknown signal type {kind!r} from {sender}")
        except Exception as e:
            logger.error(f"Error handling {kind} from {sender}: {e}", exc_info=True)

    def _on_ice_candidate(self, candidate):
        if candidate and not self._closed:
            self._spawn(self._send("ice-candidate", candidate))

    def _on_track(self, track):
        logger.info(f"Received remote {getattr(track, 'kind', 'unknown')} track")
        self.remote_tracks.append(track)
        if self.on_remote_track:
            self.on_remote_track(track)

    def _on_connection_state(self, state: str):
        logger.info(f"Connection state: {state}")
        self.connection_state = state
        if self._closed:
            return
        if state == "connected":
            self._set_phase(SessionPhase.CONNECTED)
        elif state in ("disconnected", "failed"):
            self._spawn(self._lost())
        elif self.on_state_change:
            self.on_state_change(self.phase, state)

    async def _lost(self):
        await self.close()
        if self.on_disconnect:
            self.on_disconnect()

    def toggle_audio(self) -> Optional[bool]:
        return self._toggle(self.local_stream.audio_tracks() if self.local_stream else [])

    def toggle_video(self) -> Optional[bool]:
        return self._toggle(self.local_stream.video_tracks() if self.local_stream else [])

    def _toggle(self, tracks) -> Optional[bool]:
        # mute/unmute only, no renegotiation
        if not tracks:
            return None
        tracks[0].enabled = not tracks[0].enabled
        return tracks[0].enabled

    @property
    def is_audio_enabled(self) -> bool:
        tracks = self.local_stream.audio_tracks() if self.local_stream else []
        return bool(tracks) and tracks[0].enabled

    @property
    def is_video_enabled(self) -> bool:
        tracks = self.local_stream.video_tracks() if self.local_stream else []
        return bool(tracks) and tracks[0].enabled

    async def close(self):
        """Stop polling, release local media and close the transport. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()

        if self.local_stream:
            self.local_stream.stop()
            self.local_stream = None
        self.remote_tracks = []

        if self.transport:
            try:
                await self.transport.close()
            except Exception as e:
                logger.error(f"Error closing transport: {e}", exc_info=True)

        task = self._poll_task
        if task and task is not asyncio.current_task() and not task.done():
            # lets an in-flight poll finish; its results are dropped
            try:
                await task
            except Exception as e:
                logger.debug(f"Poll loop ended with {e}")

        self._set_phase(SessionPhase.DISCONNECTED)
