"""aiortc-backed peer transport and capture devices."""
from dataclasses import dataclass, field
from typing import Any, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from errors import MediaAccessDenied
from logging_config import get_logger
from client.media import MediaDevices, MediaStream, MediaTrack
from client.transport import PeerTransport

logger = get_logger(__name__)


def make_rtc_config(ice_servers: Optional[List[dict]]) -> RTCConfiguration:
    # an explicit empty list keeps aiortc from falling back to its default STUN server
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=s["urls"], username=s.get("username"), credential=s.get("credential"))
            for s in ice_servers or []
        ]
    )


def _blank_like(frame):
    """Silent or black frame with the same shape and timing as ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height)
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Forwards ``source`` frames while ``owner.enabled``, blank frames otherwise."""

    def __init__(self, source: MediaStreamTrack, owner: MediaTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.owner = owner

    async def recv(self):
        frame = await self.source.recv()
        if self.owner.enabled:
            return frame
        return _blank_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


@dataclass
class PlayerTrack(MediaTrack):
    source: Any = field(default=None, repr=False)
    _rtc_track: Any = field(default=None, repr=False)

    @property
    def rtc_track(self) -> SwitchableTrack:
        if self._rtc_track is None:
            self._rtc_track = SwitchableTrack(self.source, self)
        return self._rtc_track

    def on_stop(self):
        if self._rtc_track is not None:
            self._rtc_track.stop()
        elif self.source is not None:
            self.source.stop()


class PlayerMediaDevices(MediaDevices):
    """Capture through ``MediaPlayer``: a device (``/dev/video0`` with ``v4l2``,
    ``default`` with ``pulse``) or a media file.
    """

    def __init__(
        self,
        audio_source: Optional[str] = None,
        video_source: Optional[str] = None,
        audio_format: Optional[str] = None,
        video_format: Optional[str] = None,
        options: Optional[dict] = None,
    ):
        self.audio_source = audio_source
        self.video_source = video_source
        self.audio_format = audio_format
        self.video_format = video_format
        self.options = options or {}

    async def get_user_media(self, audio: bool = True, video: bool = True) -> MediaStream:
        tracks = []
        try:
            if video:
                tracks.append(self._open("video", self.video_source, self.video_format))
            if audio:
                tracks.append(self._open("audio", self.audio_source, self.audio_format))
        except MediaAccessDenied:
            for track in tracks:
                track.stop()
            raise
        return MediaStream(tracks)

    def _open(self, kind: str, source: Optional[str], fmt: Optional[str]) -> PlayerTrack:
        if not source:
            raise MediaAccessDenied(f"No {kind} source configured")
        try:
            player = MediaPlayer(source, format=fmt, options=self.options)
        except (FFmpegError, OSError) as e:
            raise MediaAccessDenied(f"Cannot open {kind} source {source}: {e}") from e

        track = player.audio if kind == "audio" else player.video
        unused = player.video if kind == "audio" else player.audio
        if unused is not None:
            unused.stop()
        if track is None:
            raise MediaAccessDenied(f"{source} has no {kind} stream")
        logger.debug(f"Opened {kind} source {source}")
        return PlayerTrack(kind=kind, id=track.id, source=track)


class AiortcTransport(PeerTransport):
    """``PeerTransport`` over an aiortc ``RTCPeerConnection``.

    aiortc gathers every local candidate inside ``setLocalDescription``, so
    they travel embedded in ``local_description`` and no ``icecandidate``
    events are emitted. Trickled candidates from the other side are still
    accepted through ``add_ice_candidate``.
    """

    def __init__(self, ice_servers: Optional[List[dict]] = None):
        super().__init__(ice_servers)
        self.pc = RTCPeerConnection(configuration=make_rtc_config(self.ice_servers))

        @self.pc.on("connectionstatechange")
        def on_connection_state_change():
            self.emit("connectionstatechange", self.pc.connectionState)

        @self.pc.on("track")
        def on_track(track):
            logger.debug(f"Remote {track.kind} track {track.id}")
            self.emit("track", track)

    @property
    def local_description(self) -> Optional[dict]:
        description = self.pc.localDescription
        if description is None:
            return None
        return {"type": description.type, "sdp": description.sdp}

    def add_track(self, track):
        self.pc.addTrack(track.rtc_track if isinstance(track, PlayerTrack) else track)

    async def create_offer(self) -> dict:
        offer = await self.pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict):
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def set_remote_description(self, description: dict):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: dict):
        sdp = (candidate or {}).get("candidate") or ""
        if not sdp:
            # end-of-candidates marker
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    async def close(self):
        await self.pc.close()
