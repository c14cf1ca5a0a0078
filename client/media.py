"""Local capture abstractions.

The platform layer (browser bridge, aiortc player, test fake) implements
``MediaDevices``; the negotiation code only sees tracks and streams.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from errors import MediaAccessDenied
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MediaTrack:
    kind: str  # "audio" or "video"
    id: str = ""
    enabled: bool = True
    stopped: bool = False

    def stop(self):
        if not self.stopped:
            self.stopped = True
            self.on_stop()

    def on_stop(self):
        """Hook for implementations that hold a real device handle."""


@dataclass
class MediaStream:
    tracks: List[MediaTrack] = field(default_factory=list)

    def audio_tracks(self) -> List[MediaTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def video_tracks(self) -> List[MediaTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def stop(self):
        for track in self.tracks:
            track.stop()


class MediaDevices:
    async def get_user_media(self, audio: bool = True, video: bool = True) -> MediaStream:
        """Capture local devices. Raises MediaAccessDenied when refused or unavailable."""
        raise NotImplementedError


async def acquire_local_media(devices: MediaDevices) -> Optional[MediaStream]:
    """Camera and microphone, then microphone only, then nothing."""
    try:
        logger.info("Requesting camera and microphone access")
        stream = await devices.get_user_media(audio=True, video=True)
        logger.info(f"Got media stream: {len(stream.video_tracks())} video, {len(stream.audio_tracks())} audio tracks")
        return stream
    except MediaAccessDenied as e:
        logger.warning(f"Camera and microphone unavailable ({e}), trying audio only")

    try:
        stream = await devices.get_user_media(audio=True, video=False)
        logger.info("Got audio-only media stream")
        return stream
    except MediaAccessDenied as e:
        logger.error(f"Audio capture unavailable ({e}), continuing without local media")
        return None
