import asyncio
from typing import Callable, List, Optional

from constants import MATCH_POLL_INTERVAL, SIGNAL_POLL_INTERVAL
from errors import TransientIOError
from logging_config import get_logger
from client.media import MediaDevices
from client.negotiation import PeerSession
from client.transport import PeerTransport

logger = get_logger(__name__)


class ChatSession:
    """What the presentation layer drives: find a partner, talk, skip, end.

    Holds at most one ``PeerSession``; a new one is only started after the
    previous one has released its tracks and transport.
    """

    def __init__(
        self,
        user_id: str,
        api,
        media_devices: MediaDevices,
        transport_factory: Callable[[list], PeerTransport],
        match_poll_interval: float = MATCH_POLL_INTERVAL,
        signal_poll_interval: float = SIGNAL_POLL_INTERVAL,
        on_state_change=None,
        on_remote_track=None,
        on_partner_left=None,
    ):
        self.user_id = user_id
        self.api = api
        self.media_devices = media_devices
        self.transport_factory = transport_factory
        self.match_poll_interval = match_poll_interval
        self.signal_poll_interval = signal_poll_interval
        self.on_state_change = on_state_change
        self.on_remote_track = on_remote_track
        self.on_partner_left = on_partner_left

        self.username: Optional[str] = None
        self.partner: Optional[dict] = None
        self.peer: Optional[PeerSession] = None
        self._searching = False

    async def find_partner(self, interests: Optional[List[str]] = None) -> Optional[dict]:
        """Join the queue and poll until matched. Returns None if cancelled by ``end``."""
        # set before the join request so an end() racing it is not lost
        self._searching = True
        try:
            result = await self.api.join_queue(self.user_id, interests or [])
            self.username = result.get("yourUsername")
            while self._searching and not result.get("matched"):
                await asyncio.sleep(self.match_poll_interval)
                if not self._searching:
                    break
                try:
                    result = await self.api.check_match(self.user_id)
                except TransientIOError as e:
                    logger.debug(f"Match poll skipped: {e}")
            if not self._searching:
                logger.info(f"Search cancelled for {self.user_id}")
                # the join may have reached the server after end() disconnected
                await self._leave_server()
                return None
        finally:
            self._searching = False

        self.partner = result["partner"]
        logger.info(f"{self.user_id} matched with {self.partner['userId']} ({self.partner.get('username')})")
        await self.start(self.partner)
        return self.partner

    async def start(self, partner: dict) -> PeerSession:
        await self._close_peer()
        self.partner = partner
        self.peer = PeerSession(
            self.user_id,
            partner["userId"],
            self.api,
            self.media_devices,
            self.transport_factory,
            poll_interval=self.signal_poll_interval,
            on_state_change=self.on_state_change,
            on_remote_track=self.on_remote_track,
            on_disconnect=self._partner_left,
        )
        await self.peer.start()
        return self.peer

    def _partner_left(self):
        logger.info(f"Peer connection to {self.partner and self.partner.get('userId')} lost")
        if self.on_partner_left:
            self.on_partner_left()

    async def next_partner(self, interests: Optional[List[str]] = None) -> Optional[dict]:
        await self.end()
        return await self.find_partner(interests)

    async def send_message(self, text: str):
        await self.api.send_message(self.user_id, text)

    async def fetch_messages(self) -> list:
        """Messages from the current partner. Anything else is left over from an earlier pairing."""
        messages = await self.api.get_messages(self.user_id)
        partner_id = self.partner and self.partner.get("userId")
        return [m for m in messages if m.get("from") == partner_id]

    async def _close_peer(self):
        if self.peer:
            await self.peer.close()
            self.peer = None

    async def end(self):
        """Leave the queue or the current pairing. Safe to call repeatedly."""
        self._searching = False
        await self._close_peer()
        self.partner = None
        await self._leave_server()

    async def _leave_server(self):
        try:
            await self.api.disconnect(self.user_id)
        except TransientIOError as e:
            # pointers are cleaned by the partner's disconnect or the next join
            logger.warning(f"Disconnect request failed for {self.user_id}: {e}")
