from typing import Callable, Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)

# Values reported through "connectionstatechange"
CONNECTION_STATES = ("new", "connecting", "connected", "disconnected", "failed", "closed")


class PeerTransport:
    """Peer media session, shaped after RTCPeerConnection.

    Session descriptions and ICE candidates are plain JSON-able dicts so they
    can travel through the signal relay unchanged. Implementations call
    ``emit`` for ``icecandidate`` (candidate dict), ``track`` (remote track)
    and ``connectionstatechange`` (one of CONNECTION_STATES).
    """

    # set by implementations whose applied description differs from the created one
    local_description: Optional[dict] = None

    def __init__(self, ice_servers: Optional[List[dict]] = None):
        self.ice_servers = ice_servers or []
        self.connection_state = "new"
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event: str, handler: Callable):
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def emit(self, event: str, *args):
        if event == "connectionstatechange":
            if args[0] not in CONNECTION_STATES:
                logger.warning(f"Ignoring unknown connection state {args[0]!r}")
                return
            self.connection_state = args[0]
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}", exc_info=True)

    def add_track(self, track):
        raise NotImplementedError

    async def create_offer(self) -> dict:
        raise NotImplementedError

    async def create_answer(self) -> dict:
        raise NotImplementedError

    async def set_local_description(self, description: dict):
        raise NotImplementedError

    async def set_remote_description(self, description: dict):
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: dict):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError
