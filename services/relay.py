import time
import uuid
from datetime import datetime
from typing import List, Optional

from backend import KVStore
from constants import MESSAGE_TTL_SECONDS, SIGNAL_TTL_SECONDS
from errors import InvalidEnvelope, NotConnected, ValidationError
from logging_config import get_logger
from redis_keys import MESSAGE_PREFIX, SIGNAL_PREFIX, key_part
from services.connections import ConnectionManager

logger = get_logger(__name__)

SIGNAL_TYPES = ("offer", "answer", "ice-candidate")


def envelope_suffix() -> str:
    """Sortable, locally unique key suffix. Key order is storage order."""
    return f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}"


class EnvelopeRelay:
    """Consume-on-read mailbox keyed by recipient.

    Each envelope is stored under ``{prefix}{suffix}`` with a TTL. ``poll``
    deletes exactly the keys it fetched and only returns envelopes whose
    delete succeeded, so an envelope reaches at most one poll.
    """

    prefix_template: str = ""
    ttl: int = 60

    def __init__(self, store: KVStore, ttl: Optional[int] = None):
        self.store = store
        if ttl is not None:
            self.ttl = ttl

    def _store_for(self, recipient: str, envelope: dict) -> str:
        key = self.prefix_template.format(user_id=key_part(recipient)) + envelope_suffix()
        self.store.set(key, envelope, ttl=self.ttl)
        return key

    def poll(self, user_id: str) -> List[dict]:
        if not user_id:
            raise ValidationError("userId is required")
        delivered = []
        for key, envelope in self.store.scan_prefix(self.prefix_template.format(user_id=key_part(user_id))):
            if self.store.delete(key):
                delivered.append(envelope)
        if delivered:
            logger.debug(f"Delivered {len(delivered)} envelope(s) from {self.prefix_template} to {user_id}")
        return delivered


class SignalRelay(EnvelopeRelay):
    prefix_template = SIGNAL_PREFIX
    ttl = SIGNAL_TTL_SECONDS

    def send(self, envelope: dict) -> str:
        sender, recipient, kind = envelope.get("from"), envelope.get("to"), envelope.get("type")
        if not sender or not recipient or not kind:
            raise InvalidEnvelope("Invalid signal data: from, to and type are required")
        if kind not in SIGNAL_TYPES:
            raise InvalidEnvelope(f"Invalid signal type {kind!r}")
        key = self._store_for(recipient, {
            "from": sender,
            "to": recipient,
            "type": kind,
            "data": envelope.get("data"),
        })
        logger.debug(f"Stored {kind} signal from {sender} to {recipient} as {key}")
        return key


class TextRelay(EnvelopeRelay):
    prefix_template = MESSAGE_PREFIX
    ttl = MESSAGE_TTL_SECONDS

    def __init__(self, store: KVStore, connections: Optional[ConnectionManager] = None, ttl: Optional[int] = None):
        super().__init__(store, ttl)
        self.connections = connections or ConnectionManager(store)

    def send(self, user_id: str, body: str) -> str:
        if not user_id or not body:
            raise ValidationError("userId and message are required")
        pointer = self.connections.partner_of(user_id)
        if not pointer:
            raise NotConnected("Not connected to anyone")
        key = self._store_for(pointer["partnerId"], {
            "from": user_id,
            "body": body,
            "sentAt": datetime.now().isoformat(),
        })
        logger.debug(f"Stored message from {user_id} to {pointer['partnerId']}")
        return key
