from datetime import datetime
from typing import Dict, Optional

from backend import KVStore
from redis_keys import (
    CONNECTION_KEY,
    IDENTITY_KEY,
    MESSAGE_PREFIX,
    SIGNAL_PREFIX,
    USER_CONNECTION_KEY,
    WAITING_KEY,
    key_part,
)
from logging_config import get_logger

logger = get_logger(__name__)


def connection_id_for(user_a: str, user_b: str) -> str:
    """Same id regardless of which side is passed first."""
    first, second = sorted((user_a, user_b))
    return f"{key_part(first)}_{key_part(second)}"


class ConnectionManager:
    """Tracks which two users are paired and tears pairings down."""

    def __init__(self, store: KVStore):
        self.store = store

    def build_records(self, user_a: str, user_b: str) -> Dict[str, dict]:
        """Records for a new ActiveConnection and both pointers, keyed by store key.

        Callers commit them in one atomic write together with the removal of
        both waiting records.
        """
        connection_id = connection_id_for(user_a, user_b)
        return {
            CONNECTION_KEY.format(connection_id=connection_id): {
                "connectionId": connection_id,
                "userAId": user_a,
                "userBId": user_b,
                "establishedAt": datetime.now().isoformat(),
            },
            USER_CONNECTION_KEY.format(user_id=key_part(user_a)): {
                "ownerId": user_a,
                "partnerId": user_b,
                "connectionId": connection_id,
            },
            USER_CONNECTION_KEY.format(user_id=key_part(user_b)): {
                "ownerId": user_b,
                "partnerId": user_a,
                "connectionId": connection_id,
            },
        }

    def partner_of(self, user_id: str) -> Optional[dict]:
        return self.store.get(USER_CONNECTION_KEY.format(user_id=key_part(user_id)))

    def get_connection(self, connection_id: str) -> Optional[dict]:
        return self.store.get(CONNECTION_KEY.format(connection_id=connection_id))

    def disconnect(self, user_id: str) -> bool:
        """Remove the user's pairing (both pointers and the connection) and any waiting record.

        Undelivered signals and messages of both participants go with it, so
        nothing from this pairing reaches the next one.

        Idempotent. Returns True if a pairing was torn down.
        """
        pointer = self.partner_of(user_id)
        torn_down = False
        if pointer:
            partner_id = pointer.get("partnerId")
            self.store.delete(USER_CONNECTION_KEY.format(user_id=key_part(user_id)))
            # only drop the partner's pointer if it still points back at us
            partner_pointer = self.partner_of(partner_id) if partner_id else None
            if partner_pointer and partner_pointer.get("partnerId") == user_id:
                self.store.delete(USER_CONNECTION_KEY.format(user_id=key_part(partner_id)))
                self.purge_mailboxes(partner_id)
            self.store.delete(CONNECTION_KEY.format(connection_id=pointer.get("connectionId")))
            logger.info(f"Connection {pointer.get('connectionId')} closed by {user_id}")
            torn_down = True

        self.store.delete(WAITING_KEY.format(user_id=key_part(user_id)))
        self.store.delete(IDENTITY_KEY.format(user_id=key_part(user_id)))
        self.purge_mailboxes(user_id)
        logger.debug(f"Disconnect cleanup done for {user_id} (pairing removed: {torn_down})")
        return torn_down

    def purge_mailboxes(self, user_id: str) -> int:
        purged = 0
        for template in (SIGNAL_PREFIX, MESSAGE_PREFIX):
            for key, _ in self.store.scan_prefix(template.format(user_id=key_part(user_id))):
                if self.store.delete(key):
                    purged += 1
        if purged:
            logger.debug(f"Dropped {purged} undelivered envelope(s) for {user_id}")
        return purged
