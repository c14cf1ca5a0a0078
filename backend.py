import json
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import redis

from constants import REDIS_DB, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, STORE_BACKEND
from errors import TransientIOError
from logging_config import get_logger

logger = get_logger(__name__)

Record = Dict
ScanResult = List[Tuple[str, Record]]


class KVStore:
    """Prefix-scannable store of JSON records with optional per-key TTL.

    Every piece of matchmaking state lives behind this interface so the
    services can be handed a Redis connection in production and an
    in-memory instance in tests.
    """

    def set(self, key: str, value: Record, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[Record]:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True only if this call removed a live record."""
        raise NotImplementedError

    def scan_prefix(self, prefix: str) -> ScanResult:
        """Return ``(key, value)`` pairs whose key starts with ``prefix``, sorted by key."""
        raise NotImplementedError

    def replace_if_present(self, remove_keys: Iterable[str], records: Dict[str, Record], ttl: Optional[int] = None) -> bool:
        """Atomically delete ``remove_keys`` and write ``records``.

        Nothing is changed and False is returned if any of ``remove_keys``
        is already gone.
        """
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


def _escape_glob(prefix: str) -> str:
    return "".join("\\" + ch if ch in "\\*?[]" else ch for ch in prefix)


@contextmanager
def _redis_errors(action: str):
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis error while trying to {action}: {e}", exc_info=True)
        raise TransientIOError(f"Store unavailable while trying to {action}") from e


class RedisBackend(KVStore):
    def __init__(self, client: Optional[redis.Redis] = None):
        if client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                db=REDIS_DB,
                decode_responses=True,
            )
        self.redis_client = client

    def set(self, key, value, ttl=None):
        with _redis_errors(f"set {key}"):
            self.redis_client.set(key, json.dumps(value), ex=ttl or None)
        logger.debug(f"Stored {key} (ttl={ttl})")

    def get(self, key):
        with _redis_errors(f"get {key}"):
            raw = self.redis_client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def delete(self, key):
        with _redis_errors(f"delete {key}"):
            deleted = self.redis_client.delete(key)
        return deleted > 0

    def scan_prefix(self, prefix):
        pattern = _escape_glob(prefix) + "*"
        with _redis_errors(f"scan {prefix}"):
            keys = sorted(self.redis_client.scan_iter(match=pattern, count=200))
            if not keys:
                return []
            values = self.redis_client.mget(keys)
        # a key can expire between SCAN and MGET
        return [(k, json.loads(v)) for k, v in zip(keys, values) if v is not None]

    def replace_if_present(self, remove_keys, records, ttl=None):
        remove_keys = list(remove_keys)
        with _redis_errors("commit pairing"):
            with self.redis_client.pipeline() as pipe:
                try:
                    pipe.watch(*remove_keys)
                    if pipe.exists(*remove_keys) != len(remove_keys):
                        pipe.unwatch()
                        logger.debug(f"replace_if_present aborted, missing one of {remove_keys}")
                        return False
                    pipe.multi()
                    pipe.delete(*remove_keys)
                    for key, value in records.items():
                        pipe.set(key, json.dumps(value), ex=ttl or None)
                    pipe.execute()
                except redis.WatchError:
                    logger.debug(f"replace_if_present lost a race on {remove_keys}")
                    return False
        return True

    def ping(self):
        with _redis_errors("ping"):
            return bool(self.redis_client.ping())

    def close(self):
        self.redis_client.close()


class InMemoryBackend(KVStore):
    """Thread-safe dict store with lazy TTL expiry. Single process only."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    def _write(self, key, value, ttl):
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (json.dumps(value), expires_at)

    def set(self, key, value, ttl=None):
        with self._lock:
            self._write(key, value, ttl)

    def get(self, key):
        with self._lock:
            raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    def delete(self, key):
        with self._lock:
            live = self._live(key) is not None
            self._data.pop(key, None)
        return live

    def scan_prefix(self, prefix):
        with self._lock:
            found = []
            for key in sorted(k for k in self._data if k.startswith(prefix)):
                raw = self._live(key)
                if raw is not None:
                    found.append((key, json.loads(raw)))
        return found

    def replace_if_present(self, remove_keys, records, ttl=None):
        remove_keys = list(remove_keys)
        with self._lock:
            if any(self._live(key) is None for key in remove_keys):
                return False
            for key in remove_keys:
                del self._data[key]
            for key, value in records.items():
                self._write(key, value, ttl)
        return True

    def ping(self):
        return True


def create_store(kind: str = STORE_BACKEND) -> KVStore:
    if kind == "memory":
        logger.info("Using in-memory store")
        return InMemoryBackend()
    if kind == "redis":
        return RedisBackend()
    raise ValueError(f"Unknown STORE_BACKEND {kind!r}")
