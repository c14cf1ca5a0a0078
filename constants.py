import json
import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# "redis" or "memory" (single process only)
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")

# Shared anonymous bearer token. Empty disables the check.
ANON_KEY = os.getenv("ANON_KEY", "")

SIGNAL_TTL_SECONDS = int(os.getenv("SIGNAL_TTL_SECONDS", 60))
MESSAGE_TTL_SECONDS = int(os.getenv("MESSAGE_TTL_SECONDS", 300))
IDENTITY_TTL_SECONDS = int(os.getenv("IDENTITY_TTL_SECONDS", 3600))

MAX_INTERESTS = int(os.getenv("MAX_INTERESTS", 5))
MATCH_ATTEMPTS = int(os.getenv("MATCH_ATTEMPTS", 3))

# Client polling cadence in seconds
MATCH_POLL_INTERVAL = float(os.getenv("MATCH_POLL_INTERVAL", 2.0))
SIGNAL_POLL_INTERVAL = float(os.getenv("SIGNAL_POLL_INTERVAL", 1.0))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", 10.0))

SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000")

ICE_SERVERS = json.loads(os.getenv("ICE_SERVERS", "null")) or [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]
