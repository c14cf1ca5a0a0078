"""aiohttp client for the matchmaking and signaling endpoints."""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from constants import ANON_KEY, HTTP_TIMEOUT_SECONDS, SERVER_URL
from errors import NotConnected, TransientIOError, ValidationError
from logging_config import get_logger

logger = get_logger(__name__)


class MatchApiClient:
    """Thin wrapper over the HTTP API.

    Connection failures, timeouts and 5xx answers raise ``TransientIOError``
    so polling loops can skip a tick. 4xx answers raise ``ValidationError``,
    except a 400 from ``send-message`` which means there is no partner and
    raises ``NotConnected``.
    """

    def __init__(self, base_url: str = SERVER_URL, anon_key: str = ANON_KEY, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if anon_key:
            self.headers["Authorization"] = f"Bearer {anon_key}"
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SECONDS))
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=payload, headers=self.headers) as response:
                if response.status >= 500:
                    error_text = await response.text()
                    logger.error(f"API error {response.status} on {path}: {error_text}")
                    raise TransientIOError(f"{path} failed with {response.status}")
                data = await response.json(content_type=None)
                if response.status >= 400:
                    error = (data or {}).get("error", f"HTTP {response.status}")
                    logger.warning(f"API rejected {path} ({response.status}): {error}")
                    if path == "/send-message" and response.status == 400:
                        raise NotConnected(error)
                    raise ValidationError(error)
                return data or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Network error on {path}: {e}")
            raise TransientIOError(str(e)) from e

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")

    async def join_queue(self, user_id: str, interests: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self._request("POST", "/join-queue", {"userId": user_id, "interests": interests or []})

    async def check_match(self, user_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/check-match", {"userId": user_id})

    async def send_signal(self, sender: str, recipient: str, kind: str, data: Any) -> None:
        await self._request("POST", "/signal", {"from": sender, "to": recipient, "type": kind, "data": data})

    async def get_signals(self, user_id: str) -> List[Dict[str, Any]]:
        data = await self._request("POST", "/get-signals", {"userId": user_id})
        return data.get("signals", [])

    async def disconnect(self, user_id: str) -> None:
        await self._request("POST", "/disconnect", {"userId": user_id})

    async def send_message(self, user_id: str, message: str) -> None:
        await self._request("POST", "/send-message", {"userId": user_id, "message": message})

    async def get_messages(self, user_id: str) -> List[Dict[str, Any]]:
        data = await self._request("POST", "/get-messages", {"userId": user_id})
        return data.get("messages", [])

    async def waiting_users(self) -> Dict[str, Any]:
        return await self._request("GET", "/waiting-users")
