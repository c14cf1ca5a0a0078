from typing import Optional

from fastapi import Header, HTTPException, Request

from backend import KVStore
from logging_config import get_logger

logger = get_logger(__name__)


def get_store(request: Request) -> KVStore:
    return request.app.state.store


def require_anon_key(request: Request, authorization: Optional[str] = Header(None)):
    """Check the shared anonymous bearer token when one is configured."""
    expected = request.app.state.anon_key
    if not expected:
        return
    if authorization != f"Bearer {expected}":
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected request to {request.url.path} from {client_host}: bad or missing token")
        raise HTTPException(status_code=401, detail="Unauthorized")
