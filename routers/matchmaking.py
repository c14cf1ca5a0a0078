from fastapi import APIRouter, Depends, HTTPException

from backend import KVStore
from errors import ValidationError
from logging_config import get_logger
from routers.deps import get_store, require_anon_key
from schemas.matchmaking import (
    CheckMatchResponse,
    JoinQueueRequest,
    JoinQueueResponse,
    PartnerInfo,
    SuccessResponse,
    UserRequest,
    WaitingUser,
    WaitingUsersResponse,
)
from services.connections import ConnectionManager
from services.matchmaking import MatchmakingQueue

logger = get_logger(__name__)

matchmaking_router = APIRouter(tags=["matchmaking"], dependencies=[Depends(require_anon_key)])


@matchmaking_router.post("/join-queue", response_model=JoinQueueResponse, response_model_exclude_none=True)
async def join_queue(body: JoinQueueRequest, store: KVStore = Depends(get_store)):
    # { "userId": "...", "interests": ["music", "gaming"] }
    # Response 200: { "matched": true, "partner": {"userId", "username"}, "yourUsername": "Stranger_42" }
    #           or: { "matched": false, "waiting": true, "yourUsername": "Stranger_42" }
    logger.info(f"Join queue request from {body.user_id}, interests: {body.interests}")
    try:
        result = MatchmakingQueue(store).join(body.user_id, body.interests)
    except ValidationError as e:
        logger.warning(f"Join queue rejected for {body.user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error joining queue: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to join queue")

    if result.matched:
        return JoinQueueResponse(
            matched=True,
            partner=PartnerInfo(**result.partner),
            yourUsername=result.username,
        )
    return JoinQueueResponse(matched=False, waiting=True, yourUsername=result.username)


@matchmaking_router.post("/check-match", response_model=CheckMatchResponse, response_model_exclude_none=True)
async def check_match(body: UserRequest, store: KVStore = Depends(get_store)):
    """Polled every couple of seconds by a client that joined without an immediate match."""
    try:
        result = MatchmakingQueue(store).check(body.user_id)
    except ValidationError as e:
        logger.warning(f"Check match rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error checking match for {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to check match")

    if result.matched:
        logger.debug(f"Check match for {body.user_id}: paired with {result.partner_id}")
        return CheckMatchResponse(matched=True, partner=PartnerInfo(**result.partner))
    return CheckMatchResponse(matched=False, waiting=True)


@matchmaking_router.post("/disconnect", response_model=SuccessResponse)
async def disconnect(body: UserRequest, store: KVStore = Depends(get_store)):
    # Called on session end and before "next partner". Safe to repeat.
    if not body.user_id:
        logger.warning("Disconnect rejected: userId missing")
        raise HTTPException(status_code=400, detail="userId is required")
    logger.info(f"Disconnect request from {body.user_id}")
    try:
        ConnectionManager(store).disconnect(body.user_id)
    except Exception as e:
        logger.error(f"Error disconnecting {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to disconnect")
    return SuccessResponse()


@matchmaking_router.get("/waiting-users", response_model=WaitingUsersResponse)
async def waiting_users(store: KVStore = Depends(get_store)):
    """Debug listing of the waiting set."""
    try:
        users = MatchmakingQueue(store).waiting_users()
    except Exception as e:
        logger.error(f"Error getting waiting users: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to get waiting users")
    return WaitingUsersResponse(count=len(users), users=[WaitingUser.model_validate(u) for u in users])
