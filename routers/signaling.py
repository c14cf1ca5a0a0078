from fastapi import APIRouter, Depends, HTTPException

from backend import KVStore
from errors import NotConnected, ValidationError
from logging_config import get_logger
from routers.deps import get_store, require_anon_key
from schemas.matchmaking import SuccessResponse, UserRequest
from schemas.signaling import (
    MessagesResponse,
    SendMessageRequest,
    SignalEnvelope,
    SignalsResponse,
    TextEnvelope,
)
from services.relay import SignalRelay, TextRelay

logger = get_logger(__name__)

signaling_router = APIRouter(tags=["signaling"], dependencies=[Depends(require_anon_key)])


@signaling_router.post("/signal", response_model=SuccessResponse)
async def send_signal(signal: SignalEnvelope, store: KVStore = Depends(get_store)):
    # { "from": "...", "to": "...", "type": "offer" | "answer" | "ice-candidate", "data": {...} }
    try:
        SignalRelay(store).send(signal.model_dump(by_alias=True))
    except ValidationError as e:
        logger.warning(f"Signal rejected from {signal.sender} to {signal.to}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error handling signal: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to send signal")
    return SuccessResponse()


@signaling_router.post("/get-signals", response_model=SignalsResponse)
async def get_signals(body: UserRequest, store: KVStore = Depends(get_store)):
    try:
        signals = SignalRelay(store).poll(body.user_id)
    except ValidationError as e:
        logger.warning(f"Get signals rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting signals for {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to get signals")
    return SignalsResponse(signals=[SignalEnvelope.model_validate(s) for s in signals])


@signaling_router.post("/send-message", response_model=SuccessResponse)
async def send_message(body: SendMessageRequest, store: KVStore = Depends(get_store)):
    try:
        TextRelay(store).send(body.user_id, body.message)
    except (ValidationError, NotConnected) as e:
        logger.warning(f"Send message rejected for {body.user_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending message: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to send message")
    return SuccessResponse()


@signaling_router.post("/get-messages", response_model=MessagesResponse)
async def get_messages(body: UserRequest, store: KVStore = Depends(get_store)):
    try:
        messages = TextRelay(store).poll(body.user_id)
    except ValidationError as e:
        logger.warning(f"Get messages rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error getting messages for {body.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to get messages")
    return MessagesResponse(messages=[TextEnvelope.model_validate(m) for m in messages])
