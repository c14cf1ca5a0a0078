from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional


class SignalEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    type: Optional[str] = None
    data: Any = None

class SignalsResponse(BaseModel):
    signals: list[SignalEnvelope]

class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    message: Optional[str] = None

class TextEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    body: str
    sent_at: str = Field(alias="sentAt")

class MessagesResponse(BaseModel):
    messages: list[TextEnvelope]
