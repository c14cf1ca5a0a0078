from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class UserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")

class JoinQueueRequest(UserRequest):
    interests: Optional[list[str]] = None

class PartnerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    username: str

class JoinQueueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    matched: bool
    partner: Optional[PartnerInfo] = None
    your_username: str = Field(alias="yourUsername")
    waiting: Optional[bool] = None

class CheckMatchResponse(BaseModel):
    matched: bool
    partner: Optional[PartnerInfo] = None
    waiting: Optional[bool] = None

class WaitingUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    username: str
    interests: list[str] = []
    enqueued_at: str = Field(alias="enqueuedAt")

class WaitingUsersResponse(BaseModel):
    count: int
    users: list[WaitingUser]

class SuccessResponse(BaseModel):
    success: bool = True
