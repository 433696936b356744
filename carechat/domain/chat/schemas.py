"""Chat domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class MessageCreate(BaseModel):
    """Schema for posting a message.

    Payload fields are left loose on purpose; per-type rules (required text,
    coordinate ranges, thread-scoped media path) are enforced by the service.
    """

    type: str
    text: Optional[str] = None
    lat: Any = None
    lng: Any = None
    mediaPath: Optional[str] = None


class UploadUrlRequest(BaseModel):
    filename: Optional[str] = None
    contentType: str


class ChannelAuthorizeRequest(BaseModel):
    channel: str


class OpenThreadResponse(BaseModel):
    threadId: int


class ThreadResponse(BaseModel):
    threadId: int
    requestId: int
    status: str
    adminId: Optional[int] = None
    clientId: int
    openedAt: Optional[datetime] = None
    closedAt: Optional[datetime] = None

    @classmethod
    def from_thread(cls, thread) -> "ThreadResponse":
        return cls(
            threadId=thread.id,
            requestId=thread.request_id,
            status=thread.status,
            adminId=thread.admin_id,
            clientId=thread.client_id,
            openedAt=thread.opened_at,
            closedAt=thread.closed_at,
        )


class ChatMessageResponse(BaseModel):
    id: int
    type: str
    text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    mediaUrl: Optional[str] = None
    senderId: int
    createdAt: datetime


class MessageListResponse(BaseModel):
    messages: list[ChatMessageResponse]
    nextCursor: Optional[str] = None


class UploadUrlResponse(BaseModel):
    url: str
    mediaPath: str
    headers: dict[str, str]


class PostMessageResponse(BaseModel):
    id: int


class CloseThreadResponse(BaseModel):
    status: str
    closedAt: Optional[datetime] = None


class ChannelAuthorizeResponse(BaseModel):
    authorized: bool
    channel: str
