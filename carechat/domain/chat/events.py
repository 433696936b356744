"""Chat domain events - plain records published on a thread's topic"""

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import BaseModel

from ...models_chat import ChatMessage, ChatThread


class ChatEvent(BaseModel):
    event_name: ClassVar[str] = "chat.event"

    def payload(self) -> dict:
        return self.model_dump(mode="json")


class MessageCreated(ChatEvent):
    """mediaUrl is the just-in-time signed URL, resolved at publish time and never stored"""

    event_name: ClassVar[str] = "message.created"

    id: int
    type: str
    text: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    mediaUrl: Optional[str] = None
    senderId: int
    createdAt: datetime

    @classmethod
    def from_message(cls, message: ChatMessage, media_url: Optional[str] = None) -> "MessageCreated":
        return cls(
            id=message.id,
            type=message.type,
            text=message.text,
            lat=message.latitude,
            lng=message.longitude,
            mediaUrl=media_url,
            senderId=message.sender_id,
            createdAt=message.created_at,
        )


class ThreadClosed(ChatEvent):
    event_name: ClassVar[str] = "thread.closed"

    threadId: int
    closedAt: datetime

    @classmethod
    def from_thread(cls, thread: ChatThread) -> "ThreadClosed":
        return cls(threadId=thread.id, closedAt=thread.closed_at)
