"""Chat router - FastAPI endpoints for request-scoped chat"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ...auth import get_current_user
from ...config import ChatSettings, get_chat_settings
from ...database import get_db
from ...models import User
from ...utils.object_storage import R2ObjectStorage
from .broadcaster import BroadcastMessage, RealtimeBroadcaster, topic_for
from .cleanup import CleanupQueue
from .events import ThreadClosed
from .exceptions import ChatFeatureDisabled
from .media import MediaAccessBroker
from .schemas import (
    ChannelAuthorizeRequest,
    ChannelAuthorizeResponse,
    ChatMessageResponse,
    CloseThreadResponse,
    MessageCreate,
    MessageListResponse,
    OpenThreadResponse,
    PostMessageResponse,
    ThreadResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from .service import ChatService, ResolvedMessage

logger = logging.getLogger(__name__)

SSE_HEARTBEAT_INTERVAL = 15


def require_chat_enabled(settings: ChatSettings = Depends(get_chat_settings)) -> None:
    """Refuse every chat endpoint before auth or database work when the feature is off"""
    if not settings.enabled:
        raise ChatFeatureDisabled()


router = APIRouter(tags=["Chat"], dependencies=[Depends(require_chat_enabled)])


def get_media_broker(
    request: Request, settings: ChatSettings = Depends(get_chat_settings)
) -> MediaAccessBroker:
    """Dependency injection for MediaAccessBroker"""
    storage = getattr(request.app.state, "object_storage", None) or R2ObjectStorage()
    return MediaAccessBroker(storage, settings)


def get_broadcaster(request: Request) -> RealtimeBroadcaster:
    return request.app.state.chat_broadcaster


def get_cleanup_queue(request: Request) -> CleanupQueue:
    return request.app.state.chat_cleanup_queue


def get_chat_service(
    db: Session = Depends(get_db),
    settings: ChatSettings = Depends(get_chat_settings),
    media: MediaAccessBroker = Depends(get_media_broker),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
    cleanup_queue: CleanupQueue = Depends(get_cleanup_queue),
) -> ChatService:
    """Dependency injection for ChatService"""
    return ChatService(db, settings, media, broadcaster, cleanup_queue)


def _message_response(resolved: ResolvedMessage) -> ChatMessageResponse:
    m = resolved.message
    return ChatMessageResponse(
        id=m.id,
        type=m.type,
        text=m.text,
        lat=m.latitude,
        lng=m.longitude,
        mediaUrl=resolved.media_url,
        senderId=m.sender_id,
        createdAt=m.created_at,
    )


# ============================================================================
# THREAD LIFECYCLE
# ============================================================================


@router.post("/requests/{request_id}/chat/open", response_model=OpenThreadResponse)
async def open_chat_thread(
    request_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Open (or return) the chat thread for a service request"""
    thread = service.open_thread(request_id, current_user)
    return OpenThreadResponse(threadId=thread.id)


@router.get("/requests/{request_id}/chat", response_model=ThreadResponse)
async def get_request_chat_thread(
    request_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Thread attached to a service request, if one has been opened"""
    thread = service.get_thread_for_request(request_id, current_user)
    return ThreadResponse.from_thread(thread)


@router.patch("/chat/threads/{thread_id}/close", response_model=CloseThreadResponse)
async def close_chat_thread(
    thread_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    thread = await service.close_thread(thread_id, current_user)
    return CloseThreadResponse(status=thread.status, closedAt=thread.closed_at)


# ============================================================================
# MESSAGES
# ============================================================================


@router.get("/chat/threads/{thread_id}/messages", response_model=MessageListResponse)
async def list_chat_messages(
    thread_id: int,
    cursor: Optional[int] = Query(None, description="Return messages older than this id"),
    limit: Optional[int] = Query(None, description="Page size, clamped to 1..50"),
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Newest-first page of messages with just-in-time media URLs"""
    listing = service.list_messages(thread_id, current_user, cursor=cursor, limit=limit)
    return MessageListResponse(
        messages=[_message_response(m) for m in listing.messages],
        nextCursor=listing.next_cursor,
    )


@router.post("/chat/threads/{thread_id}/messages", response_model=PostMessageResponse)
async def post_chat_message(
    thread_id: int,
    payload: MessageCreate,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    message = await service.post_message(thread_id, current_user, payload.model_dump())
    return PostMessageResponse(id=message.id)


@router.post("/chat/threads/{thread_id}/upload-url", response_model=UploadUrlResponse)
async def create_chat_upload_url(
    thread_id: int,
    data: UploadUrlRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Signed PUT URL for an image the client uploads directly to storage"""
    ticket = service.create_upload_url(thread_id, current_user, data.filename, data.contentType)
    return UploadUrlResponse(url=ticket.url, mediaPath=ticket.media_path, headers=ticket.headers)


# ============================================================================
# REAL-TIME
# ============================================================================


@router.post("/chat/channels/authorize", response_model=ChannelAuthorizeResponse)
async def authorize_chat_channel(
    data: ChannelAuthorizeRequest,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    """Subscription check for external real-time transports (chat.{threadId})"""
    service.authorize_channel(data.channel, current_user)
    return ChannelAuthorizeResponse(authorized=True, channel=data.channel)


def _sse_frame(message: BroadcastMessage) -> dict:
    return {"event": message.event, "data": json.dumps(message.data)}


@router.get("/chat/threads/{thread_id}/events")
async def stream_chat_events(
    thread_id: int,
    current_user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
):
    """SSE stream of message.created and thread.closed for one thread.

    The stream ends after thread.closed. A thread that is already closed
    yields that single event and ends immediately.
    """
    thread = service.authorize_subscription(thread_id, current_user)

    if not thread.is_open:
        closed = ThreadClosed.from_thread(thread)
        final = BroadcastMessage(topic=topic_for(thread.id), event=closed.event_name, data=closed.payload())

        async def closed_generator():
            yield _sse_frame(final)

        return EventSourceResponse(closed_generator())

    subscription = broadcaster.subscribe(current_user, thread)

    async def event_generator():
        try:
            while True:
                try:
                    message = await subscription.get(timeout=SSE_HEARTBEAT_INTERVAL)
                except asyncio.TimeoutError:
                    if not broadcaster.is_subscribed(subscription):
                        # Dropped as a slow consumer; the client reconnects
                        return
                    yield {"comment": "heartbeat"}
                    continue

                yield _sse_frame(message)
                if message.event == ThreadClosed.event_name:
                    return
        finally:
            broadcaster.unsubscribe(subscription)

    return EventSourceResponse(event_generator())
