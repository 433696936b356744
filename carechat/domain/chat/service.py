"""Chat service - Thread lifecycle and message business logic"""

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import ChatSettings
from ...models import User
from ...models_chat import (
    MESSAGE_TYPE_IMAGE,
    MESSAGE_TYPE_LOCATION,
    MESSAGE_TYPE_TEXT,
    MESSAGE_TYPES,
    THREAD_STATUS_OPEN,
    ChatMessage,
    ChatThread,
)
from .broadcaster import RealtimeBroadcaster, thread_id_from_topic
from .cleanup import CleanupQueue
from .events import ChatEvent, MessageCreated, ThreadClosed
from .exceptions import (
    ChatFeatureDisabled,
    ChatForbidden,
    ChatNotFound,
    ChatStorageFailure,
    ChatValidationError,
)
from .media import MediaAccessBroker
from .policy import AuthorizationPolicy, policy as default_policy
from .repository import MessageStore, ServiceRequestStore, ThreadStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResolvedMessage:
    """A stored message plus its just-in-time media URL (never persisted)"""

    message: ChatMessage
    media_url: Optional[str] = None


@dataclass
class MessageListing:
    messages: list[ResolvedMessage] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class UploadTicket:
    url: str
    media_path: str
    headers: dict


def _coordinate(value: Any, name: str, bound: float) -> float:
    """Accept ints, floats and numeric strings within ±bound"""
    if value is None or isinstance(value, bool):
        raise ChatValidationError("Invalid coordinates", field=name)
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise ChatValidationError("Invalid coordinates", field=name) from None
    else:
        raise ChatValidationError("Invalid coordinates", field=name)

    if not math.isfinite(number) or abs(number) > bound:
        raise ChatValidationError("Invalid coordinates", field=name)
    return number


class ChatService:
    """Service layer for the request-scoped chat state machine.

    The whole transition table is: open_thread (entry, idempotent) and
    close_thread (exit, idempotent). Messages may only be added in between.
    """

    def __init__(
        self,
        db: Session,
        settings: ChatSettings,
        media: MediaAccessBroker,
        broadcaster: RealtimeBroadcaster,
        cleanup_queue: CleanupQueue,
        policy: Optional[AuthorizationPolicy] = None,
    ):
        self.db = db
        self.settings = settings
        self.media = media
        self.broadcaster = broadcaster
        self.cleanup_queue = cleanup_queue
        self.policy = policy or default_policy

    def ensure_enabled(self) -> None:
        if not self.settings.enabled:
            raise ChatFeatureDisabled()

    def get_thread(self, thread_id: int) -> ChatThread:
        thread = ThreadStore.find_by_id(self.db, thread_id)
        if thread is None:
            raise ChatNotFound("Chat thread not found")
        return thread

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def open_thread(self, request_id: int, actor: User) -> ChatThread:
        """Return the request's thread, creating it on first call"""
        self.ensure_enabled()

        request = ServiceRequestStore.find_by_id(self.db, request_id)
        if request is None:
            raise ChatNotFound("Service request not found")
        if not self.policy.can_open(actor, request):
            raise ChatForbidden("Only the request owner or an admin can open this chat")

        existing = ThreadStore.find_by_request(self.db, request.id)
        if existing is not None:
            return existing

        try:
            thread = ThreadStore.create(
                self.db,
                request_id=request.id,
                admin_id=actor.id if actor.is_admin else None,
                client_id=request.user_id,
                status=THREAD_STATUS_OPEN,
                opened_at=utcnow(),
            )
        except IntegrityError:
            # Lost a concurrent open: the unique constraint picked the winner, use its row
            self.db.rollback()
            thread = ThreadStore.find_by_request(self.db, request.id)
            if thread is None:
                raise
            logger.info(f"🔁 Concurrent open for request {request.id} resolved to thread {thread.id}")
            return thread

        logger.info(
            f"💬 Chat thread opened: thread={thread.id} request={request.id} "
            f"admin={thread.admin_id} client={thread.client_id}"
        )
        return thread

    def get_thread_for_request(self, request_id: int, actor: User) -> ChatThread:
        self.ensure_enabled()

        thread = ThreadStore.find_by_request(self.db, request_id)
        if thread is None:
            raise ChatNotFound("No chat thread for this request")
        if not self.policy.can_view(actor, thread):
            raise ChatForbidden("Not authorized to view this thread")
        return thread

    async def close_thread(self, thread_id: int, actor: User) -> ChatThread:
        """Close the thread once; repeated calls return it unchanged and emit nothing"""
        self.ensure_enabled()

        thread = self.get_thread(thread_id)
        if not self.policy.can_close(actor, thread):
            raise ChatForbidden("Not authorized to close this thread")

        if not thread.is_open:
            return thread

        transitioned = ThreadStore.close_if_open(self.db, thread.id, utcnow())
        self.db.refresh(thread)
        if not transitioned:
            # A concurrent close won; it owns the cleanup and the event
            return thread

        logger.info(f"🔒 Chat thread closed: thread={thread.id} request={thread.request_id} by={actor.id}")

        await self._dispatch_cleanup(thread.id)
        await self._publish(thread.id, ThreadClosed.from_thread(thread))
        return thread

    async def _dispatch_cleanup(self, thread_id: int) -> None:
        try:
            await self.cleanup_queue.enqueue(thread_id)
        except Exception as e:
            # The close has already committed
            logger.error(f"❌ Failed to queue chat cleanup for thread {thread_id}: {e}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _validated_fields(self, thread: ChatThread, payload: Mapping) -> dict:
        message_type = payload.get("type")
        if message_type not in MESSAGE_TYPES:
            raise ChatValidationError("Invalid message type", field="type")

        if message_type == MESSAGE_TYPE_TEXT:
            text = str(payload.get("text") or "").strip()
            if not text:
                raise ChatValidationError("Text is required", field="text")
            return {"type": message_type, "text": text}

        if message_type == MESSAGE_TYPE_LOCATION:
            return {
                "type": message_type,
                "latitude": _coordinate(payload.get("lat"), "lat", 90.0),
                "longitude": _coordinate(payload.get("lng"), "lng", 180.0),
            }

        media_path = str(payload.get("mediaPath") or "")
        if not media_path or not self.media.validate_thread_path(thread.id, media_path):
            raise ChatValidationError("Invalid media path for this thread", field="mediaPath")
        return {"type": message_type, "media_path": media_path}

    async def post_message(self, thread_id: int, sender: User, payload: Mapping) -> ChatMessage:
        self.ensure_enabled()

        thread = self.get_thread(thread_id)
        if not self.policy.can_post(sender, thread):
            if not thread.is_open:
                raise ChatForbidden("Thread is closed")
            raise ChatForbidden("Not authorized to post to this thread")

        # Validate first, then persist: an unvalidated media reference is never stored
        fields = self._validated_fields(thread, payload)
        message = MessageStore.insert(self.db, thread_id=thread.id, sender_id=sender.id, **fields)

        media_url = self.resolve_media_url(message)
        await self._publish(thread.id, MessageCreated.from_message(message, media_url))

        logger.info(
            f"✉️ Chat message created: thread={thread.id} request={thread.request_id} "
            f"message={message.id} sender={sender.id} type={message.type}"
        )
        return message

    def list_messages(
        self,
        thread_id: int,
        actor: User,
        cursor: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> MessageListing:
        self.ensure_enabled()

        thread = self.get_thread(thread_id)
        if not self.policy.can_view(actor, thread):
            raise ChatForbidden("Not authorized to view this thread")

        page = MessageStore.list_by_thread(self.db, thread.id, cursor=cursor, limit=limit)
        return MessageListing(
            messages=[ResolvedMessage(m, self.resolve_media_url(m)) for m in page.messages],
            next_cursor=page.next_cursor,
        )

    def resolve_media_url(self, message: ChatMessage) -> Optional[str]:
        """Signed GET URL for image messages; signing failures degrade to None"""
        if message.type != MESSAGE_TYPE_IMAGE or not message.media_path:
            return None
        try:
            return self.media.sign_get_url(message.media_path, self.settings.signed_url_ttl)
        except ChatStorageFailure as e:
            logger.warning(f"⚠️ Could not sign media for message {message.id}: {e.detail}")
            return None

    # ------------------------------------------------------------------
    # Media uploads
    # ------------------------------------------------------------------

    def create_upload_url(
        self, thread_id: int, actor: User, filename: Optional[str], content_type: str
    ) -> UploadTicket:
        self.ensure_enabled()

        thread = self.get_thread(thread_id)
        if not self.policy.can_post(actor, thread):
            raise ChatForbidden("Not authorized to upload to this thread")

        if not self.media.is_allowed_mime(content_type):
            allowed = ", ".join(self.media.allowed_mime_types)
            raise ChatValidationError(
                f"Content type not allowed. Allowed types: {allowed}", field="contentType"
            )

        media_path = self.media.build_object_path(thread.id, filename, content_type)
        signed = self.media.sign_put_url(media_path, content_type, self.settings.signed_url_ttl)
        if not signed.ok:
            raise ChatValidationError("Failed to generate upload URL", field="contentType")

        logger.info(f"📤 Upload URL issued: thread={thread.id} path={media_path}")
        return UploadTicket(url=signed.url, media_path=media_path, headers=signed.headers)

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    def authorize_subscription(self, thread_id: int, actor: User) -> ChatThread:
        """Same view check as the REST read path"""
        self.ensure_enabled()

        thread = self.get_thread(thread_id)
        if not self.policy.can_view(actor, thread):
            raise ChatForbidden("Not authorized to subscribe to this thread")
        return thread

    def authorize_channel(self, channel: str, actor: User) -> ChatThread:
        self.ensure_enabled()

        thread_id = thread_id_from_topic(channel)
        if thread_id is None:
            raise ChatValidationError("Unknown channel", field="channel")
        return self.authorize_subscription(thread_id, actor)

    async def _publish(self, thread_id: int, event: ChatEvent) -> None:
        try:
            await self.broadcaster.publish(thread_id, event)
        except Exception as e:
            logger.error(f"❌ Failed to broadcast {event.event_name} on thread {thread_id}: {e}")
