"""Chat repository - Database operations for threads and messages"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...models import ServiceRequest
from ...models_chat import (
    THREAD_STATUS_CLOSED,
    THREAD_STATUS_OPEN,
    ChatMessage,
    ChatThread,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def clamp_page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return min(MAX_PAGE_SIZE, max(1, limit))


@dataclass
class MessagePage:
    messages: list[ChatMessage]
    next_cursor: Optional[str]


class ServiceRequestStore:
    """Read-only lookups against the service request table"""

    @staticmethod
    def find_by_id(db: Session, request_id: int) -> Optional[ServiceRequest]:
        return db.query(ServiceRequest).filter(ServiceRequest.id == request_id).first()


class ThreadStore:
    """Repository for chat thread database operations"""

    @staticmethod
    def find_by_id(db: Session, thread_id: int) -> Optional[ChatThread]:
        return db.query(ChatThread).filter(ChatThread.id == thread_id).first()

    @staticmethod
    def find_by_request(db: Session, request_id: int) -> Optional[ChatThread]:
        return db.query(ChatThread).filter(ChatThread.request_id == request_id).first()

    @staticmethod
    def create(db: Session, **thread_data) -> ChatThread:
        """Insert a thread. A duplicate request_id raises IntegrityError from the unique constraint."""
        thread = ChatThread(**thread_data)
        db.add(thread)
        db.commit()
        db.refresh(thread)
        return thread

    @staticmethod
    def update(db: Session, thread: ChatThread, **updates) -> ChatThread:
        for key, value in updates.items():
            if hasattr(thread, key):
                setattr(thread, key, value)

        db.commit()
        db.refresh(thread)
        return thread

    @staticmethod
    def close_if_open(db: Session, thread_id: int, closed_at: datetime) -> bool:
        """Conditional open → closed transition; False when another writer got there first"""
        result = db.execute(
            update(ChatThread)
            .where(ChatThread.id == thread_id, ChatThread.status == THREAD_STATUS_OPEN)
            .values(status=THREAD_STATUS_CLOSED, closed_at=closed_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1


class MessageStore:
    """Repository for chat message database operations"""

    @staticmethod
    def insert(db: Session, **message_data) -> ChatMessage:
        message = ChatMessage(**message_data)
        db.add(message)
        db.commit()
        db.refresh(message)
        return message

    @staticmethod
    def list_by_thread(
        db: Session, thread_id: int, cursor: Optional[int] = None, limit: Optional[int] = None
    ) -> MessagePage:
        """Newest-first page of messages, keyed by id.

        nextCursor is the last id on a full page, and None once a short page
        shows the start of the history has been reached. A cursor of 0 or
        below is treated as no cursor.
        """
        page_size = clamp_page_size(limit)

        query = db.query(ChatMessage).filter(ChatMessage.thread_id == thread_id)
        if cursor is not None and cursor > 0:
            query = query.filter(ChatMessage.id < cursor)

        messages = query.order_by(ChatMessage.id.desc()).limit(page_size).all()
        next_cursor = str(messages[-1].id) if len(messages) == page_size else None
        return MessagePage(messages=messages, next_cursor=next_cursor)

    @staticmethod
    def count_for_thread(db: Session, thread_id: int) -> int:
        return db.query(ChatMessage).filter(ChatMessage.thread_id == thread_id).count()

    @staticmethod
    def media_paths_for_thread(db: Session, thread_id: int) -> list[str]:
        rows = (
            db.query(ChatMessage.media_path)
            .filter(ChatMessage.thread_id == thread_id, ChatMessage.media_path.isnot(None))
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def redact_thread(db: Session, thread_id: int) -> int:
        """Clear every message body in a thread; returns the number of rows touched"""
        result = db.execute(
            update(ChatMessage)
            .where(ChatMessage.thread_id == thread_id)
            .values(text=None, media_path=None, latitude=None, longitude=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount
