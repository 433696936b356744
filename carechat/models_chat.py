"""
Chat Models for Request-Scoped Conversations
"""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

THREAD_STATUS_OPEN = "open"
THREAD_STATUS_CLOSED = "closed"

MESSAGE_TYPE_TEXT = "text"
MESSAGE_TYPE_IMAGE = "image"
MESSAGE_TYPE_LOCATION = "location"
MESSAGE_TYPES = (MESSAGE_TYPE_TEXT, MESSAGE_TYPE_IMAGE, MESSAGE_TYPE_LOCATION)


class ChatThread(Base):
    """Two-party conversation scoped to exactly one service request"""

    __tablename__ = "chat_threads"
    __table_args__ = (UniqueConstraint("request_id", name="uq_chat_threads_request_id"),)

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id", ondelete="CASCADE"), nullable=False)
    admin_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    client_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Status workflow: open → closed (terminal, no reopening)
    status = Column(String(20), default=THREAD_STATUS_OPEN, nullable=False, index=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)  # Set once, on close

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    service_request = relationship("ServiceRequest", back_populates="chat_thread")
    messages = relationship(
        "ChatMessage",
        back_populates="thread",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatMessage.id",
    )

    @property
    def is_open(self) -> bool:
        return self.status == THREAD_STATUS_OPEN

    @property
    def storage_prefix(self) -> str:
        return f"chats/{self.id}/"


class ChatMessage(Base):
    """Immutable chat message; exactly one payload group is populated per type"""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_thread_created", "thread_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(
        Integer, ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(20), nullable=False)  # text, image, location

    text = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    media_path = Column(String(2048), nullable=True)  # Raw object key, never a signed URL

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    thread = relationship("ChatThread", back_populates="messages")
