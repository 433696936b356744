"""
Identity and service-request tables.

Both are owned by other parts of the booking platform; only the columns the
chat subsystem reads are mapped here.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

ROLE_ADMIN = "admin"
ROLE_CLIENT = "client"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default=ROLE_CLIENT, nullable=False)  # client, admin
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    service_requests = relationship("ServiceRequest", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class ServiceRequest(Base):
    """A booked healthcare service; the chat thread lives and dies with it"""

    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(50), default="submitted", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="service_requests")
    chat_thread = relationship(
        "ChatThread", back_populates="service_request", uselist=False, cascade="all, delete-orphan"
    )
