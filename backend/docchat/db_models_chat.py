# backend/docchat/db_models_chat.py
"""SQLAlchemy database models for document chat (sessions, messages, citations)"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Boolean, Text, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from docchat.database import Base
import uuid

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

# Message pipeline status. `processed` stays the durable completion flag;
# `status` adds claim/failure visibility on top of it.
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession(Base):
    """
    A chat conversation, optionally bound to one document.

    Created on first chat interaction per (user, document) pair.
    The document binding never changes after creation.
    """
    __tablename__ = "chat_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "document_id", name="uq_chat_sessions_user_document"),
        Index("idx_chat_sessions_user_id", "user_id"),
        Index("idx_chat_sessions_document_id", "document_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(100), nullable=False)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="SET NULL"), nullable=True)

    title = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow)

    # Relationships
    messages = relationship("ChatMessage", back_populates="session", cascade="all, delete-orphan")


class ChatMessage(Base):
    """
    Individual message in a chat session.

    User messages are inserted by the client with processed=False and picked up
    by the worker. Assistant messages are inserted by the worker with
    processed=True and reply_to_id pointing at the user message they answer.
    The unique reply_to_id is what makes the reply exactly-once.
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("idx_chat_messages_session_time", "session_id", "created_at"),
        Index("idx_chat_messages_pending", "role", "processed", "status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(100), nullable=True)

    role = Column(String(20), nullable=False)  # "user", "assistant" or "system"
    content = Column(Text, nullable=False)

    tokens_in = Column(Integer, nullable=True)
    tokens_out = Column(Integer, nullable=True)

    # Pipeline state (user messages)
    processed = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    error_type = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    # Reply metadata (assistant messages)
    reply_to_id = Column(
        String(36),
        ForeignKey("chat_messages.id", ondelete="CASCADE"),
        nullable=True,
        unique=True
    )
    grounded = Column(Boolean, nullable=True)  # False when no document text was available
    model_used = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow)

    # Relationships
    session = relationship("ChatSession", back_populates="messages")
    citations = relationship("ChatMessageCitation", back_populates="message", cascade="all, delete-orphan")


class ChatMessageCitation(Base):
    """
    Link from an assistant message to one supporting chunk.

    start_offset/end_offset index into the chunk's text; both null means
    "no highlight" and the chunk is shown as a plain excerpt.
    """
    __tablename__ = "chat_message_citations"
    __table_args__ = (
        UniqueConstraint(
            "message_id", "chunk_id", "start_offset", "end_offset",
            name="uq_chat_message_citations_span"
        ),
        Index("idx_chat_message_citations_message", "message_id"),
        Index("idx_chat_message_citations_chunk", "chunk_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False)
    # RESTRICT: a chunk cannot be deleted while an answer still cites it
    chunk_id = Column(String(36), ForeignKey("document_chunks.id", ondelete="RESTRICT"), nullable=False)

    similarity = Column(Float, nullable=True)
    start_offset = Column(Integer, nullable=True)
    end_offset = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    # Relationships
    message = relationship("ChatMessage", back_populates="citations")
