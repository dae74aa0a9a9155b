# backend/docchat/db_models_documents.py
"""SQLAlchemy models for uploaded documents and their precomputed chunks.

Both tables are written by the ingestion pipeline; the chat worker only reads them.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from docchat.database import Base
import uuid


class Document(Base):
    """
    Canonical uploaded document.

    The binary lives in object storage at (storage_bucket, storage_path).
    """
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_user_id", "user_id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(100), nullable=False)

    title = Column(String(255), nullable=False)
    original_filename = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=True)

    # Storage locator
    storage_bucket = Column(String(255), nullable=False)
    storage_path = Column(Text, nullable=False)

    page_count = Column(Integer, nullable=True)
    status = Column(String(30), nullable=False, default="uploaded")  # uploaded, ..., ready, failed

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    chunks = relationship("DocumentChunk", back_populates="document", cascade="all, delete-orphan")


class DocumentChunk(Base):
    """
    Precomputed text chunk of a document.

    char_start/char_end locate the chunk within its page/slide (or section).
    Immutable once written.
    """
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_document_index"),
        CheckConstraint(
            "char_start IS NULL OR char_end IS NULL OR char_end >= char_start",
            name="ck_document_chunks_char_range"
        ),
        Index("idx_document_chunks_document_id", "document_id"),
        Index("idx_document_chunks_page", "page_number"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)

    chunk_index = Column(Integer, nullable=False)  # Order within document (0, 1, 2, ...)
    text = Column(Text, nullable=False)

    page_number = Column(Integer, nullable=True)
    slide_number = Column(Integer, nullable=True)
    char_start = Column(Integer, nullable=True)
    char_end = Column(Integer, nullable=True)
    tokens = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    document = relationship("Document", back_populates="chunks")
