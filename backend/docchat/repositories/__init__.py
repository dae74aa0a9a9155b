"""Repository layer for data access.

Repositories encapsulate all database operations, providing a clean
interface between pipeline stages and data storage.

Available repositories:
- ChatRepository: sessions, messages, claims, citations
- DocumentRepository: documents and precomputed chunks
"""
from docchat.repositories.chat_repository import ChatRepository
from docchat.repositories.document_repository import DocumentRepository

__all__ = ["ChatRepository", "DocumentRepository"]
