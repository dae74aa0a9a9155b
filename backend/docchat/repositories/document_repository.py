"""Repository for document and chunk lookups.

Documents and chunks are written by ingestion; this layer is read-only.
"""
from typing import Optional, List, Dict, Iterable
from contextlib import contextmanager
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from docchat.database import get_session_factory
from docchat.db_models_documents import Document, DocumentChunk
from docchat.errors import TransientIOError
from docchat.utils.logging import logger


class DocumentRepository:
    """Read access to documents and their precomputed chunks.

    Usage:
        doc_repo = DocumentRepository(session_factory)
        doc = doc_repo.get_document(document_id)
        chunks = doc_repo.list_chunks(document_id)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    @contextmanager
    def _get_session(self) -> Session:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def get_document(self, document_id: str) -> Optional[Document]:
        """Get document by ID, None if it does not exist."""
        with self._get_session() as db:
            try:
                return db.query(Document).filter(Document.id == document_id).first()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to get document: {e}",
                    extra={"document_id": document_id, "error": str(e)}
                )
                raise TransientIOError(f"Document lookup failed: {e}", stage="context") from e

    def list_chunks(self, document_id: str) -> List[DocumentChunk]:
        """All chunks of a document ordered by chunk_index."""
        with self._get_session() as db:
            try:
                return db.query(DocumentChunk).filter(
                    DocumentChunk.document_id == document_id
                ).order_by(DocumentChunk.chunk_index).all()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to list chunks: {e}",
                    extra={"document_id": document_id, "error": str(e)}
                )
                raise TransientIOError(f"Chunk lookup failed: {e}", stage="citations") from e

    def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, DocumentChunk]:
        """Batch load chunks by id (prevents N+1 queries). Missing ids are absent from the map."""
        chunk_ids = list(set(chunk_ids))
        if not chunk_ids:
            return {}

        with self._get_session() as db:
            try:
                rows = db.query(DocumentChunk).filter(DocumentChunk.id.in_(chunk_ids)).all()
                return {row.id: row for row in rows}
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to load chunks: {e}",
                    extra={"chunk_count": len(chunk_ids), "error": str(e)}
                )
                raise TransientIOError(f"Chunk lookup failed: {e}") from e
