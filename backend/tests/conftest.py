import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence, Union

import pytest

from docchat.core.storage.storage_factory import LocalFilesystemBackend
from docchat.database import create_session_factory, init_db
from docchat.db_models_chat import (
    ChatMessage,
    ChatSession,
    ROLE_USER,
    STATUS_PENDING,
)
from docchat.db_models_documents import Document, DocumentChunk
from docchat.repositories.chat_repository import ChatRepository
from docchat.repositories.document_repository import DocumentRepository

BUCKET = "documents"


class Seeder:
    """Writes rows the way ingestion and the chat client would."""

    def __init__(self, session_factory, storage_root: Path):
        self.session_factory = session_factory
        self.storage_root = storage_root
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _next_time(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def document(
        self,
        text: Optional[Union[str, bytes]] = None,
        chunks: Sequence[Union[str, dict]] = (),
        mime_type: str = "text/plain",
    ) -> Document:
        """Insert a document, its chunks and (when text is given) its blob."""
        db = self.session_factory()
        try:
            document = Document(
                user_id="user-1",
                title="Cell Biology Notes",
                original_filename="notes.txt",
                mime_type=mime_type,
                storage_bucket=BUCKET,
                storage_path=f"{uuid.uuid4()}/notes.txt",
            )
            db.add(document)
            db.flush()
            for index, chunk in enumerate(chunks):
                fields = {"text": chunk} if isinstance(chunk, str) else dict(chunk)
                fields.setdefault("chunk_index", index)
                db.add(DocumentChunk(document_id=document.id, **fields))
            db.commit()
            db.refresh(document)
        finally:
            db.close()

        if text is not None:
            blob = text.encode("utf-8") if isinstance(text, str) else text
            path = self.storage_root / BUCKET / document.storage_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(blob)
        return document

    def session(self, document_id: Optional[str] = None, user_id: str = "user-1") -> ChatSession:
        db = self.session_factory()
        try:
            session = ChatSession(user_id=user_id, document_id=document_id, title="Chat")
            db.add(session)
            db.commit()
            db.refresh(session)
            return session
        finally:
            db.close()

    def message(
        self,
        session_id: str,
        content: str,
        role: str = ROLE_USER,
        status: str = STATUS_PENDING,
        processed: bool = False,
        reply_to_id: Optional[str] = None,
        attempts: int = 0,
        error_type: Optional[str] = None,
    ) -> ChatMessage:
        db = self.session_factory()
        try:
            message = ChatMessage(
                session_id=session_id,
                user_id="user-1",
                role=role,
                content=content,
                tokens_in=len(content.split()),
                processed=processed,
                status=status,
                reply_to_id=reply_to_id,
                attempts=attempts,
                error_type=error_type,
                created_at=self._next_time(),
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            return message
        finally:
            db.close()

    def update_message(self, message_id: str, **fields) -> None:
        db = self.session_factory()
        try:
            db.query(ChatMessage).filter(ChatMessage.id == message_id).update(fields, synchronize_session=False)
            db.commit()
        finally:
            db.close()


@pytest.fixture
def session_factory(tmp_path: Path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'chat.db'}")
    init_db(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def storage(storage_root: Path) -> LocalFilesystemBackend:
    return LocalFilesystemBackend(str(storage_root))


@pytest.fixture
def chat_repo(session_factory) -> ChatRepository:
    return ChatRepository(session_factory)


@pytest.fixture
def document_repo(session_factory) -> DocumentRepository:
    return DocumentRepository(session_factory)


@pytest.fixture
def seed(session_factory, storage_root: Path) -> Seeder:
    return Seeder(session_factory, storage_root)
