"""Context Assembler for document chat.

Resolves a chat session to its bound document and produces the plain-text
grounding context plus the recent conversation turns.

Failure policy:
    - session missing           -> ConfigurationError (operator must fix)
    - no bound document         -> empty context, not an error
    - document/blob unavailable -> empty context flagged "no grounding"
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from docchat.config import settings
from docchat.core.parsers import decode_document
from docchat.core.storage.storage_factory import StorageBackend
from docchat.db_models_chat import ROLE_ASSISTANT, ROLE_USER
from docchat.errors import ConfigurationError, TransientIOError
from docchat.repositories.chat_repository import ChatRepository
from docchat.repositories.document_repository import DocumentRepository
from docchat.utils.logging import logger

TRUNCATION_MARKER = "\n\n... [TRUNCATED: {removed:,} characters removed from middle section] ...\n\n"


@dataclass
class AssembledContext:
    session_id: str
    document_id: Optional[str]
    text: str
    grounded: bool
    degraded_reason: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)


def truncate_middle(text: str, max_chars: int) -> str:
    """Keep 80% from the beginning and 20% from the end (preserves intro and conclusion)."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text

    keep_start = int(max_chars * 0.8)
    keep_end = max_chars - keep_start
    removed = len(text) - keep_start - keep_end
    tail = text[-keep_end:] if keep_end else ""
    return text[:keep_start] + TRUNCATION_MARKER.format(removed=removed) + tail


class DocumentTextCache:
    """Tiny in-process TTL cache of decoded document text keyed by document id."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}

    def get(self, document_id: str) -> Optional[str]:
        if self.ttl_seconds <= 0:
            return None
        entry = self._entries.get(document_id)
        if entry is None:
            return None
        stored_at, text = entry
        if self._clock() - stored_at > self.ttl_seconds:
            self._entries.pop(document_id, None)
            return None
        return text

    def set(self, document_id: str, text: str) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[document_id] = (self._clock(), text)


class ContextAssembler:
    def __init__(
        self,
        chat_repo: ChatRepository,
        document_repo: DocumentRepository,
        storage: StorageBackend,
        max_context_chars: Optional[int] = None,
        history_message_count: Optional[int] = None,
        cache: Optional[DocumentTextCache] = None,
    ):
        self.chat_repo = chat_repo
        self.document_repo = document_repo
        self.storage = storage
        self.max_context_chars = max_context_chars if max_context_chars is not None else settings.chat_max_context_chars
        self.history_message_count = (
            history_message_count if history_message_count is not None else settings.chat_history_message_count
        )
        self.cache = cache or DocumentTextCache(settings.context_cache_ttl_seconds)

    async def assemble(self, session_id: str, before: Optional[datetime] = None) -> AssembledContext:
        """Build the grounding context for a message of `session_id`.

        Args:
            session_id: Chat session the message belongs to
            before: Only turns created before this instant count as history
        """
        session = await asyncio.to_thread(self.chat_repo.get_session, session_id)
        if session is None:
            raise ConfigurationError(f"Chat session {session_id} not found", stage="context")

        history = await self._load_history(session_id, before)

        if not session.document_id:
            logger.info("Session has no bound document; using empty context", extra={"session_id": session_id})
            return AssembledContext(
                session_id=session_id, document_id=None, text="", grounded=False, history=history
            )

        text, reason = await self._load_document_text(session.document_id, session_id)
        return AssembledContext(
            session_id=session_id,
            document_id=session.document_id,
            text=text,
            grounded=bool(text.strip()),
            degraded_reason=reason,
            history=history,
        )

    async def _load_history(self, session_id: str, before: Optional[datetime]) -> List[Dict[str, str]]:
        messages = await asyncio.to_thread(
            self.chat_repo.get_history, session_id, before, self.history_message_count
        )
        return [
            {"role": m.role, "content": m.content}
            for m in messages
            if m.role in (ROLE_USER, ROLE_ASSISTANT)
        ]

    async def _load_document_text(self, document_id: str, session_id: str) -> Tuple[str, Optional[str]]:
        """Return (text, degraded_reason). Lookup/fetch failures degrade to empty text."""
        cached = self.cache.get(document_id)
        if cached is not None:
            logger.debug("Document text cache hit", extra={"document_id": document_id, "session_id": session_id})
            return cached, None

        try:
            document = await asyncio.to_thread(self.document_repo.get_document, document_id)
        except TransientIOError as e:
            logger.warning(
                "Document lookup failed; answering without grounding",
                extra={"document_id": document_id, "session_id": session_id, "error": str(e)}
            )
            return "", "document_lookup_failed"

        if document is None:
            logger.warning(
                "Bound document not found; answering without grounding",
                extra={"document_id": document_id, "session_id": session_id}
            )
            return "", "document_not_found"

        try:
            raw = await asyncio.to_thread(
                self.storage.get_bytes, document.storage_bucket, document.storage_path
            )
        except (FileNotFoundError, TransientIOError, OSError) as e:
            logger.warning(
                "Document fetch failed; answering without grounding",
                extra={
                    "document_id": document_id,
                    "session_id": session_id,
                    "storage_path": document.storage_path,
                    "error": str(e),
                }
            )
            return "", "document_fetch_failed"

        text = await asyncio.to_thread(decode_document, raw, document.mime_type)
        original_length = len(text)
        text = truncate_middle(text, self.max_context_chars)
        if len(text) < original_length:
            logger.warning(
                f"Document context truncated: {original_length:,} chars",
                extra={"document_id": document_id, "original_length": original_length, "max_chars": self.max_context_chars}
            )

        self.cache.set(document_id, text)
        return text, None
