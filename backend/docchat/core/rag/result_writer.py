"""Result Writer: persist an assistant reply exactly once.

One transaction per attempt:
    1. get-or-create the assistant message keyed by reply_to_id (unique)
    2. insert the citations that are not attached yet
    3. flip the source user message to processed/completed (owner only)

Because the reply is looked up by reply_to_id before insert, retrying after
any partial failure never produces a second assistant message. The reply is
published to subscribers only after the commit, so it is never visible
without its citations.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docchat.core.llm.llm_client import GenerationResult
from docchat.core.rag.citations import ResolvedCitation
from docchat.core.rag.context_assembler import AssembledContext
from docchat.database import get_session_factory
from docchat.db_models_chat import (
    ChatMessage,
    ChatMessageCitation,
    ROLE_ASSISTANT,
    STATUS_COMPLETED,
    STATUS_PROCESSING,
)
from docchat.errors import DuplicateClaimError, TransientIOError
from docchat.utils.logging import logger
from docchat.utils.metrics import CITATIONS_WRITTEN

Publisher = Callable[[ChatMessage, int], object]

CitationKey = Tuple[str, Optional[int], Optional[int]]


class ResultWriter:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        publisher: Optional[Publisher] = None,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.publisher = publisher
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

    async def write(
        self,
        source: ChatMessage,
        generation: GenerationResult,
        citations: Sequence[ResolvedCitation],
        context: AssembledContext,
        worker_id: str,
    ) -> ChatMessage:
        """Commit the reply for `source` and publish it.

        Raises:
            DuplicateClaimError: the claim on `source` is held by someone else
            TransientIOError: the database kept failing after the retry budget
        """
        total_attempts = self.max_retries + 1
        for attempt in range(total_attempts):
            try:
                reply, new_citations = await asyncio.to_thread(
                    self._write_once, source, generation, citations, context, worker_id
                )
                break
            except TransientIOError as e:
                if attempt + 1 >= total_attempts:
                    raise
                wait_time = self.retry_base_delay * (2 ** attempt)
                logger.warning(
                    f"Result write failed, retrying in {wait_time}s (attempt {attempt + 1}/{total_attempts})",
                    extra={"message_id": source.id, "error": str(e)}
                )
                await self._sleep(wait_time)

        CITATIONS_WRITTEN.inc(new_citations)
        logger.info(
            "Assistant reply committed",
            extra={
                "message_id": source.id,
                "reply_id": reply.id,
                "session_id": source.session_id,
                "citations": new_citations,
                "grounded": context.grounded,
            }
        )

        if self.publisher is not None:
            self.publisher(reply, len(citations))
        return reply

    def _write_once(
        self,
        source: ChatMessage,
        generation: GenerationResult,
        citations: Sequence[ResolvedCitation],
        context: AssembledContext,
        worker_id: str,
    ) -> Tuple[ChatMessage, int]:
        db = self.session_factory()
        try:
            reply = db.query(ChatMessage).filter(ChatMessage.reply_to_id == source.id).first()
            if reply is None:
                reply = ChatMessage(
                    session_id=source.session_id,
                    user_id=source.user_id,
                    role=ROLE_ASSISTANT,
                    content=generation.text,
                    tokens_in=generation.input_tokens,
                    tokens_out=generation.output_tokens,
                    processed=True,
                    status=STATUS_COMPLETED,
                    reply_to_id=source.id,
                    grounded=context.grounded,
                    model_used=generation.model,
                )
                db.add(reply)
                db.flush()
            else:
                logger.info(
                    "Reusing assistant reply from an earlier attempt",
                    extra={"message_id": source.id, "reply_id": reply.id}
                )

            new_citations = self._insert_citations(db, reply, citations)

            rowcount = db.query(ChatMessage).filter(
                ChatMessage.id == source.id,
                ChatMessage.processed.is_(False),
                ChatMessage.status == STATUS_PROCESSING,
                ChatMessage.claimed_by == worker_id
            ).update(
                {
                    ChatMessage.processed: True,
                    ChatMessage.status: STATUS_COMPLETED,
                    ChatMessage.error_type: None,
                    ChatMessage.error_message: None,
                },
                synchronize_session=False
            )
            if rowcount != 1:
                db.rollback()
                raise DuplicateClaimError(source.id)

            db.commit()
            return reply, new_citations

        except IntegrityError as e:
            # Another writer inserted the reply for this source concurrently
            db.rollback()
            logger.warning(
                "Reply insert lost to a concurrent writer",
                extra={"message_id": source.id, "error": str(e)}
            )
            raise DuplicateClaimError(source.id) from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                f"Failed to write assistant reply: {e}",
                extra={"message_id": source.id, "error": str(e)}
            )
            raise TransientIOError(f"Result write failed: {e}", stage="write") from e
        finally:
            db.close()

    def _insert_citations(
        self,
        db: Session,
        reply: ChatMessage,
        citations: Sequence[ResolvedCitation],
    ) -> int:
        """Attach citations not already present on `reply`. Returns how many were added."""
        existing: Set[CitationKey] = {
            (row.chunk_id, row.start_offset, row.end_offset)
            for row in db.query(ChatMessageCitation).filter(ChatMessageCitation.message_id == reply.id)
        }

        added: List[ChatMessageCitation] = []
        for citation in citations:
            key = (citation.chunk_id, citation.start_offset, citation.end_offset)
            if key in existing:
                continue
            existing.add(key)
            added.append(ChatMessageCitation(
                message_id=reply.id,
                chunk_id=citation.chunk_id,
                similarity=citation.similarity,
                start_offset=citation.start_offset,
                end_offset=citation.end_offset,
            ))

        if added:
            db.add_all(added)
            db.flush()
        return len(added)
