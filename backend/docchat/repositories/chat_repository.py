"""Repository for chat session and message database operations.

Data Access Layer for the chat worker.

Pattern:
- All database queries go through repositories
- Pipeline stages call repositories (never a global session)
- The session factory is injected, so tests bind a throwaway database
- Database failures surface as TransientIOError; "not found" is None
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Iterable
from contextlib import contextmanager
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from docchat.database import get_session_factory
from docchat.db_models_chat import (
    ChatSession,
    ChatMessage,
    ChatMessageCitation,
    ROLE_USER,
    ROLE_ASSISTANT,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_FAILED,
)
from docchat.errors import TransientIOError
from docchat.utils.logging import logger

STALE_CLAIM_ERROR = "stale_claim"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatRepository:
    """Repository for chat session and message database operations.

    Usage:
        chat_repo = ChatRepository(session_factory)
        claimed = chat_repo.claim_message(message_id, worker_id)
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    @contextmanager
    def _get_session(self) -> Session:
        """Context manager for database sessions.

        Ensures sessions are properly closed even on errors.
        """
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # ============================================================================
    # CHAT SESSION OPERATIONS
    # ============================================================================

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        """Get chat session by ID.

        Returns:
            ChatSession if found, None otherwise

        Raises:
            TransientIOError: if the database could not be queried
        """
        with self._get_session() as db:
            try:
                return db.query(ChatSession).filter(ChatSession.id == session_id).first()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to get chat session: {e}",
                    extra={"session_id": session_id, "error": str(e)}
                )
                raise TransientIOError(f"Session lookup failed: {e}", stage="context") from e

    def get_or_create_session(
        self,
        user_id: str,
        document_id: Optional[str],
        title: Optional[str] = None
    ) -> ChatSession:
        """Return the session for (user, document), creating it on first use.

        Document-bound sessions are unique per (user, document), so a
        concurrent create loses on the unique constraint and re-reads.
        """
        with self._get_session() as db:
            try:
                query = db.query(ChatSession).filter(ChatSession.user_id == user_id)
                if document_id is not None:
                    existing = query.filter(ChatSession.document_id == document_id).first()
                    if existing:
                        return existing

                session = ChatSession(user_id=user_id, document_id=document_id, title=title or "New Chat")
                db.add(session)
                db.commit()
                db.refresh(session)

                logger.info(
                    "Created chat session",
                    extra={"session_id": session.id, "user_id": user_id, "document_id": document_id}
                )
                return session

            except IntegrityError:
                db.rollback()
                return db.query(ChatSession).filter(
                    ChatSession.user_id == user_id,
                    ChatSession.document_id == document_id
                ).one()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to create chat session: {e}",
                    extra={"user_id": user_id, "document_id": document_id, "error": str(e)}
                )
                db.rollback()
                raise TransientIOError(f"Session create failed: {e}") from e

    # ============================================================================
    # CHAT MESSAGE OPERATIONS
    # ============================================================================

    def save_user_message(
        self,
        session_id: str,
        content: str,
        user_id: Optional[str] = None,
        tokens_in: Optional[int] = None
    ) -> ChatMessage:
        """Insert an unprocessed user message (what the chat client does)."""
        with self._get_session() as db:
            try:
                message = ChatMessage(
                    session_id=session_id,
                    user_id=user_id,
                    role=ROLE_USER,
                    content=content,
                    tokens_in=tokens_in,
                    processed=False,
                    status=STATUS_PENDING,
                    attempts=0
                )
                db.add(message)
                db.commit()
                db.refresh(message)

                logger.debug(
                    "Saved user message",
                    extra={"message_id": message.id, "session_id": session_id}
                )
                return message

            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to save user message: {e}",
                    extra={"session_id": session_id, "error": str(e)}
                )
                db.rollback()
                raise TransientIOError(f"Message insert failed: {e}") from e

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._get_session() as db:
            try:
                return db.query(ChatMessage).filter(ChatMessage.id == message_id).first()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to get chat message: {e}",
                    extra={"message_id": message_id, "error": str(e)}
                )
                raise TransientIOError(f"Message lookup failed: {e}") from e

    def claim_message(self, message_id: str, worker_id: str) -> Optional[ChatMessage]:
        """Atomically claim an unprocessed user message for one worker.

        A single conditional UPDATE flips pending -> processing. The database
        serializes concurrent updates of the row, so exactly one caller sees
        rowcount == 1; everybody else gets None (already claimed, processed,
        failed or not a user message).
        """
        with self._get_session() as db:
            try:
                rowcount = db.query(ChatMessage).filter(
                    ChatMessage.id == message_id,
                    ChatMessage.role == ROLE_USER,
                    ChatMessage.processed.is_(False),
                    ChatMessage.status == STATUS_PENDING
                ).update(
                    {
                        ChatMessage.status: STATUS_PROCESSING,
                        ChatMessage.claimed_by: worker_id,
                        ChatMessage.claimed_at: _utcnow(),
                        ChatMessage.attempts: ChatMessage.attempts + 1,
                        ChatMessage.error_type: None,
                        ChatMessage.error_message: None,
                    },
                    synchronize_session=False
                )
                db.commit()

                if rowcount != 1:
                    return None

                return db.query(ChatMessage).filter(ChatMessage.id == message_id).one()

            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to claim message: {e}",
                    extra={"message_id": message_id, "error": str(e)}
                )
                db.rollback()
                raise TransientIOError(f"Claim failed: {e}", stage="claim") from e

    def release_claim(self, message_id: str, worker_id: str) -> bool:
        """Return a claimed message to pending (only by the worker that owns it)."""
        with self._get_session() as db:
            try:
                rowcount = db.query(ChatMessage).filter(
                    ChatMessage.id == message_id,
                    ChatMessage.status == STATUS_PROCESSING,
                    ChatMessage.claimed_by == worker_id
                ).update(
                    {
                        ChatMessage.status: STATUS_PENDING,
                        ChatMessage.claimed_by: None,
                        ChatMessage.claimed_at: None,
                    },
                    synchronize_session=False
                )
                db.commit()
                return rowcount == 1

            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to release claim: {e}",
                    extra={"message_id": message_id, "error": str(e)}
                )
                db.rollback()
                return False

    def mark_failed(
        self,
        message_id: str,
        worker_id: str,
        error_type: str,
        error_message: str
    ) -> bool:
        """Leave the message unprocessed with a visible failure marker."""
        with self._get_session() as db:
            try:
                rowcount = db.query(ChatMessage).filter(
                    ChatMessage.id == message_id,
                    ChatMessage.processed.is_(False),
                    ChatMessage.status == STATUS_PROCESSING,
                    ChatMessage.claimed_by == worker_id
                ).update(
                    {
                        ChatMessage.status: STATUS_FAILED,
                        ChatMessage.error_type: error_type,
                        ChatMessage.error_message: (error_message or "")[:500],
                    },
                    synchronize_session=False
                )
                db.commit()

                if rowcount != 1:
                    logger.warning(
                        "Failure marker not applied (claim no longer held)",
                        extra={"message_id": message_id}
                    )
                return rowcount == 1

            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to mark message failed: {e}",
                    extra={"message_id": message_id, "error": str(e)}
                )
                db.rollback()
                return False

    def get_history(
        self,
        session_id: str,
        before: Optional[datetime],
        limit: int
    ) -> List[ChatMessage]:
        """Get the last `limit` messages of answered turns, oldest first.

        A turn is a completed user message asked before `before` followed by
        its assistant reply. The reply may be newer than `before` (it was
        written after the current question arrived) and still belongs to the
        turn. Pending or failed questions are left out of the prompt.
        """
        if limit <= 0:
            return []

        with self._get_session() as db:
            try:
                query = db.query(ChatMessage).filter(
                    ChatMessage.session_id == session_id,
                    ChatMessage.role == ROLE_USER,
                    ChatMessage.status == STATUS_COMPLETED
                )
                if before is not None:
                    query = query.filter(ChatMessage.created_at < before)
                questions = list(reversed(
                    query.order_by(ChatMessage.created_at.desc()).limit(limit).all()
                ))
                if not questions:
                    return []

                replies = {
                    reply.reply_to_id: reply
                    for reply in db.query(ChatMessage).filter(
                        ChatMessage.role == ROLE_ASSISTANT,
                        ChatMessage.reply_to_id.in_([q.id for q in questions])
                    ).all()
                }

                turns: List[ChatMessage] = []
                for question in questions:
                    turns.append(question)
                    if question.id in replies:
                        turns.append(replies[question.id])
                return turns[-limit:]

            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to get chat history: {e}",
                    extra={"session_id": session_id, "error": str(e)}
                )
                raise TransientIOError(f"History lookup failed: {e}", stage="context") from e

    def find_reply(self, user_message_id: str) -> Optional[ChatMessage]:
        """Return the assistant reply written for a user message, if any."""
        with self._get_session() as db:
            try:
                return db.query(ChatMessage).filter(
                    ChatMessage.reply_to_id == user_message_id
                ).first()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to find reply: {e}",
                    extra={"message_id": user_message_id, "error": str(e)}
                )
                raise TransientIOError(f"Reply lookup failed: {e}") from e

    def count_replies(self, user_message_id: str) -> int:
        with self._get_session() as db:
            return db.query(ChatMessage).filter(
                ChatMessage.reply_to_id == user_message_id
            ).count()

    def get_citations(self, message_id: str) -> List[ChatMessageCitation]:
        """Get citations attached to an assistant message."""
        with self._get_session() as db:
            try:
                return db.query(ChatMessageCitation).filter(
                    ChatMessageCitation.message_id == message_id
                ).all()
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to get citations: {e}",
                    extra={"message_id": message_id, "error": str(e)}
                )
                raise TransientIOError(f"Citation lookup failed: {e}") from e

    # ============================================================================
    # FEED / SWEEP OPERATIONS
    # ============================================================================

    def list_pending_user_messages(self, limit: int = 50) -> List[ChatMessage]:
        """Unclaimed, unprocessed user messages, oldest first."""
        with self._get_session() as db:
            try:
                return db.query(ChatMessage).filter(
                    ChatMessage.role == ROLE_USER,
                    ChatMessage.processed.is_(False),
                    ChatMessage.status == STATUS_PENDING
                ).order_by(ChatMessage.created_at).limit(limit).all()
            except SQLAlchemyError as e:
                logger.error(f"Failed to list pending messages: {e}", extra={"error": str(e)})
                raise TransientIOError(f"Pending scan failed: {e}") from e

    def requeue_stale_claims(self, timeout_seconds: int, max_attempts: Optional[int] = None) -> List[str]:
        """Return abandoned `processing` claims to pending.

        A claim older than the timeout belongs to a worker that died mid-pipeline.
        With `max_attempts`, only claims with attempts left are requeued; see
        fail_stale_claims() for the rest.
        """
        return self._resolve_stale_claims(
            timeout_seconds,
            max_attempts,
            exhausted=False,
            values={
                ChatMessage.status: STATUS_PENDING,
                ChatMessage.claimed_by: None,
                ChatMessage.claimed_at: None,
            }
        )

    def fail_stale_claims(self, timeout_seconds: int, max_attempts: int) -> List[str]:
        """Mark abandoned claims at the attempt cap as failed for good."""
        return self._resolve_stale_claims(
            timeout_seconds,
            max_attempts,
            exhausted=True,
            values={
                ChatMessage.status: STATUS_FAILED,
                ChatMessage.error_type: STALE_CLAIM_ERROR,
                ChatMessage.error_message: f"Claim abandoned after {max_attempts} attempts",
            }
        )

    def _resolve_stale_claims(
        self,
        timeout_seconds: int,
        max_attempts: Optional[int],
        exhausted: bool,
        values: dict
    ) -> List[str]:
        cutoff = _utcnow() - timedelta(seconds=timeout_seconds)
        conditions = [
            ChatMessage.role == ROLE_USER,
            ChatMessage.processed.is_(False),
            ChatMessage.status == STATUS_PROCESSING,
            ChatMessage.claimed_at < cutoff,
        ]
        if max_attempts is not None:
            conditions.append(
                ChatMessage.attempts >= max_attempts if exhausted else ChatMessage.attempts < max_attempts
            )

        with self._get_session() as db:
            try:
                stale_ids = [row.id for row in db.query(ChatMessage.id).filter(*conditions).all()]
                if not stale_ids:
                    return []

                resolved = []
                for message_id in stale_ids:
                    # Same compare-and-set discipline as the claim itself
                    rowcount = db.query(ChatMessage).filter(
                        ChatMessage.id == message_id, *conditions
                    ).update(values, synchronize_session=False)
                    if rowcount == 1:
                        resolved.append(message_id)
                db.commit()
                return resolved

            except SQLAlchemyError as e:
                logger.error(f"Failed to resolve stale claims: {e}", extra={"error": str(e)})
                db.rollback()
                raise TransientIOError(f"Stale claim sweep failed: {e}") from e

    def requeue_failed_messages(
        self,
        error_types: Iterable[str],
        max_attempts: int
    ) -> List[ChatMessage]:
        """Return retryable failures with attempts left to pending.

        Messages at the attempt cap stay failed for good.
        """
        error_types = list(error_types)
        with self._get_session() as db:
            try:
                candidates = db.query(ChatMessage).filter(
                    ChatMessage.role == ROLE_USER,
                    ChatMessage.processed.is_(False),
                    ChatMessage.status == STATUS_FAILED,
                    ChatMessage.error_type.in_(error_types),
                    ChatMessage.attempts < max_attempts
                ).order_by(ChatMessage.created_at).all()

                requeued = []
                for message in candidates:
                    rowcount = db.query(ChatMessage).filter(
                        ChatMessage.id == message.id,
                        ChatMessage.status == STATUS_FAILED
                    ).update(
                        {
                            ChatMessage.status: STATUS_PENDING,
                            ChatMessage.claimed_by: None,
                            ChatMessage.claimed_at: None,
                        },
                        synchronize_session=False
                    )
                    if rowcount == 1:
                        requeued.append(message)
                db.commit()
                return requeued

            except SQLAlchemyError as e:
                logger.error(f"Failed to requeue failed messages: {e}", extra={"error": str(e)})
                db.rollback()
                raise TransientIOError(f"Failed message sweep failed: {e}") from e
