"""Scheduled sweep over the chat messages table.

Two jobs:
    - stale claims: `processing` rows whose worker died mid-pipeline go back
      to `pending` while they have attempts left; at the attempt cap they
      are failed with error type `stale_claim`
    - retryable failures: rows failed with a retryable error type and attempts
      left go back to `pending` and are re-announced on the change feed

Anything at the attempt cap, or failed with a non-retryable error, stays
failed for an operator.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from docchat.config import settings
from docchat.db_models_chat import ChatMessage
from docchat.errors import TransientIOError
from docchat.repositories.chat_repository import STALE_CLAIM_ERROR, ChatRepository
from docchat.services.pubsub import announce_user_message
from docchat.utils.logging import logger
from docchat.utils.metrics import MESSAGES_FAILED, MESSAGES_REQUEUED

RETRYABLE_ERROR_TYPES = (TransientIOError.error_type,)


@dataclass
class SweepResult:
    stale_requeued: List[str] = field(default_factory=list)
    stale_failed: List[str] = field(default_factory=list)
    failed_requeued: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "stale_requeued": len(self.stale_requeued),
            "stale_failed": len(self.stale_failed),
            "failed_requeued": len(self.failed_requeued),
        }


def sweep_messages(
    chat_repo: Optional[ChatRepository] = None,
    claim_timeout_seconds: Optional[int] = None,
    max_attempts: Optional[int] = None,
    announce: Optional[Callable[[ChatMessage], object]] = announce_user_message,
) -> SweepResult:
    chat_repo = chat_repo or ChatRepository()
    claim_timeout_seconds = claim_timeout_seconds if claim_timeout_seconds is not None else settings.claim_timeout_seconds
    max_attempts = max_attempts if max_attempts is not None else settings.max_processing_attempts

    result = SweepResult()

    result.stale_failed = chat_repo.fail_stale_claims(claim_timeout_seconds, max_attempts)
    if result.stale_failed:
        MESSAGES_FAILED.labels(error_type=STALE_CLAIM_ERROR).inc(len(result.stale_failed))
        logger.error(
            f"Failed {len(result.stale_failed)} stale claims at the attempt cap",
            extra={"message_ids": result.stale_failed, "max_attempts": max_attempts}
        )

    result.stale_requeued = chat_repo.requeue_stale_claims(claim_timeout_seconds, max_attempts)
    if result.stale_requeued:
        MESSAGES_REQUEUED.labels(reason="stale_claim").inc(len(result.stale_requeued))
        logger.warning(
            f"Requeued {len(result.stale_requeued)} stale claims",
            extra={"message_ids": result.stale_requeued, "claim_timeout": claim_timeout_seconds}
        )

    requeued = chat_repo.requeue_failed_messages(RETRYABLE_ERROR_TYPES, max_attempts)
    result.failed_requeued = [message.id for message in requeued]
    if requeued:
        MESSAGES_REQUEUED.labels(reason="retryable_failure").inc(len(requeued))
        logger.info(
            f"Requeued {len(requeued)} failed messages for retry",
            extra={"message_ids": result.failed_requeued, "max_attempts": max_attempts}
        )

    if announce is not None:
        for message_id in result.stale_requeued:
            message = chat_repo.get_message(message_id)
            if message is not None:
                announce(message)
        for message in requeued:
            announce(message)

    return result
