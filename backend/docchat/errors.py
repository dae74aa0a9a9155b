"""Error taxonomy for the chat processing pipeline.

Stages raise these; the worker loop decides what happens to the message:

- ConfigurationError: broken session/document reference. Not retried
  automatically; the message is marked failed for an operator.
- TransientIOError: storage fetch, generation timeout or rate limit.
  Retried by the raising stage within its budget, then marked failed
  as retryable so the sweeper may requeue it.
- GenerationError: the generation capability rejected the request.
- DataIntegrityError: malformed citation offsets. Absorbed by the
  citation resolver, never seen by the worker loop.
- DuplicateClaimError: another worker owns the message. Silent no-op.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for message pipeline failures."""

    retryable: bool = False
    error_type: str = "pipeline_error"

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class ConfigurationError(PipelineError):
    error_type = "configuration_error"


class TransientIOError(PipelineError):
    retryable = True
    error_type = "transient_io_error"


class GenerationError(PipelineError):
    error_type = "generation_error"


class DataIntegrityError(PipelineError):
    error_type = "data_integrity_error"


class DuplicateClaimError(PipelineError):
    error_type = "duplicate_claim"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} already claimed", stage="claim")
        self.message_id = message_id
