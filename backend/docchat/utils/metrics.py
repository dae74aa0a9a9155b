"""Prometheus metrics for the chat worker pipeline.

Metrics taxonomy:
Claiming:
    - chat_messages_claimed_total
    - chat_duplicate_claims_total
Pipeline outcome:
    - chat_messages_completed_total
    - chat_messages_failed_total (label error_type)
    - chat_pipeline_latency_seconds
Generation:
    - chat_generation_attempts_total (label outcome)
    - chat_generation_latency_seconds
Citations:
    - chat_citations_written_total
Sweeper:
    - chat_messages_requeued_total (label reason)
"""
from prometheus_client import Counter, Histogram, start_http_server

from docchat.utils.logging import logger

# Claiming
MESSAGES_CLAIMED = Counter(
    "chat_messages_claimed_total",
    "Total user messages claimed by this worker",
)
DUPLICATE_CLAIMS = Counter(
    "chat_duplicate_claims_total",
    "Total claim attempts lost to another worker or redelivery",
)

# Pipeline outcome
MESSAGES_COMPLETED = Counter(
    "chat_messages_completed_total",
    "Total user messages answered with an assistant reply",
)
MESSAGES_FAILED = Counter(
    "chat_messages_failed_total",
    "Total user messages left unprocessed with a failure marker",
    ["error_type"]
)
PIPELINE_LATENCY_SECONDS = Histogram(
    "chat_pipeline_latency_seconds",
    "Claim-to-commit latency of one message pipeline",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)

# Generation
GENERATION_ATTEMPTS = Counter(
    "chat_generation_attempts_total",
    "Generation requests by outcome",
    ["outcome"]
)
GENERATION_LATENCY_SECONDS = Histogram(
    "chat_generation_latency_seconds",
    "Latency of a single generation request",
    buckets=(0.25, 0.5, 1, 2, 5, 10, 30, 60, 120)
)

# Citations
CITATIONS_WRITTEN = Counter(
    "chat_citations_written_total",
    "Total citation rows written for assistant replies"
)

# Sweeper
MESSAGES_REQUEUED = Counter(
    "chat_messages_requeued_total",
    "Messages returned to pending by the sweeper",
    ["reason"]
)


def start_metrics_server(port: int) -> bool:
    """Expose /metrics over HTTP when a port is configured."""
    if port <= 0:
        return False
    start_http_server(port)
    logger.info("Prometheus exporter started", extra={"port": port})
    return True


__all__ = [
    "MESSAGES_CLAIMED",
    "DUPLICATE_CLAIMS",
    "MESSAGES_COMPLETED",
    "MESSAGES_FAILED",
    "PIPELINE_LATENCY_SECONDS",
    "GENERATION_ATTEMPTS",
    "GENERATION_LATENCY_SECONDS",
    "CITATIONS_WRITTEN",
    "MESSAGES_REQUEUED",
    "start_metrics_server",
]
