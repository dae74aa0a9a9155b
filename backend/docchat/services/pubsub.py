"""Redis Pub/Sub utilities for chat message notifications.

Two channels:
 - chat events channel (settings.chat_events_channel): user message inserts,
   consumed by RedisChangeFeed. The sweeper re-announces requeued messages here.
 - assistant events channel (settings.assistant_events_channel): assistant
   replies, consumed by the client-facing subscription.

Message schema (JSON string published to Redis channel):
{
  "event": "message_inserted" | "assistant_message",
  "payload": { ... message row fields ... }
}

Publishing is fire-and-forget: a failed publish is logged and never raised,
since the database row is the source of truth.
"""
from __future__ import annotations
import json
from typing import Any, Dict, Optional

import redis

from docchat.config import settings
from docchat.db_models_chat import ChatMessage
from docchat.utils.logging import logger

EVENT_MESSAGE_INSERTED = "message_inserted"
EVENT_ASSISTANT_MESSAGE = "assistant_message"


def get_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def message_payload(message: ChatMessage) -> Dict[str, Any]:
    """Row fields a subscriber needs to act on a message without a re-read."""
    return {
        "id": message.id,
        "session_id": message.session_id,
        "user_id": message.user_id,
        "role": message.role,
        "content": message.content,
        "tokens_in": message.tokens_in,
        "tokens_out": message.tokens_out,
        "processed": bool(message.processed),
        "reply_to_id": message.reply_to_id,
    }


def publish_event(channel: str, event: str, payload: Dict[str, Any], client: Optional[redis.Redis] = None) -> bool:
    """Publish one event. Returns False (after logging) when Redis is unavailable."""
    message = {"event": event, "payload": payload}
    try:
        redis_client = client or get_redis()
        redis_client.publish(channel, json.dumps(message, default=str))
        logger.debug(
            f"Published pubsub event: {event}",
            extra={"event": event, "channel": channel, "message_id": payload.get("id")}
        )
        return True
    except redis.RedisError as e:
        logger.warning(
            f"Redis publish failed: {event}",
            extra={"event": event, "channel": channel, "message_id": payload.get("id"), "error": str(e)}
        )
        return False


def publish_assistant_message(message: ChatMessage, citation_count: int = 0) -> bool:
    payload = message_payload(message)
    payload["citation_count"] = citation_count
    return publish_event(settings.assistant_events_channel, EVENT_ASSISTANT_MESSAGE, payload)


def announce_user_message(message: ChatMessage) -> bool:
    """Re-emit an insert event for a user message returned to pending."""
    return publish_event(settings.chat_events_channel, EVENT_MESSAGE_INSERTED, message_payload(message))
