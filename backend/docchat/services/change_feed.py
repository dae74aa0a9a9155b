"""Change Feed Sources: streams of "user message inserted" events.

The worker only needs an async iterator of MessageInsertedEvent plus a way to
stop it. Two implementations:

- RedisChangeFeed: subscribes to the chat events channel. Whatever inserts a
  user message (API, database trigger, sweeper) publishes the row there.
- DatabasePollingFeed: scans the messages table for pending user messages.
  Slower, but needs nothing besides the database and also redelivers
  anything a missed notification left behind.

Feeds may deliver the same message more than once; the worker's atomic claim
makes that harmless.
"""
from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Optional, Protocol

import redis
import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, ValidationError

from docchat.config import settings
from docchat.db_models_chat import ROLE_USER, ChatMessage
from docchat.errors import ConfigurationError, TransientIOError
from docchat.repositories.chat_repository import ChatRepository
from docchat.utils.logging import logger


class MessageInsertedEvent(BaseModel):
    """Insert notification payload for one chat message row."""

    model_config = ConfigDict(extra="ignore")

    id: str
    session_id: str
    user_id: Optional[str] = None
    role: str = ROLE_USER
    content: str = ""
    tokens_in: Optional[int] = None
    processed: bool = False

    @property
    def is_actionable(self) -> bool:
        """Only unprocessed user messages need an answer."""
        return self.role == ROLE_USER and not self.processed

    @classmethod
    def from_message(cls, message: ChatMessage) -> "MessageInsertedEvent":
        return cls(
            id=message.id,
            session_id=message.session_id,
            user_id=message.user_id,
            role=message.role,
            content=message.content,
            tokens_in=message.tokens_in,
            processed=bool(message.processed),
        )


class ChangeFeedSource(Protocol):
    def events(self) -> AsyncIterator[MessageInsertedEvent]:
        ...

    async def close(self) -> None:
        ...


class RedisChangeFeed:
    """Insert events from a Redis pub/sub channel.

    Raises TransientIOError from `events()` when Redis is unreachable; the
    worker reconnects.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel: Optional[str] = None,
        poll_timeout: float = 1.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.channel = channel or settings.chat_events_channel
        self.poll_timeout = poll_timeout
        self._client = client
        self._closed = False

    @staticmethod
    def parse(raw) -> Optional[MessageInsertedEvent]:
        """Decode one pub/sub payload. Accepts {"event", "payload"} envelopes or bare rows."""
        try:
            data = json.loads(raw)
            if isinstance(data, dict) and isinstance(data.get("payload"), dict):
                data = data["payload"]
            return MessageInsertedEvent.model_validate(data)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning("Ignoring malformed change feed payload", extra={"error": str(e)})
            return None

    async def events(self) -> AsyncIterator[MessageInsertedEvent]:
        self._closed = False
        client = self._client or aioredis.from_url(self.redis_url, decode_responses=True)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info(f"Subscribed to change feed channel: {self.channel}", extra={"channel": self.channel})

            while not self._closed:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
                if message is None or message.get("type") != "message":
                    continue
                event = self.parse(message["data"])
                if event is not None and event.is_actionable:
                    yield event
        except redis.RedisError as e:
            raise TransientIOError(f"Change feed unavailable: {e}", stage="feed") from e
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
                if self._client is None:
                    await client.aclose()
            except redis.RedisError as e:
                logger.debug("Change feed cleanup failed", extra={"error": str(e)})

    async def close(self) -> None:
        self._closed = True


class DatabasePollingFeed:
    """Insert events derived from periodic scans of pending user messages."""

    def __init__(
        self,
        chat_repo: ChatRepository,
        interval_seconds: Optional[float] = None,
        batch_size: int = 50,
    ):
        self.chat_repo = chat_repo
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.polling_interval_seconds
        self.batch_size = batch_size
        self._closed = asyncio.Event()

    async def events(self) -> AsyncIterator[MessageInsertedEvent]:
        self._closed.clear()
        logger.info("Polling messages table for pending user messages", extra={"interval": self.interval_seconds})
        while not self._closed.is_set():
            pending = await asyncio.to_thread(self.chat_repo.list_pending_user_messages, self.batch_size)
            for message in pending:
                if self._closed.is_set():
                    return
                yield MessageInsertedEvent.from_message(message)

            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def close(self) -> None:
        self._closed.set()


def get_change_feed(chat_repo: ChatRepository, backend: Optional[str] = None) -> ChangeFeedSource:
    """Build the configured change feed ("redis" or "polling")."""
    backend = (backend or settings.change_feed_backend).lower()
    if backend == "redis":
        return RedisChangeFeed()
    if backend == "polling":
        return DatabasePollingFeed(chat_repo)
    raise ConfigurationError(f"Unknown change feed backend: {backend}", stage="feed")
