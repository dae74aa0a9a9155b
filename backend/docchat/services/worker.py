"""Worker Loop: drain unprocessed user messages exactly once in effect.

For every insert event:
    claim (conditional UPDATE) -> assemble context -> generate -> cite -> write

Concurrency model:
    - a semaphore bounds how many messages are in flight; the dispatcher waits
      for a free slot before claiming, so bursts back up in the feed instead of
      piling onto the database and the generation API
    - each claimed message runs as its own asyncio task
    - a per-session lock serializes messages of one session in claim order
    - a failing message is marked failed and never stops the loop
    - on shutdown, pipelines that outlive the grace period are cancelled
      and their claims released
"""
from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Set

from docchat.config import settings
from docchat.core.llm.llm_client import GenerationInvoker
from docchat.core.rag.citations import CitationResolver
from docchat.core.rag.context_assembler import ContextAssembler
from docchat.core.rag.result_writer import ResultWriter
from docchat.db_models_chat import ChatMessage
from docchat.errors import DuplicateClaimError, PipelineError, TransientIOError
from docchat.repositories.chat_repository import ChatRepository
from docchat.services.change_feed import ChangeFeedSource, MessageInsertedEvent
from docchat.utils.logging import logger
from docchat.utils.metrics import (
    DUPLICATE_CLAIMS,
    MESSAGES_CLAIMED,
    MESSAGES_COMPLETED,
    MESSAGES_FAILED,
    PIPELINE_LATENCY_SECONDS,
)

INTERNAL_ERROR = "internal_error"


class ChatWorker:
    """
    Composition of the pipeline stages around one change feed.

    Usage:
        worker = ChatWorker(feed, chat_repo, assembler, invoker, resolver, writer)
        await worker.run()        # until the feed ends or stop() is called
    """

    def __init__(
        self,
        feed: ChangeFeedSource,
        chat_repo: ChatRepository,
        assembler: ContextAssembler,
        invoker: GenerationInvoker,
        resolver: CitationResolver,
        writer: ResultWriter,
        worker_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        catch_up_on_start: bool = True,
        reconnect_delay_seconds: float = 5.0,
        shutdown_timeout_seconds: Optional[float] = None,
        catch_up_batch_size: int = 50,
    ):
        self.feed = feed
        self.chat_repo = chat_repo
        self.assembler = assembler
        self.invoker = invoker
        self.resolver = resolver
        self.writer = writer
        self.worker_id = worker_id or settings.worker_id
        self.concurrency = concurrency or settings.worker_concurrency
        self.catch_up_on_start = catch_up_on_start
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.shutdown_timeout_seconds = (
            shutdown_timeout_seconds if shutdown_timeout_seconds is not None
            else settings.worker_shutdown_timeout_seconds
        )
        self.catch_up_batch_size = catch_up_batch_size

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._session_refs: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    async def run(self) -> None:
        """Consume the feed until it ends or stop() is called, then drain in-flight work."""
        logger.info(
            "Chat worker started",
            extra={"concurrency": self.concurrency, "feed": type(self.feed).__name__}
        )
        try:
            while not self._stopping.is_set():
                try:
                    if self.catch_up_on_start:
                        await self.catch_up()
                    async for event in self.feed.events():
                        if self._stopping.is_set():
                            break
                        await self.dispatch(event)
                    break
                except TransientIOError as e:
                    logger.error(
                        f"Change feed unavailable, reconnecting in {self.reconnect_delay_seconds}s",
                        extra={"error": str(e)}
                    )
                    try:
                        await asyncio.wait_for(self._stopping.wait(), timeout=self.reconnect_delay_seconds)
                    except asyncio.TimeoutError:
                        pass
        finally:
            await self.drain(timeout=self.shutdown_timeout_seconds)
            logger.info("Chat worker stopped")

    async def stop(self) -> None:
        """Stop consuming events. run() returns once in-flight messages finish."""
        if self._stopping.is_set():
            return
        logger.info("Chat worker stopping", extra={"in_flight": len(self._tasks)})
        self._stopping.set()
        await self.feed.close()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every dispatched message pipeline to finish.

        Pipelines still running after `timeout` seconds are cancelled; their
        claims are released so the message goes back to pending.
        """
        if self._tasks:
            _, unfinished = await asyncio.wait(set(self._tasks), timeout=timeout)
            if unfinished:
                logger.warning(
                    f"Cancelling {len(unfinished)} unfinished messages",
                    extra={"timeout": timeout}
                )
                for task in unfinished:
                    task.cancel()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def catch_up(self) -> int:
        """Dispatch user messages that were inserted while nobody was listening.

        Pages through the pending backlog until a batch brings nothing new.
        Dispatched messages are claimed, so they drop out of the next page.
        """
        seen: Set[str] = set()
        while not self._stopping.is_set():
            pending = await asyncio.to_thread(
                self.chat_repo.list_pending_user_messages, self.catch_up_batch_size
            )
            fresh = [message for message in pending if message.id not in seen]
            if not fresh:
                break
            for message in fresh:
                if self._stopping.is_set():
                    break
                seen.add(message.id)
                await self.dispatch(MessageInsertedEvent.from_message(message))
        if seen:
            logger.info(f"Caught up on {len(seen)} pending messages")
        return len(seen)

    # ============================================================================
    # DISPATCH
    # ============================================================================

    async def dispatch(self, event: MessageInsertedEvent) -> Optional[asyncio.Task]:
        """Claim the event's message and start its pipeline as a task.

        Returns None when there is nothing to do (not actionable, lost claim race
        or the claim itself failed).
        """
        if not event.is_actionable:
            return None

        await self._semaphore.acquire()
        try:
            message = await self._claim(event.id)
        except BaseException:
            self._semaphore.release()
            raise
        if message is None:
            self._semaphore.release()
            return None

        session_id = message.session_id
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._session_refs[session_id] = self._session_refs.get(session_id, 0) + 1

        task = asyncio.create_task(self._run_claimed(message, lock), name=f"chat-message-{message.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_event(self, event: MessageInsertedEvent) -> Optional[ChatMessage]:
        """Claim and process one event inline. Returns the assistant reply, if written."""
        task = await self.dispatch(event)
        if task is None:
            return None
        return await task

    async def _claim(self, message_id: str) -> Optional[ChatMessage]:
        try:
            message = await asyncio.to_thread(self.chat_repo.claim_message, message_id, self.worker_id)
        except TransientIOError as e:
            # Row stays pending; the next delivery or poll retries the claim
            logger.error("Claim failed", extra={"message_id": message_id, "error": str(e)})
            return None

        if message is None:
            DUPLICATE_CLAIMS.inc()
            logger.debug("Message already claimed or processed; skipping", extra={"message_id": message_id})
            return None

        MESSAGES_CLAIMED.inc()
        logger.info(
            "Claimed message",
            extra={"message_id": message.id, "session_id": message.session_id, "attempt": message.attempts}
        )
        return message

    async def _run_claimed(self, message: ChatMessage, lock: asyncio.Lock) -> Optional[ChatMessage]:
        try:
            async with lock:
                return await self.process_claimed(message)
        except asyncio.CancelledError:
            await self._release(message)
            raise
        finally:
            self._semaphore.release()
            remaining = self._session_refs.get(message.session_id, 1) - 1
            if remaining <= 0:
                self._session_refs.pop(message.session_id, None)
                self._session_locks.pop(message.session_id, None)
            else:
                self._session_refs[message.session_id] = remaining

    # ============================================================================
    # PIPELINE
    # ============================================================================

    async def process_claimed(self, message: ChatMessage) -> Optional[ChatMessage]:
        """Run all stages for a message this worker has claimed.

        Never raises: failures are recorded on the message row.
        """
        start = time.perf_counter()
        try:
            context = await self.assembler.assemble(message.session_id, before=message.created_at)
            if context.degraded_reason:
                logger.warning(
                    f"Answering without grounding: {context.degraded_reason}",
                    extra={"message_id": message.id, "session_id": message.session_id}
                )

            generation = await self.invoker.generate(context, message.content)
            citations = await self.resolver.resolve(context.document_id, message.content, generation.text)
            reply = await self.writer.write(message, generation, citations, context, self.worker_id)

        except DuplicateClaimError:
            DUPLICATE_CLAIMS.inc()
            logger.info(
                "Claim lost before commit; dropping result",
                extra={"message_id": message.id, "session_id": message.session_id}
            )
            return None
        except PipelineError as e:
            await self._mark_failed(message, e.error_type, e)
            return None
        except Exception as e:
            logger.exception(
                f"Unexpected error processing message: {e}",
                extra={"message_id": message.id, "session_id": message.session_id}
            )
            await self._mark_failed(message, INTERNAL_ERROR, e)
            return None

        PIPELINE_LATENCY_SECONDS.observe(time.perf_counter() - start)
        MESSAGES_COMPLETED.inc()
        logger.info(
            "Message processed",
            extra={
                "message_id": message.id,
                "session_id": message.session_id,
                "reply_id": reply.id,
                "attempts": generation.attempts,
                "citations": len(citations),
                "elapsed": round(time.perf_counter() - start, 3),
            }
        )
        return reply

    async def _release(self, message: ChatMessage) -> None:
        released = await asyncio.to_thread(self.chat_repo.release_claim, message.id, self.worker_id)
        logger.warning(
            "Pipeline cancelled; claim released" if released else "Pipeline cancelled after claim ended",
            extra={"message_id": message.id, "session_id": message.session_id}
        )

    async def _mark_failed(self, message: ChatMessage, error_type: str, error: BaseException) -> None:
        stage = getattr(error, "stage", None)
        logger.error(
            f"Message failed at {stage or 'unknown'} stage: {error}",
            extra={
                "message_id": message.id,
                "session_id": message.session_id,
                "error_type": error_type,
                "stage": stage,
                "attempt": message.attempts,
            }
        )
        MESSAGES_FAILED.labels(error_type=error_type).inc()
        marked = await asyncio.to_thread(
            self.chat_repo.mark_failed, message.id, self.worker_id, error_type, str(error)
        )
        if not marked:
            logger.warning("Could not record failure marker", extra={"message_id": message.id})


def create_worker(
    session_factory=None,
    generation_client=None,
    feed: Optional[ChangeFeedSource] = None,
    storage=None,
    publisher=None,
) -> ChatWorker:
    """Wire the pipeline from settings. Any dependency can be passed in instead."""
    from docchat.core.llm.llm_client import create_chat_llm_client
    from docchat.core.storage.storage_factory import get_storage_backend
    from docchat.database import get_session_factory
    from docchat.repositories.document_repository import DocumentRepository
    from docchat.services.change_feed import get_change_feed
    from docchat.services.pubsub import publish_assistant_message

    session_factory = session_factory or get_session_factory()
    chat_repo = ChatRepository(session_factory)
    document_repo = DocumentRepository(session_factory)

    assembler = ContextAssembler(chat_repo, document_repo, storage or get_storage_backend())
    invoker = GenerationInvoker(generation_client or create_chat_llm_client())
    resolver = CitationResolver(document_repo)
    writer = ResultWriter(session_factory, publisher=publisher or publish_assistant_message)

    return ChatWorker(
        feed=feed or get_change_feed(chat_repo),
        chat_repo=chat_repo,
        assembler=assembler,
        invoker=invoker,
        resolver=resolver,
        writer=writer,
    )
