import asyncio

from docchat.core.llm.llm_client import GenerationInvoker
from docchat.core.rag.citations import CitationResolver
from docchat.core.rag.context_assembler import ContextAssembler, DocumentTextCache
from docchat.core.rag.result_writer import ResultWriter
from docchat.db_models_chat import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING
from docchat.errors import GenerationError
from docchat.services.change_feed import MessageInsertedEvent
from docchat.services.worker import ChatWorker, create_worker

from fakes import HANG, ListFeed, QueueFeed, RecordingPublisher, ScriptedGenerationClient, answer, no_sleep

DOCUMENT_TEXT = (
    "Organelles have roles. The mitochondria is the powerhouse of the cell. "
    "Ribosomes build proteins."
)


def event_for(message) -> MessageInsertedEvent:
    return MessageInsertedEvent.from_message(message)


def build_worker(session_factory, chat_repo, document_repo, storage, client, feed,
                 worker_id="worker-a", concurrency=4, publisher=None, catch_up_on_start=True,
                 generation_timeout=0.05, shutdown_timeout=5.0):
    assembler = ContextAssembler(chat_repo, document_repo, storage, cache=DocumentTextCache(ttl_seconds=0))
    invoker = GenerationInvoker(client, max_retries=2, timeout_seconds=generation_timeout,
                                retry_base_delay=0.01, sleep=no_sleep)
    return ChatWorker(
        feed=feed,
        chat_repo=chat_repo,
        assembler=assembler,
        invoker=invoker,
        resolver=CitationResolver(document_repo, top_k=3, min_similarity=0.05),
        writer=ResultWriter(session_factory, publisher=publisher),
        worker_id=worker_id,
        concurrency=concurrency,
        catch_up_on_start=catch_up_on_start,
        shutdown_timeout_seconds=shutdown_timeout,
    )


def test_unbound_session_gets_reply_without_citations(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session(document_id=None)
    message = seed.message(session.id, "Tell me a fun fact.")
    client = ScriptedGenerationClient([answer("Octopuses have three hearts.")])
    publisher = RecordingPublisher()

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client,
                              ListFeed([event_for(message)]), publisher=publisher)
        await worker.run()

    asyncio.run(scenario())

    reply = chat_repo.find_reply(message.id)
    assert reply is not None
    assert reply.content == "Octopuses have three hearts."
    assert reply.grounded is False
    assert chat_repo.get_citations(reply.id) == []
    assert chat_repo.get_message(message.id).processed is True
    assert publisher.published == [(reply.id, message.id, 0)]


def test_grounded_reply_is_cited(seed, session_factory, chat_repo, document_repo, storage):
    document = seed.document(
        text=DOCUMENT_TEXT,
        chunks=[
            {"text": "Organelles have roles.", "page_number": 1},
            {"text": "The mitochondria is the powerhouse of the cell.", "page_number": 2},
            {"text": "Ribosomes build proteins.", "page_number": 3},
        ],
    )
    session = seed.session(document_id=document.id)
    message = seed.message(session.id, "What is the powerhouse of the cell?")
    client = ScriptedGenerationClient([answer("The mitochondria is the powerhouse of the cell.")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed())
        return await worker.handle_event(event_for(message))

    reply = asyncio.run(scenario())

    assert reply.grounded is True
    assert DOCUMENT_TEXT in client.calls[0]["system"][1]["text"]
    citations = chat_repo.get_citations(reply.id)
    chunks = document_repo.get_chunks([c.chunk_id for c in citations])
    assert [chunks[c.chunk_id].page_number for c in citations] == [2]
    assert citations[0].start_offset == 0
    assert citations[0].end_offset == len("The mitochondria is the powerhouse of the cell.")


def test_redelivered_events_produce_one_reply(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    message = seed.message(session.id, "Only answer me once")
    client = ScriptedGenerationClient([answer("Once.")])
    events = [event_for(message)] * 3

    async def scenario():
        workers = [
            build_worker(session_factory, chat_repo, document_repo, storage, client,
                         ListFeed(events), worker_id=f"worker-{i}")
            for i in range(3)
        ]
        await asyncio.gather(*(w.run() for w in workers))

    asyncio.run(scenario())

    assert chat_repo.count_replies(message.id) == 1
    assert len(client.calls) == 1


def test_timeouts_then_success_yield_single_reply(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    message = seed.message(session.id, "Slow question")
    client = ScriptedGenerationClient([HANG, HANG, answer("Finally.")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed())
        return await worker.handle_event(event_for(message))

    reply = asyncio.run(scenario())

    assert reply.content == "Finally."
    assert len(client.calls) == 3
    assert chat_repo.count_replies(message.id) == 1


def test_failure_is_isolated_and_marked(seed, session_factory, chat_repo, document_repo, storage):
    bad_session = seed.session(user_id="user-1")
    good_session = seed.session(user_id="user-2")
    bad = seed.message(bad_session.id, "boom")
    good = seed.message(good_session.id, "fine question")

    def responder(messages):
        if messages[-1]["content"] == "boom":
            return GenerationError("rejected", stage="generation")
        return answer("fine answer")

    client = ScriptedGenerationClient(responder=responder)

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client,
                              ListFeed([event_for(bad), event_for(good)]), catch_up_on_start=False)
        await worker.run()

    asyncio.run(scenario())

    failed = chat_repo.get_message(bad.id)
    assert failed.status == STATUS_FAILED
    assert failed.processed is False
    assert failed.error_type == "generation_error"
    assert chat_repo.count_replies(bad.id) == 0

    assert chat_repo.get_message(good.id).status == STATUS_COMPLETED
    assert chat_repo.find_reply(good.id).content == "fine answer"


def test_missing_session_fails_with_configuration_error(seed, session_factory, chat_repo, document_repo, storage):
    orphan = seed.message("missing-session", "Anyone there?")
    client = ScriptedGenerationClient([answer("unused")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed())
        return await worker.handle_event(event_for(orphan))

    assert asyncio.run(scenario()) is None
    stored = chat_repo.get_message(orphan.id)
    assert stored.status == STATUS_FAILED
    assert stored.error_type == "configuration_error"
    assert client.calls == []


def test_session_replies_follow_claim_order(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    first = seed.message(session.id, "first question")
    second = seed.message(session.id, "second question")
    client = ScriptedGenerationClient(responder=lambda messages: answer(f"answer to {messages[-1]['content']}"))

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client,
                              ListFeed([event_for(first), event_for(second)]), catch_up_on_start=False)
        await worker.run()

    asyncio.run(scenario())

    assert client.questions == ["first question", "second question"]
    # The second request sees the first turn as history
    assert client.calls[1]["messages"] == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "answer to first question"},
        {"role": "user", "content": "second question"},
    ]
    first_reply = chat_repo.find_reply(first.id)
    second_reply = chat_repo.find_reply(second.id)
    assert first_reply.created_at < second_reply.created_at


def test_catch_up_processes_messages_inserted_while_offline(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    messages = [seed.message(session.id, f"question {i}") for i in range(3)]
    client = ScriptedGenerationClient([answer("caught up")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed())
        await worker.run()

    asyncio.run(scenario())

    for message in messages:
        assert chat_repo.count_replies(message.id) == 1


def test_stop_drains_in_flight_work(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    message = seed.message(session.id, "Answer before shutdown")
    client = ScriptedGenerationClient([answer("Done.")])

    async def scenario():
        feed = QueueFeed()
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, feed,
                              catch_up_on_start=False)
        run_task = asyncio.create_task(worker.run())
        feed.push(event_for(message))
        for _ in range(200):
            if chat_repo.find_reply(message.id) is not None:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(run_task, timeout=5)

    asyncio.run(scenario())

    assert chat_repo.count_replies(message.id) == 1


def test_create_worker_wires_injected_dependencies(session_factory, storage):
    client = ScriptedGenerationClient([answer("x")])
    feed = ListFeed()

    worker = create_worker(session_factory, generation_client=client, feed=feed, storage=storage,
                           publisher=RecordingPublisher())

    assert worker.feed is feed
    assert worker.invoker.client is client
    assert worker.assembler.storage is storage


def test_catch_up_drains_backlog_larger_than_one_page(seed, session_factory, chat_repo, document_repo, storage):
    messages = [seed.message(seed.session(user_id=f"user-{i}").id, f"question {i}") for i in range(60)]
    client = ScriptedGenerationClient([answer("caught up")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed())
        await worker.run()

    asyncio.run(scenario())

    assert sum(chat_repo.count_replies(message.id) for message in messages) == 60
    assert chat_repo.list_pending_user_messages(limit=100) == []


def test_catch_up_pages_through_small_batches(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    messages = [seed.message(session.id, f"question {i}") for i in range(7)]
    client = ScriptedGenerationClient([answer("paged")])

    async def scenario():
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, ListFeed(),
                              catch_up_on_start=False)
        worker.catch_up_batch_size = 3
        dispatched = await worker.catch_up()
        await worker.drain()
        return dispatched

    dispatched = asyncio.run(scenario())

    assert dispatched == 7
    for message in messages:
        assert chat_repo.count_replies(message.id) == 1


def test_stop_releases_claim_of_unfinished_work(seed, session_factory, chat_repo, document_repo, storage):
    session = seed.session()
    message = seed.message(session.id, "Never answered")
    client = ScriptedGenerationClient([HANG])

    async def scenario():
        feed = QueueFeed()
        worker = build_worker(session_factory, chat_repo, document_repo, storage, client, feed,
                              catch_up_on_start=False, generation_timeout=60, shutdown_timeout=0.05)
        run_task = asyncio.create_task(worker.run())
        feed.push(event_for(message))
        for _ in range(200):
            if client.calls:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(run_task, timeout=5)

    asyncio.run(scenario())

    stored = chat_repo.get_message(message.id)
    assert stored.status == STATUS_PENDING
    assert stored.claimed_by is None
    assert stored.attempts == 1
    assert chat_repo.count_replies(message.id) == 0
    assert chat_repo.claim_message(message.id, "worker-b") is not None
