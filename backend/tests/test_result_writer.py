import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from docchat.core.rag.citations import ResolvedCitation
from docchat.core.rag.context_assembler import AssembledContext
from docchat.core.rag.result_writer import ResultWriter
from docchat.db_models_chat import ROLE_ASSISTANT, STATUS_COMPLETED, STATUS_PROCESSING
from docchat.errors import DuplicateClaimError, TransientIOError

from fakes import RecordingPublisher, answer, no_sleep

WORKER = "worker-a"


def claimed_message(seed, chat_repo, document_id=None):
    session = seed.session(document_id=document_id)
    message = seed.message(session.id, "What is the powerhouse of the cell?")
    return chat_repo.claim_message(message.id, WORKER)


def resolved(chunk, similarity=0.5, start=None, end=None):
    return ResolvedCitation(
        chunk_id=chunk.id, chunk_index=chunk.chunk_index, similarity=similarity,
        start_offset=start, end_offset=end
    )


def context_for(message, document_id=None):
    return AssembledContext(
        session_id=message.session_id, document_id=document_id, text="doc", grounded=document_id is not None
    )


class FlakyCitationWriter(ResultWriter):
    """Fails the citation insert a given number of times."""

    def __init__(self, *args, failures=1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def _insert_citations(self, db, reply, citations):
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("INSERT INTO chat_message_citations", {}, Exception("disk I/O error"))
        return super()._insert_citations(db, reply, citations)


def test_write_persists_reply_citations_and_flips_source(seed, session_factory, chat_repo, document_repo):
    document = seed.document(chunks=["alpha text", "beta text"])
    chunks = document_repo.list_chunks(document.id)
    source = claimed_message(seed, chat_repo, document.id)
    publisher = RecordingPublisher()
    writer = ResultWriter(session_factory, publisher=publisher)

    reply = asyncio.run(writer.write(
        source, answer("It is the mitochondria."),
        [resolved(chunks[0], 0.9, 0, 5), resolved(chunks[1], None)],
        context_for(source, document.id), WORKER
    ))

    assert reply.role == ROLE_ASSISTANT
    assert reply.processed is True
    assert reply.reply_to_id == source.id
    assert reply.tokens_in == 120
    assert reply.tokens_out == 40
    assert reply.grounded is True
    stored_source = chat_repo.get_message(source.id)
    assert stored_source.processed is True
    assert stored_source.status == STATUS_COMPLETED
    assert len(chat_repo.get_citations(reply.id)) == 2
    assert publisher.published == [(reply.id, source.id, 2)]


def test_repeated_write_does_not_duplicate_reply(seed, session_factory, chat_repo):
    source = claimed_message(seed, chat_repo)
    writer = ResultWriter(session_factory)

    asyncio.run(writer.write(source, answer("first"), [], context_for(source), WORKER))
    with pytest.raises(DuplicateClaimError):
        asyncio.run(writer.write(source, answer("second"), [], context_for(source), WORKER))

    assert chat_repo.count_replies(source.id) == 1
    assert chat_repo.find_reply(source.id).content == "first"


def test_recovers_from_reply_written_without_citations(seed, session_factory, chat_repo, document_repo):
    document = seed.document(chunks=["alpha text"])
    chunk = document_repo.list_chunks(document.id)[0]
    source = claimed_message(seed, chat_repo, document.id)
    # An earlier attempt committed the assistant message but nothing else
    earlier = seed.message(
        source.session_id, "It is the mitochondria.", role=ROLE_ASSISTANT,
        status=STATUS_COMPLETED, processed=True, reply_to_id=source.id
    )

    reply = asyncio.run(ResultWriter(session_factory).write(
        source, answer("It is the mitochondria."), [resolved(chunk, 0.7, 0, 5)],
        context_for(source, document.id), WORKER
    ))

    assert reply.id == earlier.id
    assert chat_repo.count_replies(source.id) == 1
    assert len(chat_repo.get_citations(reply.id)) == 1
    assert chat_repo.get_message(source.id).processed is True


def test_failed_citation_insert_rolls_back_and_retries(seed, session_factory, chat_repo, document_repo):
    document = seed.document(chunks=["alpha text"])
    chunk = document_repo.list_chunks(document.id)[0]
    source = claimed_message(seed, chat_repo, document.id)
    writer = FlakyCitationWriter(session_factory, failures=1, max_retries=1, sleep=no_sleep)

    reply = asyncio.run(writer.write(
        source, answer("ok"), [resolved(chunk, 0.7, 0, 5)], context_for(source, document.id), WORKER
    ))

    assert chat_repo.count_replies(source.id) == 1
    assert [c.chunk_id for c in chat_repo.get_citations(reply.id)] == [chunk.id]


def test_exhausted_write_leaves_no_partial_reply(seed, session_factory, chat_repo, document_repo):
    document = seed.document(chunks=["alpha text"])
    chunk = document_repo.list_chunks(document.id)[0]
    source = claimed_message(seed, chat_repo, document.id)
    citations = [resolved(chunk, 0.7, 0, 5)]
    failing = FlakyCitationWriter(session_factory, failures=5, max_retries=0, sleep=no_sleep)

    with pytest.raises(TransientIOError):
        asyncio.run(failing.write(source, answer("ok"), citations, context_for(source, document.id), WORKER))

    assert chat_repo.count_replies(source.id) == 0
    assert chat_repo.get_message(source.id).status == STATUS_PROCESSING

    asyncio.run(ResultWriter(session_factory).write(
        source, answer("ok"), citations, context_for(source, document.id), WORKER
    ))
    assert chat_repo.count_replies(source.id) == 1


def test_duplicate_citations_are_written_once(seed, session_factory, chat_repo, document_repo):
    document = seed.document(chunks=["alpha text"])
    chunk = document_repo.list_chunks(document.id)[0]
    source = claimed_message(seed, chat_repo, document.id)

    reply = asyncio.run(ResultWriter(session_factory).write(
        source, answer("ok"), [resolved(chunk, 0.7, 0, 5), resolved(chunk, 0.7, 0, 5)],
        context_for(source, document.id), WORKER
    ))

    assert len(chat_repo.get_citations(reply.id)) == 1


def test_write_without_claim_is_rejected(seed, session_factory, chat_repo):
    source = claimed_message(seed, chat_repo)

    with pytest.raises(DuplicateClaimError):
        asyncio.run(ResultWriter(session_factory).write(
            source, answer("ok"), [], context_for(source), "some-other-worker"
        ))

    assert chat_repo.count_replies(source.id) == 0
    assert chat_repo.get_message(source.id).processed is False
