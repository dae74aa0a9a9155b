import asyncio
from collections import Counter

import pytest

from docchat.core.rag.citations import (
    CitationResolver,
    best_sentence_span,
    build_citation_views,
    lexical_similarity,
    order_for_display,
    tokenize,
)
from docchat.db_models_chat import ChatMessageCitation
from docchat.db_models_documents import DocumentChunk

QUESTION = "What is the powerhouse of the cell?"
ANSWER = "The mitochondria is the powerhouse of the cell. It produces ATP through respiration."

CHUNKS = [
    "Cats sleep for most of the day. They groom often.",
    "Organelles have roles. The mitochondria is the powerhouse of the cell. Ribosomes build proteins.",
    "Cellular respiration produces ATP inside the mitochondria.",
    "The French Revolution began in 1789.",
]


def make_chunks():
    return [
        DocumentChunk(id=f"chunk-{i}", document_id="doc-1", chunk_index=i, text=text, page_number=i + 1)
        for i, text in enumerate(CHUNKS)
    ]


def citation(chunk_id, similarity, start=None, end=None):
    return ChatMessageCitation(
        message_id="reply-1", chunk_id=chunk_id, similarity=similarity, start_offset=start, end_offset=end
    )


def test_views_are_ordered_by_similarity_with_missing_as_zero():
    chunks = {c.id: c for c in make_chunks()}
    citations = [citation("chunk-0", 0.3), citation("chunk-1", None), citation("chunk-2", 0.9)]

    views = build_citation_views(citations, chunks)

    assert [v.citation.similarity for v in views] == [0.9, 0.3, None]
    assert [v.label for v in views] == ["p.3", "p.1", "p.2"]


def test_equal_similarity_breaks_ties_by_chunk_index():
    chunks = {c.id: c for c in make_chunks()}
    citations = [citation("chunk-3", 0.5), citation("chunk-1", 0.5), citation("chunk-2", None), citation("chunk-0", 0.0)]

    views = build_citation_views(citations, chunks)

    assert [v.chunk.chunk_index for v in views] == [1, 3, 0, 2]


def test_dangling_chunk_reference_is_kept_without_text():
    views = build_citation_views([citation("gone", 0.7, 0, 5)], {})
    assert len(views) == 1
    assert views[0].chunk is None
    assert views[0].label == "chunk ?"
    assert views[0].segments.highlighted is False
    assert views[0].segments.excerpt == ""


def test_view_segments_use_stored_offsets():
    chunks = {c.id: c for c in make_chunks()}
    text = chunks["chunk-1"].text
    start = text.index("The mitochondria")
    end = text.index("Ribosomes") - 1

    views = build_citation_views([citation("chunk-1", 0.8, start, end)], chunks)

    segments = views[0].segments
    assert segments.highlighted is True
    assert segments.mark == "The mitochondria is the powerhouse of the cell."
    assert segments.pre == "Organelles have roles. "


def test_order_for_display_with_plain_tuples():
    items = [("a", 0.2, 5), ("b", None, 1), ("c", 0.2, 2)]
    ordered = order_for_display(items, score=lambda i: i[1], chunk_index=lambda i: i[2])
    assert [i[0] for i in ordered] == ["c", "a", "b"]


def test_tokenize_drops_stopwords_and_punctuation():
    assert tokenize("What is the Powerhouse of the cell?") == ["powerhouse", "cell"]


def test_lexical_similarity_bounds():
    terms = Counter(tokenize("mitochondria powerhouse"))
    assert lexical_similarity(terms, "mitochondria powerhouse") == pytest.approx(1.0)
    assert lexical_similarity(terms, "the french revolution") == 0.0
    assert lexical_similarity(Counter(), "anything") == 0.0


def test_best_sentence_span_finds_matching_sentence():
    text = CHUNKS[1]
    span = best_sentence_span(text, Counter(tokenize("mitochondria powerhouse")))
    assert span is not None
    assert text[span[0]:span[1]] == "The mitochondria is the powerhouse of the cell."


def test_best_sentence_span_none_without_overlap():
    assert best_sentence_span(CHUNKS[3], Counter(tokenize("mitochondria"))) is None


def test_select_ranks_relevant_chunks_and_stores_offsets():
    resolver = CitationResolver(document_repo=None, top_k=2, min_similarity=0.05)
    chunks = make_chunks()

    citations = resolver.select(chunks, QUESTION, ANSWER)

    assert [c.chunk_id for c in citations] == ["chunk-1", "chunk-2"]
    assert citations[0].similarity >= citations[1].similarity
    for resolved in citations:
        text = CHUNKS[resolved.chunk_index]
        assert 0 <= resolved.start_offset < resolved.end_offset <= len(text)
    first = citations[0]
    assert CHUNKS[1][first.start_offset:first.end_offset] == "The mitochondria is the powerhouse of the cell."


def test_select_respects_minimum_similarity():
    resolver = CitationResolver(document_repo=None, top_k=5, min_similarity=0.99)
    assert resolver.select(make_chunks(), QUESTION, ANSWER) == []


def test_select_returns_nothing_for_unrelated_answer():
    resolver = CitationResolver(document_repo=None, top_k=3, min_similarity=0.0)
    assert resolver.select(make_chunks(), "Who painted it?", "Vermeer painted it.") == []


def test_resolve_without_document_is_empty():
    resolver = CitationResolver(document_repo=None, top_k=3)
    assert asyncio.run(resolver.resolve(None, QUESTION, ANSWER)) == []


def test_resolve_reads_chunks_from_repository(seed, document_repo):
    document = seed.document(chunks=CHUNKS)
    resolver = CitationResolver(document_repo, top_k=3, min_similarity=0.05)

    citations = asyncio.run(resolver.resolve(document.id, QUESTION, ANSWER))

    assert len(citations) == 2
    assert {c.chunk_index for c in citations} == {1, 2}
