"""Citation resolution and highlight mapping for chat answers.

Two halves:

1. Server side (CitationResolver): pick the document chunks that back a
   generated answer, score them, and store a highlight span per chunk.
2. Render side (compute_highlight / chunk_label / build_citation_views): pure
   functions that turn stored (chunk text, start, end) into display segments.
   The resolver runs its offsets through the same rules before storing them.

Bad offsets never fail a pipeline: a broken highlight degrades to a plain
excerpt of the chunk.
"""
from __future__ import annotations

import asyncio
import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from docchat.config import settings
from docchat.db_models_chat import ChatMessageCitation
from docchat.db_models_documents import DocumentChunk
from docchat.errors import DataIntegrityError, TransientIOError
from docchat.repositories.document_repository import DocumentRepository
from docchat.utils.logging import logger

EXCERPT_CHARS = 220
CONTEXT_WINDOW_CHARS = 80
ELLIPSIS = "…"

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_SENTENCE_RE = re.compile(r"[^.!?\n。！？]+[.!?。！？]*")

_STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "from", "has", "have",
    "in", "is", "it", "its", "of", "on", "or", "that", "the", "this", "to", "was", "were",
    "what", "when", "where", "which", "who", "why", "how", "with", "you", "your", "i",
    "me", "my", "we", "our", "they", "their", "do", "does", "did", "can", "could", "would",
    "should", "will", "about", "into", "than", "then", "there", "these", "those", "so",
})

T = TypeVar("T")


# ============================================================================
# HIGHLIGHT MAPPING (pure)
# ============================================================================

@dataclass(frozen=True)
class HighlightSegments:
    """Display segments for one citation.

    highlighted=True: `pre` + `mark` + `post`, with ellipsis flags telling the
    renderer whether the context windows were cut.
    highlighted=False: `excerpt` is the leading slice of the chunk and
    `post_ellipsis` says whether it was truncated.
    """
    highlighted: bool
    pre: str = ""
    mark: str = ""
    post: str = ""
    excerpt: str = ""
    pre_ellipsis: bool = False
    post_ellipsis: bool = False

    def render(self, mark_open: str = "[", mark_close: str = "]", ellipsis: str = ELLIPSIS) -> str:
        if not self.highlighted:
            return self.excerpt + (ellipsis if self.post_ellipsis else "")
        return (
            (ellipsis if self.pre_ellipsis else "")
            + self.pre
            + mark_open + self.mark + mark_close
            + self.post
            + (ellipsis if self.post_ellipsis else "")
        )


def _is_valid_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _excerpt(text: str) -> HighlightSegments:
    return HighlightSegments(
        highlighted=False,
        excerpt=text[:EXCERPT_CHARS],
        post_ellipsis=len(text) > EXCERPT_CHARS,
    )


def compute_highlight(text: Optional[str], start: Any, end: Any) -> HighlightSegments:
    """Map (start, end) offsets into `text` onto pre/mark/post segments.

    Falls back to a plain leading excerpt when the offsets are missing, not
    finite, negative, empty/inverted (end <= start, also after truncating
    fractional offsets) or start past the text. Otherwise both offsets are
    clamped into [0, len(text)] and up to CONTEXT_WINDOW_CHARS of context are
    kept on each side.
    """
    text = text or ""
    length = len(text)

    if (
        not _is_valid_number(start)
        or not _is_valid_number(end)
        or start < 0
        or end <= start
        or start >= length
    ):
        return _excerpt(text)

    s = min(max(int(start), 0), length)
    e = min(max(int(end), 0), length)
    if e <= s:
        return _excerpt(text)

    pre_start = max(0, s - CONTEXT_WINDOW_CHARS)
    post_end = min(length, e + CONTEXT_WINDOW_CHARS)

    return HighlightSegments(
        highlighted=True,
        pre=text[pre_start:s],
        mark=text[s:e],
        post=text[e:post_end],
        pre_ellipsis=pre_start > 0,
        post_ellipsis=post_end < length,
    )


def validate_offsets(text: str, start: Any, end: Any) -> Tuple[int, int]:
    """Return clamped (start, end) that satisfy 0 <= start < end <= len(text).

    Raises:
        DataIntegrityError: if the offsets cannot produce a highlight
    """
    segments = compute_highlight(text, start, end)
    if not segments.highlighted:
        raise DataIntegrityError(f"Unusable highlight offsets ({start!r}, {end!r}) for text of length {len(text)}")
    s = int(start)
    e = min(int(end), len(text))
    return s, e


def chunk_label(chunk: Optional[DocumentChunk]) -> str:
    """Human label: page number, else slide number, else ordinal chunk index."""
    if chunk is None:
        return "chunk ?"
    if chunk.page_number is not None:
        return f"p.{chunk.page_number}"
    if chunk.slide_number is not None:
        return f"slide {chunk.slide_number}"
    return f"chunk {chunk.chunk_index}"


def order_for_display(
    items: Iterable[T],
    score: Callable[[T], Optional[float]],
    chunk_index: Callable[[T], Optional[int]],
) -> List[T]:
    """Descending similarity (missing score counts as 0), ties by chunk index ascending."""
    def _key(item: T) -> Tuple[float, int]:
        value = score(item)
        if not _is_valid_number(value):
            value = 0.0
        index = chunk_index(item)
        return (-float(value), index if index is not None else math.inf)

    return sorted(items, key=_key)


@dataclass
class CitationView:
    citation: ChatMessageCitation
    chunk: Optional[DocumentChunk]
    label: str
    segments: HighlightSegments


def build_citation_views(
    citations: Sequence[ChatMessageCitation],
    chunks: Dict[str, DocumentChunk],
) -> List[CitationView]:
    """Ordered display list for an assistant message's citations.

    A citation whose chunk is gone is kept with chunk=None and an empty excerpt.
    """
    ordered = order_for_display(
        citations,
        score=lambda c: c.similarity,
        chunk_index=lambda c: chunks[c.chunk_id].chunk_index if c.chunk_id in chunks else None,
    )
    views = []
    for citation in ordered:
        chunk = chunks.get(citation.chunk_id)
        text = chunk.text if chunk is not None else ""
        views.append(CitationView(
            citation=citation,
            chunk=chunk,
            label=chunk_label(chunk),
            segments=compute_highlight(text, citation.start_offset, citation.end_offset),
        ))
    return views


# ============================================================================
# CHUNK SELECTION (server side)
# ============================================================================

def tokenize(text: str) -> List[str]:
    """Lower-cased word tokens without stopwords and single ASCII characters."""
    tokens = []
    for token in _TOKEN_RE.findall((text or "").lower()):
        if token in _STOPWORDS:
            continue
        if len(token) == 1 and token.isascii():
            continue
        tokens.append(token)
    return tokens


def lexical_similarity(query_terms: Counter, text: str) -> float:
    """Cosine similarity between term-frequency vectors, in [0, 1]."""
    if not query_terms:
        return 0.0
    doc_terms = Counter(tokenize(text))
    if not doc_terms:
        return 0.0

    dot = sum(count * doc_terms[term] for term, count in query_terms.items() if term in doc_terms)
    if dot == 0:
        return 0.0
    query_norm = math.sqrt(sum(c * c for c in query_terms.values()))
    doc_norm = math.sqrt(sum(c * c for c in doc_terms.values()))
    return dot / (query_norm * doc_norm)


def best_sentence_span(text: str, query_terms: Counter) -> Optional[Tuple[int, int]]:
    """Offsets of the sentence in `text` sharing the most terms with the query.

    Ties keep the earliest sentence. None when nothing overlaps.
    """
    if not text or not query_terms:
        return None

    best: Optional[Tuple[int, int]] = None
    best_score = 0.0
    for match in _SENTENCE_RE.finditer(text):
        raw = match.group(0)
        stripped = raw.strip()
        if not stripped:
            continue
        start = match.start() + (len(raw) - len(raw.lstrip()))
        end = start + len(stripped)

        sentence_terms = set(tokenize(stripped))
        overlap = sum(query_terms[term] for term in sentence_terms if term in query_terms)
        if overlap == 0:
            continue
        # Prefer dense matches over long sentences that merely contain the terms
        score = overlap / math.sqrt(len(sentence_terms))
        if score > best_score:
            best_score = score
            best = (start, end)
    return best


@dataclass
class ResolvedCitation:
    chunk_id: str
    chunk_index: int
    similarity: Optional[float]
    start_offset: Optional[int]
    end_offset: Optional[int]


class CitationResolver:
    """
    Select evidentiary chunks for an assistant answer.

    Usage:
        resolver = CitationResolver(document_repo)
        citations = await resolver.resolve(document_id, question, answer)
    """

    def __init__(
        self,
        document_repo: DocumentRepository,
        top_k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ):
        self.document_repo = document_repo
        self.top_k = top_k if top_k is not None else settings.citation_top_k
        self.min_similarity = min_similarity if min_similarity is not None else settings.citation_min_similarity

    async def resolve(self, document_id: Optional[str], question: str, answer: str) -> List[ResolvedCitation]:
        """Return citations ordered for display; empty when there is no evidence."""
        if not document_id or self.top_k <= 0:
            return []

        try:
            chunks = await asyncio.to_thread(self.document_repo.list_chunks, document_id)
        except TransientIOError as e:
            logger.warning(
                "Chunk lookup failed; replying without citations",
                extra={"document_id": document_id, "error": str(e)}
            )
            return []

        return self.select(chunks, question, answer)

    def select(self, chunks: Sequence[DocumentChunk], question: str, answer: str) -> List[ResolvedCitation]:
        query_terms = Counter(tokenize(f"{question}\n{answer}"))
        answer_terms = Counter(tokenize(answer)) or query_terms

        scored = []
        for chunk in chunks:
            similarity = lexical_similarity(query_terms, chunk.text)
            if similarity >= self.min_similarity and similarity > 0:
                scored.append((chunk, round(similarity, 6)))

        ranked = order_for_display(
            scored,
            score=lambda item: item[1],
            chunk_index=lambda item: item[0].chunk_index,
        )[: self.top_k]

        citations = []
        for chunk, similarity in ranked:
            start, end = self._highlight_offsets(chunk, answer_terms)
            citations.append(ResolvedCitation(
                chunk_id=chunk.id,
                chunk_index=chunk.chunk_index,
                similarity=similarity,
                start_offset=start,
                end_offset=end,
            ))

        logger.debug(
            f"Resolved {len(citations)} citations from {len(chunks)} chunks",
            extra={"candidates": len(scored)}
        )
        return citations

    def _highlight_offsets(self, chunk: DocumentChunk, answer_terms: Counter) -> Tuple[Optional[int], Optional[int]]:
        span = best_sentence_span(chunk.text, answer_terms)
        if span is None:
            return None, None
        try:
            return validate_offsets(chunk.text, *span)
        except DataIntegrityError as e:
            logger.warning(
                "Dropping highlight offsets",
                extra={"chunk_id": chunk.id, "error": str(e)}
            )
            return None, None
