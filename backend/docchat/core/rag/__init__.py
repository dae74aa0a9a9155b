# backend/docchat/core/rag/__init__.py
"""
Document chat pipeline stages.

Main components:
- ContextAssembler: session -> bound document text
- PromptBuilder: system blocks and conversation turns for generation
- CitationResolver / compute_highlight: evidence chunks and highlight segments
- ResultWriter (result_writer module): exactly-once reply persistence
"""

from docchat.core.rag.citations import CitationResolver, build_citation_views, chunk_label, compute_highlight
from docchat.core.rag.context_assembler import ContextAssembler
from docchat.core.rag.prompt_builder import PromptBuilder

__all__ = [
    "CitationResolver",
    "ContextAssembler",
    "PromptBuilder",
    "build_citation_views",
    "chunk_label",
    "compute_highlight",
]
