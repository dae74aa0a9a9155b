# backend/docchat/core/parsers/__init__.py
"""Document text decoding"""
from .text_decoder import decode_document, extract_pdf_text, is_pdf

__all__ = [
    "decode_document",
    "extract_pdf_text",
    "is_pdf",
]
