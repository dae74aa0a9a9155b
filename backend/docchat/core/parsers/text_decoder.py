# backend/docchat/core/parsers/text_decoder.py
"""Turn stored document bytes into plain text for the chat context.

PDFs go through PyMuPDF page by page; everything else is treated as
UTF-8 text (BOM stripped, undecodable bytes replaced).
"""
from typing import Optional

import fitz  # PyMuPDF

from docchat.utils.logging import logger

PDF_MAGIC = b"%PDF-"


def is_pdf(data: bytes, mime_type: Optional[str] = None) -> bool:
    if mime_type and mime_type.lower() == "application/pdf":
        return True
    return data[:1024].lstrip().startswith(PDF_MAGIC)


def extract_pdf_text(data: bytes) -> str:
    """Extract text from every page of an in-memory PDF."""
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        text_parts = [page.get_text() for page in doc]
    finally:
        doc.close()
    return "\n\n".join(part.strip() for part in text_parts if part.strip())


def decode_document(data: bytes, mime_type: Optional[str] = None) -> str:
    """Decode raw document bytes to text. Never raises on undecodable input."""
    if not data:
        return ""

    if is_pdf(data, mime_type):
        try:
            return extract_pdf_text(data)
        except (RuntimeError, ValueError) as e:
            # Damaged PDF: fall through to the plain-text path rather than drop the context
            logger.warning("PDF text extraction failed, decoding as text", extra={"error": str(e)})

    return data.decode("utf-8-sig", errors="replace")
