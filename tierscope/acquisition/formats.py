"""Payload format detection and text extraction for fetched content."""

from __future__ import annotations

import io
import logging
import re
from typing import Literal, Optional

from bs4 import BeautifulSoup, Comment
from pdfminer.high_level import extract_text as pdf_extract_text

from ..errors import ContentFormatError

logger = logging.getLogger(__name__)
logging.getLogger("pdfminer").setLevel(logging.ERROR)

ContentFormat = Literal["pdf", "markup", "text"]

PDF_MAGIC = b"%PDF"
WHITESPACE_RE = re.compile(r"\s+")
MARKUP_START_RE = re.compile(rb"^\s*(?:\xef\xbb\xbf)?\s*<")
INVISIBLE_TAGS = ["script", "style", "noscript", "template"]


def detect_format(content_type: Optional[str], body: bytes, url: str = "") -> ContentFormat:
    """Decide how to read a payload from its declared type *and* its first bytes.

    Servers routinely mislabel binary payloads, so the magic number wins over
    the declared MIME type, and a declared PDF that starts like markup is
    treated as markup.
    """
    declared = (content_type or "").lower()
    head = body[:1024]

    if head.lstrip()[:4] == PDF_MAGIC:
        return "pdf"

    looks_like_markup = bool(MARKUP_START_RE.match(head))
    claims_pdf = "pdf" in declared or url.lower().split("?", 1)[0].endswith(".pdf")
    if claims_pdf and not looks_like_markup:
        return "pdf"

    if looks_like_markup or "html" in declared or "xml" in declared:
        return "markup"
    return "text"


def decode_bytes(body: bytes, encoding: Optional[str] = None) -> str:
    try:
        return body.decode(encoding or "utf-8")
    except (LookupError, UnicodeDecodeError):
        return body.decode("utf-8", errors="replace")


def extract_pdf_text(body: bytes) -> str:
    """Extract text from a PDF payload; raises ContentFormatError on failure."""
    try:
        text = pdf_extract_text(io.BytesIO(body)) or ""
    except Exception as exc:
        raise ContentFormatError(f"PDF text extraction failed: {exc}") from exc
    return WHITESPACE_RE.sub(" ", text).strip()


def html_to_text(markup: str) -> str:
    """Visible text of a markup document with entities decoded."""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(INVISIBLE_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    text = soup.get_text(separator=" ", strip=True)
    return WHITESPACE_RE.sub(" ", text).strip()
