"""Content acquisition: fetch, detect, render, validate and recover."""

from .fetcher import DEFAULT_HEADERS, ContentFetcher
from .formats import detect_format, extract_pdf_text, html_to_text
from .recovery import (
    ProbePathPattern,
    RecoveryAction,
    TryAlternateUrl,
    UseHeadlessRender,
    default_actions,
    parse_recovery_actions,
)
from .rendering import RenderClient
from .validator import ContentValidator, ValidationVerdict

__all__ = [
    "ContentFetcher",
    "ContentValidator",
    "DEFAULT_HEADERS",
    "ProbePathPattern",
    "RecoveryAction",
    "RenderClient",
    "TryAlternateUrl",
    "UseHeadlessRender",
    "ValidationVerdict",
    "default_actions",
    "detect_format",
    "extract_pdf_text",
    "html_to_text",
    "parse_recovery_actions",
]
