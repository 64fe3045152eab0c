"""Reduce oversized markup so it fits within the model's prompt limit.

Two reductions are tried in order. The regex pass only touches attributes,
invisible blocks and whitespace, so it is cheap and cannot lose visible text.
The structural pass rebuilds the document with BeautifulSoup, dropping every
non-visible element and every attribute except link targets. Markup that is
still oversized after both is rejected rather than cut.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal, Optional

from bs4 import BeautifulSoup, Comment

from .config import Settings
from .errors import ContentTooLargeError

logger = logging.getLogger(__name__)

PreprocessMethod = Literal["none", "regex", "structural", "truncated"]

NON_VISIBLE_TAGS = [
    "script",
    "style",
    "noscript",
    "svg",
    "img",
    "link",
    "meta",
    "iframe",
    "video",
    "audio",
    "canvas",
    "embed",
    "object",
    "source",
    "template",
]
# Elements that are meaningful while empty
VOID_KEEP = {"br", "hr"}

INVISIBLE_BLOCK_RE = re.compile(r"<(script|style|noscript|template)\b[^>]*>.*?</\1\s*>", re.I | re.S)
COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
NOISE_ATTR_RE = re.compile(
    r"""\s(?:class|id|style|role|tabindex|data-[\w\-:.]+|on[a-z]+|aria-[\w\-]+|"""
    r"""(?:x|v|ng)-[\w\-:.]+|jsaction|jsname|jscontroller|nonce|integrity|crossorigin)"""
    r"""\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)""",
    re.I,
)
CDN_ATTR_RE = re.compile(
    r"""\s(?:src|srcset|poster)\s*=\s*["']https?://[^"']*"""
    r"""(?:cdn|cloudfront\.net|akamai|fastly|googletagmanager|google-analytics|"""
    r"""doubleclick|gstatic|jsdelivr|unpkg)[^"']*["']""",
    re.I,
)
START_TAG_RE = re.compile(r"<[A-Za-z][^<>]*>")
INTER_TAG_SPACE_RE = re.compile(r">\s+<")
WHITESPACE_RE = re.compile(r"\s{2,}")
MARKUP_SNIFF_RE = re.compile(r"<(?:!doctype|html|head|body|div|p|a|span|section|main)\b", re.I)


@dataclass
class PreprocessOutcome:
    content: str
    method: PreprocessMethod
    original_length: int
    reduced_length: int

    @property
    def was_reduced(self) -> bool:
        return self.method != "none"

    def note(self) -> str:
        """Prompt preamble telling the model what was removed, empty when nothing was."""
        if self.method == "none":
            return ""
        if self.method == "truncated":
            return (
                f"NOTE: This document was {self.original_length:,} characters and has been "
                f"truncated to the first {self.reduced_length:,} characters.\n\n"
            )
        return (
            f"NOTE: This page was {self.original_length:,} characters and has been reduced "
            f"to {self.reduced_length:,} characters by removing scripts, styles, media and "
            "non-essential attributes. All visible text and link targets are preserved.\n\n"
        )


def looks_like_markup(content: str) -> bool:
    return bool(MARKUP_SNIFF_RE.search(content[:5000]))


def _strip_tag_attributes(match: re.Match) -> str:
    tag = CDN_ATTR_RE.sub("", match.group(0))
    return NOISE_ATTR_RE.sub("", tag)


def regex_strip(markup: str) -> str:
    reduced = INVISIBLE_BLOCK_RE.sub("", markup)
    reduced = COMMENT_RE.sub("", reduced)
    # Attributes are only removed inside start tags; text between tags is left alone
    reduced = START_TAG_RE.sub(_strip_tag_attributes, reduced)
    reduced = INTER_TAG_SPACE_RE.sub("> <", reduced)
    return WHITESPACE_RE.sub(" ", reduced).strip()


def structural_strip(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")

    for tag in soup(NON_VISIBLE_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        href = tag.get("href") if tag.name == "a" else None
        tag.attrs = {"href": href} if href else {}

    # Deepest first, so parents emptied by this loop are removed too
    for tag in reversed(soup.find_all(True)):
        if tag.name in VOID_KEEP or tag.attrs:
            continue
        if tag.find("a", href=True) is not None:
            continue
        if not tag.get_text(strip=True):
            tag.decompose()

    return WHITESPACE_RE.sub(" ", str(soup)).strip()


class PreprocessingStage:
    def __init__(self, settings: Settings) -> None:
        self.threshold = settings.preprocess_threshold

    def run(self, content: str, *, is_markup: Optional[bool] = None) -> PreprocessOutcome:
        """Return content that fits the threshold, or raise ContentTooLargeError.

        Content of exactly the threshold length passes through untouched.
        Plain text over the threshold is truncated and labelled as such.
        """
        original_length = len(content)
        if original_length <= self.threshold:
            logger.debug("Content %d chars is within the %d threshold", original_length, self.threshold)
            return PreprocessOutcome(content, "none", original_length, original_length)

        if is_markup is None:
            is_markup = looks_like_markup(content)

        if not is_markup:
            logger.warning(
                "Plain text of %d chars exceeds %d, truncating", original_length, self.threshold
            )
            return PreprocessOutcome(
                content[: self.threshold], "truncated", original_length, self.threshold
            )

        logger.info("Markup of %d chars exceeds %d, stripping attributes", original_length, self.threshold)
        reduced = regex_strip(content)
        logger.info("Regex strip: %d -> %d chars", original_length, len(reduced))
        if len(reduced) <= self.threshold:
            return PreprocessOutcome(reduced, "regex", original_length, len(reduced))

        reduced = structural_strip(reduced)
        logger.info("Structural strip: %d -> %d chars", original_length, len(reduced))
        if len(reduced) <= self.threshold:
            return PreprocessOutcome(reduced, "structural", original_length, len(reduced))

        raise ContentTooLargeError(
            f"Content still {len(reduced):,} characters after reduction "
            f"(limit {self.threshold:,}); needs specialised handling",
            original_length=original_length,
            reduced_length=len(reduced),
        )
