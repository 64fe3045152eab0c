"""Recovery actions an LLM may propose when fetched content is incomplete.

Actions are a closed, tagged set. Anything the model proposes outside that
set is dropped before dispatch, so model output cannot select arbitrary code
paths.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)

MAX_RECOVERY_ACTIONS = 3

DEFAULT_PATH_PATTERNS: Tuple[str, ...] = (
    "/whitepaper.pdf",
    "/wp.pdf",
    "/docs/whitepaper.pdf",
    "/assets/whitepaper.pdf",
    "/static/whitepaper.pdf",
)

# Tags older prompts used for the same three actions
LEGACY_TAGS = {
    "use_browserless": "use_headless_render",
    "headless_render": "use_headless_render",
    "render": "use_headless_render",
    "try_url": "try_alternate_url",
    "alternate_url": "try_alternate_url",
    "search_pattern": "probe_path_pattern",
    "probe_paths": "probe_path_pattern",
}


def _http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if not value.lower().startswith(("http://", "https://")):
        raise ValueError(f"Only http(s) URLs can be fetched, got {value!r}")
    return value


class UseHeadlessRender(BaseModel):
    action: Literal["use_headless_render"] = "use_headless_render"
    description: str = ""
    selector: Optional[str] = None
    url: Optional[str] = None

    @field_validator("url", mode="before")
    @classmethod
    def _check_url(cls, value):
        return _http_url(value)


class TryAlternateUrl(BaseModel):
    action: Literal["try_alternate_url"] = "try_alternate_url"
    description: str = ""
    url: str

    @field_validator("url", mode="before")
    @classmethod
    def _check_url(cls, value):
        return _http_url(value)


class ProbePathPattern(BaseModel):
    action: Literal["probe_path_pattern"] = "probe_path_pattern"
    description: str = ""
    patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_PATH_PATTERNS))

    @field_validator("patterns", mode="before")
    @classmethod
    def _patterns(cls, value):
        if not value:
            return list(DEFAULT_PATH_PATTERNS)
        if isinstance(value, str):
            value = [value]
        cleaned = []
        for item in value:
            item = str(item).strip()
            if item and item.startswith("/") and "://" not in item:
                cleaned.append(item)
        return cleaned[: len(DEFAULT_PATH_PATTERNS)] or list(DEFAULT_PATH_PATTERNS)


RecoveryAction = Annotated[
    Union[UseHeadlessRender, TryAlternateUrl, ProbePathPattern],
    Field(discriminator="action"),
]

_action_adapter: TypeAdapter = TypeAdapter(RecoveryAction)


def parse_recovery_actions(raw: Any, *, limit: int = MAX_RECOVERY_ACTIONS) -> List[RecoveryAction]:
    """Validate model-proposed suggestions, skipping unknown or malformed ones."""
    if not isinstance(raw, list):
        return []

    actions: List[RecoveryAction] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        payload = dict(item)
        tag = str(payload.get("action", "")).strip().lower()
        payload["action"] = LEGACY_TAGS.get(tag, tag)
        try:
            actions.append(_action_adapter.validate_python(payload))
        except ValidationError as exc:
            logger.warning("Skipping recovery suggestion %r: %s", tag or item, exc.errors()[0]["msg"])
            continue
        if len(actions) >= limit:
            break
    return actions


def default_actions(selector: Optional[str] = None) -> List[RecoveryAction]:
    """Suggestions used when no model judgment is available."""
    return [
        UseHeadlessRender(description="Render the page in a headless browser", selector=selector),
        ProbePathPattern(description="Probe conventional document paths"),
    ]


def describe(actions: Iterable[RecoveryAction]) -> List[str]:
    return [f"{a.action}: {a.description}".rstrip(": ") for a in actions]
