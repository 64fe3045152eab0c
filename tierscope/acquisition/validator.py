from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import Settings
from ..errors import PipelineError
from .recovery import RecoveryAction, default_actions, parse_recovery_actions

logger = logging.getLogger(__name__)

PREVIEW_CHARACTERS = 500

VALIDATION_PROMPT = """Judge whether this fetch result contains the COMPLETE content of a crypto
project's website or whitepaper, and if not, propose how to retrieve it.

URL: {url}
Content length: {length} chars
Fetch failure: {failure}
First {preview_chars} chars:
{preview}

Look for clues such as "Download PDF" links, iframe or Google Drive embeds,
"Loading..." placeholders, JavaScript-only shells, or error pages.

Return JSON:
{{
  "isComplete": true/false,
  "reason": "why this is/isn't complete",
  "suggestions": [
    {{
      "action": "use_headless_render" | "try_alternate_url" | "probe_path_pattern",
      "description": "what this will do",
      "url": "absolute http(s) URL (required for try_alternate_url)",
      "selector": "CSS selector to wait for (use_headless_render only)",
      "patterns": ["/path.pdf"]
    }}
  ]
}}

When the content is incomplete, ALWAYS give 2-3 suggestions of DIFFERENT action types."""


@dataclass
class ValidationVerdict:
    is_complete: bool
    reason: str
    suggestions: List[RecoveryAction] = field(default_factory=list)
    used_model: bool = False


class ContentValidator:
    """Decide whether fetched content is complete enough to analyse.

    Long content is accepted on length alone. Anything shorter, or an explicit
    fetch failure, goes to the model for a verdict plus recovery suggestions;
    if that call fails the length heuristic decides on its own.
    """

    def __init__(self, settings: Settings, inference=None) -> None:
        self.settings = settings
        self.inference = inference

    async def validate(
        self, content: str, url: str, *, failure: Optional[str] = None
    ) -> ValidationVerdict:
        length = len(content or "")
        if failure is None and length > self.settings.complete_content_chars:
            return ValidationVerdict(
                is_complete=True,
                reason=f"Content appears complete (>{self.settings.complete_content_chars} chars of text)",
            )

        if self.inference is not None:
            try:
                return await self._judge(content or "", url, failure)
            except PipelineError as exc:
                logger.warning("Completeness judgment unavailable for %s: %s", url, exc)

        return self._heuristic(length, failure)

    async def _judge(self, content: str, url: str, failure: Optional[str]) -> ValidationVerdict:
        prompt = VALIDATION_PROMPT.format(
            url=url,
            length=len(content),
            failure=failure or "none",
            preview_chars=PREVIEW_CHARACTERS,
            preview=content[:PREVIEW_CHARACTERS] or "(empty)",
        )
        data = await self.inference.complete_json(prompt, timeout=min(60.0, self.settings.llm_timeout))

        raw_complete = data.get("isComplete", data.get("is_complete", False))
        is_complete = raw_complete is True or str(raw_complete).strip().lower() == "true"
        # The model cannot call a failed fetch complete
        if failure is not None:
            is_complete = False
        suggestions = []
        if not is_complete:
            suggestions = parse_recovery_actions(data.get("suggestions")) or default_actions()

        verdict = ValidationVerdict(
            is_complete=is_complete,
            reason=str(data.get("reason") or "model judgment"),
            suggestions=suggestions,
            used_model=True,
        )
        logger.info(
            "Model judged %s %s (%d suggestions): %s",
            url,
            "complete" if verdict.is_complete else "incomplete",
            len(verdict.suggestions),
            verdict.reason,
        )
        return verdict

    def _heuristic(self, length: int, failure: Optional[str]) -> ValidationVerdict:
        threshold = self.settings.heuristic_complete_chars
        is_complete = failure is None and length > threshold
        return ValidationVerdict(
            is_complete=is_complete,
            reason=f"Content length: {length} chars (heuristic)",
            suggestions=[] if is_complete else default_actions(),
        )
