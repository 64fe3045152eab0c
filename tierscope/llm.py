from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

from pydantic_ai import Agent
from pydantic_ai.models import Model
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.providers.google import GoogleProvider

from .config import Settings
from .errors import (
    ContentTooLargeError,
    InferenceError,
    InferenceTimeoutError,
    ModelOutputError,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert crypto project analyst. You read websites and whitepapers,
extract verifiable evidence, and compare that evidence against curated benchmarks.

Rules that apply to every task:
  • Respond with a SINGLE JSON object and nothing else - no prose, no markdown.
  • Quote source text verbatim when asked for evidence or context.
  • Never invent partnerships, investors, or endorsements that the content does not state.
  • Use JSON booleans (true/false) and JSON null."""

FENCE_RE = re.compile(r"```(?:json|JSON)?\s*")
_decoder = json.JSONDecoder()


def parse_model_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse an untrusted model response into a JSON object.

    Tries the payload as-is first. Failing that, markdown fences are removed and
    decoding restarts at the first ``{``; anything after the object is ignored.
    Raises ModelOutputError if no object can be recovered.
    """
    raw = (text or "").strip()
    if not raw:
        raise ModelOutputError("Model returned an empty response")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        cleaned = FENCE_RE.sub("", raw).strip()
        start = cleaned.find("{")
        if start < 0:
            raise ModelOutputError("No JSON object found in model response", preview=raw)
        if start > 0:
            logger.debug("Skipping %d characters before the first brace", start)
        try:
            parsed, _ = _decoder.raw_decode(cleaned, start)
        except json.JSONDecodeError as exc:
            raise ModelOutputError(
                f"Failed to parse model response: {exc.msg}", preview=raw
            ) from exc

    if not isinstance(parsed, dict):
        raise ModelOutputError(
            f"Expected a JSON object, got {type(parsed).__name__}", preview=raw
        )
    return parsed


def build_model(settings: Settings) -> Model:
    settings.require("google_api_key")
    provider = GoogleProvider(api_key=settings.google_api_key)
    return GoogleModel(settings.llm_model, provider=provider)


class InferenceClient:
    """Single-turn access to the language model with a fixed system role."""

    def __init__(self, settings: Settings, *, model: Optional[Model] = None) -> None:
        self.settings = settings
        self.agent = Agent(
            model or build_model(settings),
            output_type=str,
            system_prompt=SYSTEM_PROMPT,
            model_settings={
                "max_tokens": 8192,
                "temperature": 0.3,
            },
        )

    async def complete(self, prompt: str, *, timeout: Optional[float] = None) -> str:
        """Send one fully-rendered prompt and return the raw response text."""
        if len(prompt) > self.settings.prompt_ceiling:
            raise ContentTooLargeError(
                f"Prompt of {len(prompt)} characters exceeds the "
                f"{self.settings.prompt_ceiling} character ceiling",
                original_length=len(prompt),
                reduced_length=len(prompt),
            )

        timeout = timeout or self.settings.llm_timeout
        try:
            result = await asyncio.wait_for(self.agent.run(prompt), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("LLM call timed out after %.1fs", timeout)
            raise InferenceTimeoutError(
                f"LLM call exceeded timeout of {timeout} seconds."
            ) from exc
        except Exception as exc:
            logger.exception("LLM call failed")
            raise InferenceError(f"LLM call failed: {exc}") from exc

        return result.output

    async def complete_json(self, prompt: str, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        text = await self.complete(prompt, timeout=timeout)
        logger.debug("LLM response first 200 chars: %s", text[:200])
        return parse_model_json(text)
