"""
Tests for the completeness validator and its degradation path.
"""

from __future__ import annotations

import asyncio

from tierscope.acquisition import ContentValidator, ProbePathPattern, TryAlternateUrl, UseHeadlessRender
from tierscope.errors import InferenceTimeoutError, ModelOutputError

from .conftest import ScriptedInference


def test_long_content_accepted_without_model_call(settings):
    inference = ScriptedInference()
    verdict = asyncio.run(ContentValidator(settings, inference).validate("x" * 5001, "https://example.org"))

    assert verdict.is_complete
    assert not verdict.used_model
    assert inference.calls == 0


def test_short_content_asks_model_for_plan(settings):
    inference = ScriptedInference(
        [
            {
                "isComplete": "false",
                "reason": "Only a Google Drive embed",
                "suggestions": [
                    {"action": "use_headless_render", "selector": "iframe", "description": "render"},
                    {"action": "try_alternate_url", "url": "https://drive.example.com/file/wp"},
                    {"action": "probe_path_pattern"},
                ],
            }
        ]
    )
    verdict = asyncio.run(
        ContentValidator(settings, inference).validate("<iframe>", "https://example.org/whitepaper")
    )

    assert not verdict.is_complete
    assert verdict.used_model
    assert [type(action) for action in verdict.suggestions] == [UseHeadlessRender, TryAlternateUrl, ProbePathPattern]
    assert "https://example.org/whitepaper" in inference.prompts[0]


def test_fetch_failure_is_never_judged_complete(settings):
    inference = ScriptedInference([{"isComplete": True, "reason": "looks fine"}])
    verdict = asyncio.run(
        ContentValidator(settings, inference).validate("", "https://example.org", failure="HTTP 500")
    )

    assert not verdict.is_complete
    # Model offered nothing usable, so the defaults apply
    assert verdict.suggestions


def test_model_outage_degrades_to_length_heuristic(settings):
    for error in (InferenceTimeoutError("timed out"), ModelOutputError("garbage")):
        validator = ContentValidator(settings, ScriptedInference([error]))

        medium = asyncio.run(validator.validate("y" * 1500, "https://example.org"))
        assert medium.is_complete and not medium.used_model

    tiny = asyncio.run(ContentValidator(settings, None).validate("y" * 200, "https://example.org"))
    assert not tiny.is_complete
    assert {action.action for action in tiny.suggestions} == {"use_headless_render", "probe_path_pattern"}
