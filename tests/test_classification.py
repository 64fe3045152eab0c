"""
Tests for bottom-up tier assignment, scoring and the fail-closed rule.
"""

from __future__ import annotations

import asyncio

import pytest

from tierscope.classification import TierClassifier, score_for
from tierscope.config import TIER_SCORE_RANGES
from tierscope.errors import (
    BenchmarkUnavailableError,
    ContentTooLargeError,
    InferenceTimeoutError,
    ModelOutputError,
)
from tierscope.models import EvidenceClaim, ExtractionBundle, Signal, TierComparison

from .conftest import ScriptedInference, make_benchmarks, verdicts

BENCHMARKS = make_benchmarks("signal")


def signal(text: str, category: str = "partnership", context: str = "") -> Signal:
    return Signal(signal=text, category=category, location="homepage", context=context or text)


def bundle_of(*signals: Signal) -> ExtractionBundle:
    return ExtractionBundle(website_status="active", signals=list(signals))


def classify(settings, bundle, *replies) -> tuple:
    inference = ScriptedInference(list(replies))
    result = asyncio.run(TierClassifier(settings, inference).classify(bundle, BENCHMARKS, symbol="KTA"))
    return result, inference


def evaluation(index: int, **steps: str) -> dict:
    return {"index": index, **verdicts(**steps), "reasoning": "test"}


@pytest.mark.parametrize(
    "steps, expected_tier",
    [
        ({"t4": "weaker"}, 4),
        ({"t4": "equal"}, 4),
        ({"t4": "stronger", "t3": "equal"}, 3),
        ({"t4": "stronger", "t3": "weaker"}, 3),
        ({"t4": "stronger", "t3": "stronger", "t2": "not_comparable"}, 2),
        ({"t4": "stronger", "t3": "stronger", "t2": "stronger", "t1": "equal"}, 1),
        # Verdicts above the stopping tier are ignored
        ({"t4": "weaker", "t3": "stronger", "t2": "stronger"}, 4),
    ],
)
def test_bottom_up_fold(settings, steps, expected_tier):
    result, _ = classify(settings, bundle_of(signal("Partnership with Visa")), {"signal_evaluations": [evaluation(1, **steps)]})

    assert result.final_tier == expected_tier
    evaluation_ = result.signal_evaluations[0]
    assert evaluation_.assigned_tier == expected_tier
    assert evaluation_.progression[-1].tier == expected_tier
    assert all(step.compared_to for step in evaluation_.progression)


def test_monotonic_in_evidence_strength(settings):
    """Stronger verdict profiles never produce a weaker tier or a lower score."""
    profiles = [
        {"t4": "weaker"},
        {"t4": "equal"},
        {"t4": "stronger", "t3": "weaker"},
        {"t4": "stronger", "t3": "not_comparable"},
        {"t4": "stronger", "t3": "equal"},
        {"t4": "stronger", "t3": "stronger", "t2": "weaker"},
        {"t4": "stronger", "t3": "stronger", "t2": "equal"},
        {"t4": "stronger", "t3": "stronger", "t2": "stronger", "t1": "weaker"},
        {"t4": "stronger", "t3": "stronger", "t2": "stronger", "t1": "stronger"},
    ]
    outcomes = []
    for steps in profiles:
        result, _ = classify(settings, bundle_of(signal("Partnership with Visa")), {"signal_evaluations": [evaluation(1, **steps)]})
        outcomes.append((result.final_tier, result.final_score))

    tiers = [tier for tier, _ in outcomes]
    scores = [score for _, score in outcomes]
    assert tiers == sorted(tiers, reverse=True)
    assert scores == sorted(scores)


def test_strongest_signal_sets_project_tier(settings):
    weak = [signal(f"Telegram group {i}", "community") for i in range(5)]
    star = signal("Partnership with Visa")
    reply = {
        "signal_evaluations": [evaluation(i + 1, t4="weaker") for i in range(5)]
        + [evaluation(6, t4="stronger", t3="stronger", t2="stronger", t1="equal")],
    }
    result, _ = classify(settings, bundle_of(*weak, star), reply)

    assert result.final_tier == 1
    assert result.tier_name == "ALPHA"
    assert result.strongest_signal.signal == "Partnership with Visa"
    assert result.strongest_signal.benchmark_match == "Partnership with a Fortune 500 company"


def test_evaluations_matched_by_text_when_index_missing(settings):
    reply = {
        "signal_evaluations": [
            {"signal": "listed on kraken", **verdicts(t4="stronger", t3="equal")},
            {"signal": "Telegram group", **verdicts(t4="weaker")},
        ]
    }
    result, _ = classify(settings, bundle_of(signal("Telegram group", "community"), signal("Listed on Kraken", "exchange")), reply)

    assigned = {e.signal: e.assigned_tier for e in result.signal_evaluations}
    assert assigned == {"Telegram group": 4, "Listed on Kraken": 3}


def test_closest_benchmark_substituted_when_model_names_none(settings):
    result, _ = classify(settings, bundle_of(signal("Listed on Kraken", "exchange")), {"signal_evaluations": []})

    step = result.signal_evaluations[0].progression[0]
    assert result.final_tier == 4
    assert step.result == "not_comparable"
    assert step.compared_to == "Has a Telegram group"
    assert step.cross_category
    assert "Closest benchmark substituted" in step.why


def test_named_benchmark_resolved_by_wording(settings):
    raw = evaluation(1, t4="stronger", t3="equal")
    raw["tier_3_comparison"]["compared_to"] = "listed on a centralised exchange"
    result, _ = classify(settings, bundle_of(signal("Listed on Kraken", "exchange")), {"signal_evaluations": [raw]})

    step = result.signal_evaluations[0].progression[1]
    assert step.benchmark_id == "signal-3"
    assert not step.cross_category


@pytest.mark.parametrize(
    "text, category",
    [
        ("Created by Matt Furie, the artist behind Pepe", "community"),
        ("Officially endorsed by a famous rapper", "endorsement"),
        ("Backed by Elon Musk", "investment"),
    ],
)
def test_public_figure_endorsements_capped(settings, text, category):
    reply = {"signal_evaluations": [evaluation(1, t4="stronger", t3="stronger", t2="stronger", t1="stronger")]}
    result, _ = classify(settings, bundle_of(signal(text, category)), reply)

    assert result.final_tier == 3
    assert result.signal_evaluations[0].guardrail_applied
    assert "credibility red flag" in result.signal_evaluations[0].reasoning
    low, high = TIER_SCORE_RANGES[3]
    assert low <= result.final_score <= high


PROMPT_TOO_LARGE = ContentTooLargeError(
    "Prompt of 260000 characters exceeds the 250000 character ceiling",
    original_length=260_000,
    reduced_length=260_000,
)


@pytest.mark.parametrize(
    "error", [InferenceTimeoutError("timed out"), ModelOutputError("not json"), PROMPT_TOO_LARGE]
)
def test_failed_comparison_fails_closed(settings, error):
    result, _ = classify(settings, bundle_of(signal("Partnership with Visa")), error)

    assert result.final_tier == 4
    assert result.final_score == 0
    assert result.evaluation_failed
    assert result.explanation.startswith("Evaluation failed")


def test_no_signals_means_tier_four_without_model_call(settings):
    result, inference = classify(settings, ExtractionBundle(website_status="dead"))

    assert (result.final_tier, result.final_score) == (4, 0)
    assert inference.calls == 0


def test_missing_benchmarks_raise(settings):
    inference = ScriptedInference()
    classifier = TierClassifier(settings, inference)
    with pytest.raises(BenchmarkUnavailableError):
        asyncio.run(classifier.classify(bundle_of(signal("x")), []))


def test_scores_stay_inside_tier_ranges():
    for tier, (low, high) in TIER_SCORE_RANGES.items():
        for strength in (-1.0, 0.0, 0.15, 0.4, 0.75, 1.0, 3.0):
            assert low <= score_for(tier, strength) <= high


def test_tier_and_score_must_agree():
    with pytest.raises(ValueError):
        TierComparison(final_tier=1, final_score=40)


def test_same_tier_peers_raise_score(settings):
    one, _ = classify(
        settings,
        bundle_of(signal("Listed on Kraken", "exchange")),
        {"signal_evaluations": [evaluation(1, t4="stronger", t3="equal")]},
    )
    three, _ = classify(
        settings,
        bundle_of(*(signal(f"Listed on exchange {i}", "exchange") for i in range(3))),
        {"signal_evaluations": [evaluation(i + 1, t4="stronger", t3="equal") for i in range(3)]},
    )
    assert one.final_tier == three.final_tier == 3
    assert three.final_score > one.final_score


def document_bundle() -> ExtractionBundle:
    return ExtractionBundle(
        website_status="active",
        main_claim="Replace SWIFT for cross-border settlement",
        evidence_claims=[
            EvidenceClaim(claim="Mainnet benchmark of 10M TPS", evidence="Independent report"),
            EvidenceClaim(claim="Team from Google", evidence="LinkedIn profiles"),
        ],
    )


def classify_document(settings, reply):
    inference = ScriptedInference([reply])
    return asyncio.run(
        TierClassifier(settings, inference).classify_document(
            document_bundle(), make_benchmarks("claim"), make_benchmarks("evidence"), symbol="KTA"
        )
    )


def test_two_stage_evidence_cannot_exceed_claim_ceiling(settings):
    result = classify_document(
        settings,
        {
            "claim_evaluation": verdicts(t4="stronger", t3="equal"),
            "evidence_evaluations": [
                evaluation(1, t4="stronger", t3="stronger", t2="stronger", t1="equal"),
                evaluation(2, t4="stronger", t3="weaker"),
            ],
        },
    )
    assert (result.claim_ceiling, result.evidence_tier, result.final_tier) == (3, 1, 3)
    assert result.final_score == score_for(3, 1.0)


def test_two_stage_ambition_cannot_outscore_evidence(settings):
    result = classify_document(
        settings,
        {
            "claim_evaluation": verdicts(t4="stronger", t3="stronger", t2="stronger", t1="equal"),
            "evidence_evaluations": [evaluation(1, t4="weaker"), evaluation(2, t4="equal")],
        },
    )
    assert (result.claim_ceiling, result.evidence_tier, result.final_tier) == (1, 4, 4)
    assert result.tier_name == "TRASH"


def test_two_stage_fails_closed_when_prompt_is_rejected(settings):
    result = classify_document(settings, PROMPT_TOO_LARGE)

    assert (result.final_tier, result.final_score) == (4, 0)
    assert result.evaluation_failed
    assert "ceiling" in result.explanation
