"""Phase 2: benchmark-relative tier assignment.

The model is asked for per-tier verdicts only. The tier itself is computed here
by folding those verdicts bottom-up, so the model cannot hand back a tier that
contradicts its own comparisons.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import TIER_SCORE_RANGES, Settings
from .errors import BenchmarkUnavailableError, ContentTooLargeError, InferenceError
from .models import (
    TIER_NAMES,
    Benchmark,
    EvidenceClaim,
    ExtractionBundle,
    Signal,
    SignalCategory,
    SignalEvaluation,
    StrongestSignal,
    TierComparison,
    TierStepComparison,
)

logger = logging.getLogger(__name__)

VERDICT_STRENGTH = {
    "stronger": 1.0,
    "equal": 0.75,
    "not_comparable": 0.4,
    "weaker": 0.15,
}
SAME_TIER_BONUS = 0.05
TOKEN_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = {"the", "a", "an", "and", "or", "of", "to", "in", "on", "for", "with", "by", "is", "from", "at"}

COMPARISON_RULES = """EVALUATION PROCESS (bottom-up, for EACH item separately):
  1. Start by assuming the item is Tier 4 (weakest).
  2. Compare it with the CLOSEST Tier 4 benchmark. Only if it is STRICTLY stronger, move on to Tier 3.
  3. Repeat against the closest Tier 3, then Tier 2, then Tier 1 benchmark.
  4. Stop at the first tier where the item is only equal to or weaker than the benchmark.
Always name the benchmark you compared against, even across categories. "not_comparable" is
allowed but must still name the closest benchmark and explain why.

STANDING RULES:
  • Claimed endorsements by public figures (e.g. "created by Matt Furie", "backed by Elon Musk")
    are NOT strength signals unless independently verifiable. Treat them as credibility red
    flags: Tier 3 at best.
  • Judge only what the item states. Do not assume facts that are not in the text."""

STEP_SHAPE = """{{"result": "stronger|equal|weaker|not_comparable", "compared_to": "exact benchmark text", "benchmark_id": "id or null", "cross_category": false, "why": "one sentence"}}"""

SIGNAL_PROMPT = """Evaluate the extracted signals of crypto project {symbol} against tier benchmarks.

TIER BENCHMARKS (1 = ALPHA, 2 = SOLID, 3 = BASIC, 4 = TRASH):
{benchmarks}

EXTRACTED SIGNALS:
{items}

{rules}

Return JSON:
{{
  "signal_evaluations": [
    {{
      "index": 1,
      "signal": "signal text",
      "tier_4_comparison": {step},
      "tier_3_comparison": {step},
      "tier_2_comparison": {step},
      "tier_1_comparison": {step},
      "reasoning": "why this item stops where it does"
    }}
  ],
  "explanation": "2-3 sentences on the overall tier logic"
}}
Omit comparisons for tiers above the one where an item stopped."""

DOCUMENT_PROMPT = """Evaluate the whitepaper of crypto project {symbol} in two independent stages.

STAGE 1 - CLAIM CEILING: compare the MAIN CLAIM with the CLAIM BENCHMARKS. This sets the highest
tier the project's stated ambition could justify.
STAGE 2 - EVIDENCE QUALITY: compare EACH evidence claim with the EVIDENCE BENCHMARKS (working
code, proofs, real metrics, audits, academic rigour).

MAIN CLAIM:
{main_claim}

CLAIM BENCHMARKS:
{claim_benchmarks}

EVIDENCE CLAIMS:
{items}

EVIDENCE BENCHMARKS:
{evidence_benchmarks}

{rules}

Return JSON:
{{
  "claim_evaluation": {{
    "tier_4_comparison": {step},
    "tier_3_comparison": {step},
    "tier_2_comparison": {step},
    "tier_1_comparison": {step},
    "reasoning": "why the ambition stops here"
  }},
  "evidence_evaluations": [
    {{
      "index": 1,
      "claim": "evidence claim text",
      "tier_4_comparison": {step},
      "tier_3_comparison": {step},
      "tier_2_comparison": {step},
      "tier_1_comparison": {step},
      "reasoning": "why the evidence stops here"
    }}
  ],
  "explanation": "2-3 sentences on how ceiling and evidence combine"
}}"""


def _tokens(text: str) -> set:
    return {token for token in TOKEN_RE.findall((text or "").lower()) if token not in STOPWORDS}


def _overlap(left: str, right: str) -> float:
    a, b = _tokens(left), _tokens(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def score_for(tier: int, strength: float) -> int:
    low, high = TIER_SCORE_RANGES[tier]
    strength = min(1.0, max(0.0, strength))
    return low + int(round((high - low) * strength))


def failed_comparison(reason: str) -> TierComparison:
    """Lowest tier with an explicit explanation; used whenever evaluation cannot run."""
    return TierComparison(
        final_tier=4,
        final_score=0,
        explanation=f"Evaluation failed: {reason}",
        evaluation_failed=True,
    )


@dataclass
class Candidate:
    """One item to be placed: a signal, a main claim or an evidence claim."""

    text: str
    category: str = SignalCategory.OTHER.value
    context: str = ""

    @classmethod
    def from_signal(cls, signal: Signal) -> "Candidate":
        return cls(text=signal.signal, category=signal.category.value, context=signal.context)

    @classmethod
    def from_claim(cls, claim: EvidenceClaim) -> "Candidate":
        return cls(text=claim.claim, context=claim.evidence)


@dataclass
class Placement:
    evaluation: SignalEvaluation
    strength: float

    @property
    def tier(self) -> int:
        return self.evaluation.assigned_tier


class BenchmarkSet:
    """Active benchmarks of one kind, grouped by tier."""

    def __init__(self, benchmarks: Sequence[Benchmark]) -> None:
        self.by_tier: Dict[int, List[Benchmark]] = {tier: [] for tier in (1, 2, 3, 4)}
        for benchmark in benchmarks:
            if benchmark.is_active:
                self.by_tier[benchmark.tier].append(benchmark)

    def __bool__(self) -> bool:
        return any(self.by_tier.values())

    def render(self) -> str:
        lines = []
        for tier in (4, 3, 2, 1):
            lines.append(f"Tier {tier} ({TIER_NAMES[tier]}):")
            for benchmark in self.by_tier[tier]:
                lines.append(f"  - [{benchmark.id or '-'}] ({benchmark.category}) {benchmark.benchmark_signal}")
            if not self.by_tier[tier]:
                lines.append("  (none)")
        return "\n".join(lines)

    def closest(self, tier: int, candidate: Candidate, named: str = "", named_id: Optional[str] = None) -> Optional[Benchmark]:
        """The benchmark at `tier` the candidate should be judged against.

        A benchmark the model named wins (id, exact text, then best token
        overlap); otherwise the closest one by category and wording.
        """
        pool = self.by_tier.get(tier) or []
        if not pool:
            return None

        if named_id:
            for benchmark in pool:
                if benchmark.id == str(named_id):
                    return benchmark
        if named:
            wanted = named.strip().lower()
            for benchmark in pool:
                if benchmark.benchmark_signal.strip().lower() == wanted:
                    return benchmark
            best = max(pool, key=lambda b: _overlap(named, b.benchmark_signal))
            if _overlap(named, best.benchmark_signal) > 0:
                return best

        text = f"{candidate.text} {candidate.context}"
        return max(
            pool,
            key=lambda b: (b.category == candidate.category, _overlap(text, b.benchmark_signal)),
        )


class TierClassifier:
    def __init__(self, settings: Settings, inference) -> None:
        self.settings = settings
        self.inference = inference
        self.suspect_patterns = [re.compile(p, re.I) for p in settings.suspect_endorsement_patterns]

    # Public entry points

    async def classify(self, bundle: ExtractionBundle, benchmarks: Sequence[Benchmark], *, symbol: str = "") -> TierComparison:
        """Place every signal and take the tier of the strongest one."""
        if not bundle.signals:
            logger.info("%s: no signals extracted, assigning tier 4", symbol or "project")
            return TierComparison(final_tier=4, final_score=0, explanation="No signals extracted")

        benchmark_set = BenchmarkSet(benchmarks)
        if not benchmark_set:
            raise BenchmarkUnavailableError("No active tier benchmarks available")

        candidates = [Candidate.from_signal(signal) for signal in bundle.signals]
        prompt = SIGNAL_PROMPT.format(
            symbol=symbol or "unknown",
            benchmarks=benchmark_set.render(),
            items=self._render_items(candidates),
            rules=COMPARISON_RULES,
            step=STEP_SHAPE.format(),
        )
        try:
            data = await self.inference.complete_json(prompt, timeout=self.settings.llm_timeout)
        except (InferenceError, ContentTooLargeError) as exc:
            logger.error("Comparison call failed for %s: %s", symbol or "project", exc)
            return failed_comparison(str(exc))

        raw_evaluations = self._match_evaluations(data.get("signal_evaluations"), candidates, "signal")
        placements = [
            self.place(candidate, raw, benchmark_set)
            for candidate, raw in zip(candidates, raw_evaluations)
        ]
        return self._combine(placements, explanation=str(data.get("explanation") or ""))

    async def classify_document(
        self,
        bundle: ExtractionBundle,
        claim_benchmarks: Sequence[Benchmark],
        evidence_benchmarks: Sequence[Benchmark],
        *,
        symbol: str = "",
    ) -> TierComparison:
        """Two-stage evaluation: final tier is the weaker of claim ceiling and evidence tier."""
        if not bundle.evidence_claims:
            logger.info("%s: no evidence claims extracted, assigning tier 4", symbol or "project")
            return TierComparison(final_tier=4, final_score=0, explanation="No evidence claims extracted")

        claim_set = BenchmarkSet(claim_benchmarks)
        evidence_set = BenchmarkSet(evidence_benchmarks)
        if not claim_set or not evidence_set:
            raise BenchmarkUnavailableError("Claim or evidence benchmarks unavailable")

        main_claim = Candidate(text=bundle.main_claim or bundle.description or "No main claim stated")
        candidates = [Candidate.from_claim(claim) for claim in bundle.evidence_claims]
        prompt = DOCUMENT_PROMPT.format(
            symbol=symbol or "unknown",
            main_claim=main_claim.text,
            claim_benchmarks=claim_set.render(),
            items=self._render_items(candidates),
            evidence_benchmarks=evidence_set.render(),
            rules=COMPARISON_RULES,
            step=STEP_SHAPE.format(),
        )
        try:
            data = await self.inference.complete_json(prompt, timeout=self.settings.llm_timeout)
        except (InferenceError, ContentTooLargeError) as exc:
            logger.error("Two-stage comparison failed for %s: %s", symbol or "project", exc)
            return failed_comparison(str(exc))

        raw_claim = data.get("claim_evaluation")
        ceiling = self.place(main_claim, raw_claim if isinstance(raw_claim, dict) else {}, claim_set)
        raw_evaluations = self._match_evaluations(data.get("evidence_evaluations"), candidates, "claim")
        evidence = [
            self.place(candidate, raw, evidence_set)
            for candidate, raw in zip(candidates, raw_evaluations)
        ]
        strongest = self._strongest(evidence)

        final_tier = max(ceiling.tier, strongest.tier)
        if strongest.tier < final_tier:
            # Evidence outruns the ceiling; it sits at the top of the capped tier
            strength = 1.0
        else:
            strength = self._strength_with_bonus(strongest, evidence)

        explanation = str(data.get("explanation") or "") or (
            f"Claim ceiling tier {ceiling.tier}, evidence tier {strongest.tier}; "
            f"final tier is the weaker of the two."
        )
        result = TierComparison(
            signal_evaluations=[ceiling.evaluation] + [p.evaluation for p in evidence],
            strongest_signal=StrongestSignal(
                signal=strongest.evaluation.signal,
                tier=strongest.tier,
                benchmark_match=self._matched_benchmark(strongest.evaluation),
            ),
            final_tier=final_tier,
            final_score=score_for(final_tier, strength),
            explanation=explanation,
            claim_ceiling=ceiling.tier,
            evidence_tier=strongest.tier,
        )
        logger.info(
            "%s whitepaper: ceiling %d, evidence %d -> tier %d (%s) score %d",
            symbol or "project",
            ceiling.tier,
            strongest.tier,
            result.final_tier,
            result.tier_name,
            result.final_score,
        )
        return result

    # Bottom-up fold

    def place(self, candidate: Candidate, raw: Dict[str, Any], benchmarks: BenchmarkSet) -> Placement:
        """Fold per-tier verdicts from tier 4 upward into an assigned tier.

        An item moves up from tier T only when it is strictly stronger than the
        closest tier-T benchmark. A missing verdict counts as not comparable.
        """
        progression: List[TierStepComparison] = []
        assigned = 4
        for tier in (4, 3, 2, 1):
            step = self._resolve_step(tier, candidate, raw, benchmarks)
            progression.append(step)
            if step.result != "stronger" or tier == 1:
                break
            assigned = tier - 1

        stop_step = progression[-1]
        strength = VERDICT_STRENGTH[stop_step.result]
        reasoning = str(raw.get("reasoning") or raw.get("why") or "")

        guardrail = False
        cap = self.settings.suspect_claim_tier_cap
        if self.is_suspect(candidate) and assigned < cap:
            logger.info("Capping suspect endorsement %r at tier %d", candidate.text, cap)
            assigned = cap
            guardrail = True
            capped_steps = [step for step in progression if step.tier == cap]
            strength = VERDICT_STRENGTH[capped_steps[0].result] if capped_steps else VERDICT_STRENGTH["not_comparable"]
            reasoning = (
                f"{reasoning} Unverified endorsement claim treated as a credibility red flag; "
                f"capped at tier {cap}."
            ).strip()

        evaluation = SignalEvaluation(
            signal=candidate.text,
            progression=progression,
            assigned_tier=assigned,
            reasoning=reasoning,
            guardrail_applied=guardrail,
        )
        return Placement(evaluation=evaluation, strength=strength)

    def is_suspect(self, candidate: Candidate) -> bool:
        if candidate.category == SignalCategory.ENDORSEMENT.value:
            return True
        text = f"{candidate.text} {candidate.context}"
        return any(pattern.search(text) for pattern in self.suspect_patterns)

    def _resolve_step(
        self, tier: int, candidate: Candidate, raw: Dict[str, Any], benchmarks: BenchmarkSet
    ) -> TierStepComparison:
        reported = raw.get(f"tier_{tier}_comparison") or raw.get(f"tier_{tier}")
        if isinstance(reported, str):
            reported = {"result": reported}
        if not isinstance(reported, dict):
            reported = {}

        named = str(reported.get("compared_to") or "").strip()
        benchmark = benchmarks.closest(tier, candidate, named=named, named_id=reported.get("benchmark_id"))
        if benchmark is None:
            return TierStepComparison(
                tier=tier,
                result="not_comparable",
                why=f"No active tier {tier} benchmark to compare against",
            )

        result = reported.get("result") or "not_comparable"
        why = str(reported.get("why") or "")
        if not named:
            why = f"{why} Closest benchmark substituted.".strip()
        return TierStepComparison(
            tier=tier,
            result=result,
            compared_to=benchmark.benchmark_signal,
            benchmark_id=benchmark.id,
            cross_category=benchmark.category != candidate.category,
            why=why,
        )

    # Combination

    def _combine(self, placements: List[Placement], *, explanation: str) -> TierComparison:
        strongest = self._strongest(placements)
        strength = self._strength_with_bonus(strongest, placements)
        result = TierComparison(
            signal_evaluations=[p.evaluation for p in placements],
            strongest_signal=StrongestSignal(
                signal=strongest.evaluation.signal,
                tier=strongest.tier,
                benchmark_match=self._matched_benchmark(strongest.evaluation),
            ),
            final_tier=strongest.tier,
            final_score=score_for(strongest.tier, strength),
            explanation=explanation
            or f"Strongest signal reached tier {strongest.tier}; project tier equals its strongest signal.",
        )
        logger.info(
            "Tier %d (%s) score %d from %d signals; strongest: %s",
            result.final_tier,
            result.tier_name,
            result.final_score,
            len(placements),
            strongest.evaluation.signal,
        )
        return result

    @staticmethod
    def _strongest(placements: List[Placement]) -> Placement:
        return min(placements, key=lambda p: (p.tier, -p.strength))

    @staticmethod
    def _strength_with_bonus(strongest: Placement, placements: List[Placement]) -> float:
        peers = sum(1 for p in placements if p.tier == strongest.tier) - 1
        return min(1.0, strongest.strength + SAME_TIER_BONUS * peers)

    @staticmethod
    def _matched_benchmark(evaluation: SignalEvaluation) -> str:
        for step in reversed(evaluation.progression):
            if step.tier == evaluation.assigned_tier and step.compared_to:
                return step.compared_to
        return evaluation.progression[-1].compared_to if evaluation.progression else ""

    @staticmethod
    def _render_items(candidates: List[Candidate]) -> str:
        items = []
        for index, candidate in enumerate(candidates, start=1):
            item = {"index": index, "text": candidate.text, "category": candidate.category}
            if candidate.context:
                item["context"] = candidate.context[:500]
            items.append(item)
        return json.dumps(items, indent=2, ensure_ascii=False)

    @staticmethod
    def _match_evaluations(raw: Any, candidates: List[Candidate], text_key: str) -> List[Dict[str, Any]]:
        """Line model evaluations up with candidates by index, then by text."""
        matched: List[Dict[str, Any]] = [{} for _ in candidates]
        if not isinstance(raw, list):
            logger.warning("Model returned no per-item evaluations")
            return matched

        unplaced = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            try:
                position = int(index) - 1
            except (TypeError, ValueError):
                position = -1
            if 0 <= position < len(candidates) and not matched[position]:
                matched[position] = item
            else:
                unplaced.append(item)

        for item in unplaced:
            text = str(item.get(text_key) or item.get("signal") or "")
            for position, candidate in enumerate(candidates):
                if not matched[position] and text.strip().lower() == candidate.text.strip().lower():
                    matched[position] = item
                    break

        missing = sum(1 for item in matched if not item)
        if missing:
            logger.warning("%d of %d items had no evaluation; treated as not comparable", missing, len(candidates))
        return matched
