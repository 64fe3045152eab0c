from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ValidationError

from .config import Settings
from .models import (
    EvidenceClaim,
    ExtractionBundle,
    FollowUpResource,
    RedFlag,
    Signal,
    SourceKind,
    VerificationResult,
)
from .preprocessing import PreprocessOutcome

logger = logging.getLogger(__name__)

STATUS_RULES = """STATUS DETECTION (do this FIRST):
  • "dead": parking pages, domain-for-sale, error pages, "coming soon", placeholder or template content
  • "blocked": social-only redirects, access restricted, paywalls, bot challenges
  • "active": a real project with actual content

If the status is "dead" or "blocked", STOP and return only:
{{"website_status": "dead" | "blocked", "dead_reason": "one sentence", "signals_found": [], "red_flags": []}}"""

WEBSITE_PROMPT = """{note}Analyse the website of the crypto project {symbol} ({url}).

Find every discovery that could indicate breakout potential: partnerships, investors, team
backgrounds, exchange listings, technical innovation, community traction, product launches.
Check ALL text, links, meta tags and footers. Quote each discovery EXACTLY as found.

{status_rules}

RED FLAGS: anonymous team with grand claims, copied content, fake partnerships, unverifiable
celebrity or founder "endorsements" (e.g. claims involving Matt Furie or Elon Musk), broken
tokenomics, plagiarised whitepaper.

RESOURCES: list links worth deeper inspection (whitepaper, github, docs, audit, social channels),
priority 1 (most important) to 5.
{verification_block}
Return JSON:
{{
  "website_status": "active" | "dead" | "blocked",
  "dead_reason": null,
  "project_type": "meme" | "utility" | "infrastructure" | "unknown",
  "project_description": "60 characters max, factual",
  "project_summary": "75 word summary",
  "technical_assessment": "2-3 sentences on how the site was built",
  "signals_found": [
    {{
      "signal": "specific discovery EXACTLY as found",
      "location": "where on the site (homepage/footer/docs/...)",
      "context": "verbatim surrounding text",
      "importance": "why this matters",
      "category": "social_media|partnership|investment|technical|community|team|exchange|documentation|product|endorsement|other",
      "similar_to": "successful project this resembles"
    }}
  ],
  "red_flags": [{{"flag": "concern", "severity": "high|medium|low", "evidence": "verbatim text"}}],
  "stage_2_resources": [{{"url": "absolute URL", "type": "whitepaper|github|docs|audit|twitter|discord|telegram|other", "priority": 1, "reason": "why"}}]{verification_shape}
}}

CONTENT:
{content}"""

WHITEPAPER_PROMPT = """{note}Analyse the whitepaper of the crypto project {symbol} ({url}).

1. MAIN CLAIM: the single central thing this project claims it will achieve, in one sentence.
2. EVIDENCE CLAIMS: every concrete piece of support offered for that claim (implementations,
   benchmarks, audits, team credentials, deployments, partnerships). For each, quote the
   evidence verbatim and say where in the document it appears.
3. RED FLAGS: unsupported superlatives, copied passages, impossible performance figures,
   unverifiable endorsements.

{status_rules}
{verification_block}
Return JSON:
{{
  "website_status": "active" | "dead" | "blocked",
  "dead_reason": null,
  "project_type": "meme" | "utility" | "infrastructure" | "unknown",
  "simple_description": "60 characters max, factual",
  "main_claim": "one sentence",
  "evidence_claims": [{{"claim": "what is asserted", "evidence": "verbatim support", "location": "section/page"}}],
  "signals_found": [],
  "red_flags": [{{"flag": "concern", "severity": "high|medium|low", "evidence": "verbatim text"}}],
  "stage_2_resources": []{verification_shape}
}}

DOCUMENT:
{content}"""

VERIFICATION_BLOCK = """
VERIFICATION: search the content for this identifier: {target}
Report whether it appears anywhere (footer, docs, token info, ...).
"""
VERIFICATION_SHAPE = """,
  "contract_verification": {{"found_on_site": true, "confidence": "high|medium|low", "note": "where/how found or why not"}}"""


def _first(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if data.get(key) not in (None, ""):
            return data[key]
    return default


def _validated(model: Type[BaseModel], items: Iterable[Any], label: str) -> List[Any]:
    parsed = []
    for item in items or []:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping malformed %s %r: %s", label, item, exc.errors()[0]["msg"])
    return parsed


class SignalExtractor:
    """Phase 1: turn acquired content into a structured ExtractionBundle."""

    def __init__(self, settings: Settings, inference) -> None:
        self.settings = settings
        self.inference = inference

    def build_prompt(
        self,
        content: str,
        *,
        symbol: str,
        url: str,
        kind: SourceKind = SourceKind.WEBSITE,
        verification_target: Optional[str] = None,
        preprocess: Optional[PreprocessOutcome] = None,
    ) -> str:
        template = WEBSITE_PROMPT if kind == SourceKind.WEBSITE else WHITEPAPER_PROMPT
        return template.format(
            note=preprocess.note() if preprocess else "",
            symbol=symbol,
            url=url,
            status_rules=STATUS_RULES.format(),
            verification_block=VERIFICATION_BLOCK.format(target=verification_target)
            if verification_target
            else "",
            verification_shape=VERIFICATION_SHAPE.format() if verification_target else "",
            content=content,
        )

    async def extract(
        self,
        content: str,
        *,
        symbol: str,
        url: str,
        kind: SourceKind = SourceKind.WEBSITE,
        verification_target: Optional[str] = None,
        preprocess: Optional[PreprocessOutcome] = None,
    ) -> ExtractionBundle:
        prompt = self.build_prompt(
            content,
            symbol=symbol,
            url=url,
            kind=kind,
            verification_target=verification_target,
            preprocess=preprocess,
        )
        logger.info("Extracting %s signals for %s (%d char prompt)", kind.value, symbol, len(prompt))
        data = await self.inference.complete_json(prompt, timeout=self.settings.llm_timeout)
        bundle = self.to_bundle(data, content=content, verification_target=verification_target)
        logger.info(
            "%s %s: status=%s, %d signals, %d red flags, %d evidence claims",
            symbol,
            kind.value,
            bundle.website_status,
            len(bundle.signals),
            len(bundle.red_flags),
            len(bundle.evidence_claims),
        )
        return bundle

    def to_bundle(
        self,
        data: Dict[str, Any],
        *,
        content: str = "",
        verification_target: Optional[str] = None,
    ) -> ExtractionBundle:
        """Normalise a parsed model response, keeping only traceable items."""
        status = str(_first(data, "website_status", "document_status", "status", default="active"))
        dead_reason = _first(data, "dead_reason", "reason")
        summary = {
            key: data[key]
            for key in ("project_summary", "technical_assessment", "content_breakdown", "character_assessment")
            if data.get(key)
        }
        bundle = ExtractionBundle(
            website_status=status,
            dead_reason=str(dead_reason) if dead_reason else None,
            project_type=_first(data, "project_type", "token_type", default="unknown"),
            description=str(_first(data, "project_description", "simple_description", "description", default=""))[:120],
            summary=summary,
        )
        if bundle.website_status != "active":
            logger.info("Content reported %s: %s", bundle.website_status, bundle.dead_reason or "no reason given")
            return bundle.model_copy(update={"verification": self._verify(data, content, verification_target)})

        signals = []
        for signal in _validated(Signal, _first(data, "signals_found", "signals", default=[]), "signal"):
            if not signal.context and not signal.location:
                logger.warning("Dropping untraceable signal %r (no context or location)", signal.signal)
                continue
            signals.append(signal)

        resources = []
        for raw in _first(data, "stage_2_resources", "extracted_resources", "follow_up_resources", default=[]) or []:
            if isinstance(raw, dict):
                raw = dict(raw)
                raw.setdefault("kind", raw.get("type") or raw.get("category") or "other")
                raw.setdefault("reason", raw.get("reasoning") or "")
            resources.extend(_validated(FollowUpResource, [raw], "resource"))
        resources.sort(key=lambda resource: resource.priority)

        main_claim = _first(data, "main_claim")
        return bundle.model_copy(
            update={
                "signals": signals,
                "red_flags": _validated(RedFlag, _first(data, "red_flags", default=[]), "red flag"),
                "follow_up_resources": resources,
                "verification": self._verify(data, content, verification_target),
                "main_claim": str(main_claim).strip() if main_claim else None,
                "evidence_claims": _validated(
                    EvidenceClaim, _first(data, "evidence_claims", default=[]), "evidence claim"
                ),
            }
        )

    def _verify(
        self, data: Dict[str, Any], content: str, target: Optional[str]
    ) -> Optional[VerificationResult]:
        if not target:
            return None

        present = target.lower() in (content or "").lower()
        reported = _first(data, "contract_verification", "verification")
        if not isinstance(reported, dict):
            return VerificationResult(
                target=target,
                found=present,
                confidence="high" if present else "low",
                note="found verbatim in content" if present else "not reported by model; not found verbatim",
            )

        result = VerificationResult(
            target=target,
            found=reported.get("found_on_site", reported.get("found", False)),
            confidence=reported.get("confidence", "medium"),
            note=reported.get("note", ""),
        )
        if present and not result.found:
            return result.model_copy(update={"found": True, "confidence": "high", "note": "found verbatim in content"})
        return result
