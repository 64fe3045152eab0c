from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import TIER_SCORE_RANGES


class SourceKind(str, Enum):
    WEBSITE = "website"
    WHITEPAPER = "whitepaper"


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FetchStrategy(str, Enum):
    DIRECT = "direct"
    PDF_EXTRACTED = "pdf_extracted"
    RENDERED = "rendered"
    PATTERN_MATCHED = "pattern_matched"
    ALTERNATE_URL = "alternate_url"


class SignalCategory(str, Enum):
    SOCIAL_MEDIA = "social_media"
    PARTNERSHIP = "partnership"
    INVESTMENT = "investment"
    TECHNICAL = "technical"
    COMMUNITY = "community"
    TEAM = "team"
    EXCHANGE = "exchange"
    DOCUMENTATION = "documentation"
    PRODUCT = "product"
    ENDORSEMENT = "endorsement"
    OTHER = "other"


WebsiteStatus = Literal["active", "dead", "blocked"]
ProjectType = Literal["meme", "utility", "infrastructure", "unknown"]
Severity = Literal["high", "medium", "low"]
ComparisonResult = Literal["stronger", "equal", "weaker", "not_comparable"]
BenchmarkKind = Literal["signal", "claim", "evidence"]

TIER_NAMES = {1: "ALPHA", 2: "SOLID", 3: "BASIC", 4: "TRASH"}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str) and not value.strip():
        return []
    return [value]


def _as_bool(value: Any) -> bool:
    """Accept booleans or Yes/No style strings from LLM output."""
    if isinstance(value, str):
        normalised = value.strip().lower()
        if normalised in {"yes", "true", "1"}:
            return True
        if normalised in {"no", "false", "0", ""}:
            return False
    return bool(value)


class Signal(BaseModel):
    """One extractable claim about a project, with enough context to re-verify it."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    signal: str = Field(..., min_length=1, description="The discovery exactly as found.")
    category: SignalCategory = Field(default=SignalCategory.OTHER)
    location: str = Field(default="", description="Where on the page or document it was found.")
    context: str = Field(default="", description="Verbatim surrounding source text.")
    importance: str = Field(default="")
    similar_to: str = Field(default="", description="Known comparable project.")

    @field_validator("signal", "location", "context", "importance", "similar_to", mode="before")
    @classmethod
    def _text(cls, value):
        return _as_text(value)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value):
        normalised = _as_text(value).lower().replace(" ", "_").replace("-", "_")
        try:
            return SignalCategory(normalised)
        except ValueError:
            return SignalCategory.OTHER


class RedFlag(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    flag: str = Field(..., min_length=1)
    severity: Severity = "medium"
    evidence: str = ""

    @field_validator("flag", "evidence", mode="before")
    @classmethod
    def _text(cls, value):
        return _as_text(value)

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value):
        normalised = _as_text(value).lower()
        return normalised if normalised in {"high", "medium", "low"} else "medium"


class EvidenceClaim(BaseModel):
    """A supporting claim made in a document, with the evidence offered for it."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    claim: str = Field(..., min_length=1)
    evidence: str = ""
    location: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_text(cls, value):
        # The model sometimes returns bare strings for evidence items
        if isinstance(value, str):
            return {"claim": value}
        return value

    @field_validator("claim", "evidence", "location", mode="before")
    @classmethod
    def _text(cls, value):
        return _as_text(value)


class FollowUpResource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = Field(..., min_length=1)
    kind: str = "other"
    priority: int = Field(default=3, ge=1, le=5)
    reason: str = ""

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value):
        try:
            return min(5, max(1, int(value)))
        except (TypeError, ValueError):
            return 3


class VerificationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    target: Optional[str] = None
    found: bool = False
    confidence: Literal["high", "medium", "low"] = "low"
    note: str = ""

    @field_validator("found", mode="before")
    @classmethod
    def _found(cls, value):
        return _as_bool(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value):
        normalised = _as_text(value).lower()
        return normalised if normalised in {"high", "medium", "low"} else "low"


class ExtractionBundle(BaseModel):
    """Phase 1 output for one artifact of one project."""

    model_config = ConfigDict(extra="ignore")

    website_status: WebsiteStatus = "active"
    dead_reason: Optional[str] = None
    project_type: ProjectType = "unknown"
    description: str = ""
    summary: Dict[str, Any] = Field(default_factory=dict)
    signals: List[Signal] = Field(default_factory=list)
    red_flags: List[RedFlag] = Field(default_factory=list)
    follow_up_resources: List[FollowUpResource] = Field(default_factory=list)
    verification: Optional[VerificationResult] = None
    main_claim: Optional[str] = None
    evidence_claims: List[EvidenceClaim] = Field(default_factory=list)

    @field_validator("signals", "red_flags", "follow_up_resources", "evidence_claims", mode="before")
    @classmethod
    def _default_list(cls, value):
        return _as_list(value)

    @field_validator("website_status", mode="before")
    @classmethod
    def _status(cls, value):
        normalised = _as_text(value).lower()
        return normalised if normalised in {"active", "dead", "blocked"} else "active"

    @field_validator("project_type", mode="before")
    @classmethod
    def _project_type(cls, value):
        normalised = _as_text(value).lower()
        return normalised if normalised in {"meme", "utility", "infrastructure"} else "unknown"

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value):
        if value is None:
            return {}
        if isinstance(value, str):
            return {"overview": value}
        return value

    @property
    def is_dead(self) -> bool:
        return self.website_status == "dead"


class Benchmark(BaseModel):
    """Curated exemplar pinned to a tier; read-only to the pipeline."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Optional[str] = None
    tier: int = Field(..., ge=1, le=4)
    category: str = "other"
    benchmark_signal: str = Field(..., min_length=1)
    kind: BenchmarkKind = "signal"
    is_active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value):
        return None if value is None else str(value)


class TierStepComparison(BaseModel):
    tier: int = Field(..., ge=1, le=4)
    result: ComparisonResult = "not_comparable"
    compared_to: str = ""
    benchmark_id: Optional[str] = None
    cross_category: bool = False
    why: str = ""

    @field_validator("result", mode="before")
    @classmethod
    def _result(cls, value):
        normalised = _as_text(value).lower().replace(" ", "_").replace("-", "_")
        aliases = {"comparable": "equal", "same": "equal", "stronger_than": "stronger", "weaker_than": "weaker"}
        normalised = aliases.get(normalised, normalised)
        return normalised if normalised in {"stronger", "equal", "weaker", "not_comparable"} else "not_comparable"


class SignalEvaluation(BaseModel):
    signal: str
    progression: List[TierStepComparison] = Field(default_factory=list)
    assigned_tier: int = Field(..., ge=1, le=4)
    reasoning: str = ""
    guardrail_applied: bool = False


class StrongestSignal(BaseModel):
    signal: str
    tier: int = Field(..., ge=1, le=4)
    benchmark_match: str = ""


class TierComparison(BaseModel):
    """Phase 2 output; always carries a tier and a score from that tier's range."""

    signal_evaluations: List[SignalEvaluation] = Field(default_factory=list)
    strongest_signal: Optional[StrongestSignal] = None
    final_tier: int = Field(..., ge=1, le=4)
    final_score: int = Field(..., ge=0, le=100)
    tier_name: str = ""
    explanation: str = ""
    evaluation_failed: bool = False
    claim_ceiling: Optional[int] = Field(default=None, ge=1, le=4)
    evidence_tier: Optional[int] = Field(default=None, ge=1, le=4)

    @model_validator(mode="after")
    def _score_within_tier(self):
        low, high = TIER_SCORE_RANGES[self.final_tier]
        if not low <= self.final_score <= high:
            raise ValueError(
                f"Score {self.final_score} outside tier {self.final_tier} range {low}-{high}"
            )
        if not self.tier_name:
            self.tier_name = TIER_NAMES[self.final_tier]
        return self


class FetchResult(BaseModel):
    url: str
    content: str
    markup: Optional[str] = None
    strategy: FetchStrategy
    content_type: str = ""
    original_length: int = Field(default=0, ge=0)
    is_complete: bool = False
    trail: List[str] = Field(default_factory=list)

    @property
    def analysis_input(self) -> str:
        """Markup when we have it (links and meta tags matter), otherwise plain text."""
        return self.markup if self.markup else self.content


class AnalysisRequest(BaseModel):
    """Inbound request for either phase, accepted in camelCase or snake_case."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "phase": 1,
                "symbol": "KTA",
                "sourceUrl": "https://keeta.com",
                "verificationTarget": "0xc0634090F2Fe6c6d75e61Be2b949464aBB498973",
                "forceReanalysis": False,
            }
        },
    )

    phase: Literal[1, 2] = 1
    project_id: Optional[str] = Field(default=None, alias="projectId")
    symbol: Optional[str] = Field(default=None, max_length=32)
    source_url: Optional[str] = Field(default=None, alias="sourceUrl", max_length=2083)
    verification_target: Optional[str] = Field(default=None, alias="verificationTarget")
    force_reanalysis: bool = Field(default=False, alias="forceReanalysis")
    source_kind: SourceKind = Field(default=SourceKind.WEBSITE, alias="sourceKind")

    @field_validator("project_id", mode="before")
    @classmethod
    def _project_id(cls, value):
        return None if value is None else str(value)

    @field_validator("symbol", "source_url", "verification_target", mode="before")
    @classmethod
    def _strip(cls, value):
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    @model_validator(mode="after")
    def _required_per_phase(self):
        if self.phase == 1:
            if not self.source_url or not self.symbol:
                raise ValueError("Phase 1 requires sourceUrl and symbol")
            if not self.source_url.lower().startswith(("http://", "https://")):
                raise ValueError("sourceUrl must be an http(s) URL")
        elif not self.project_id:
            raise ValueError("Phase 2 requires projectId")
        return self


class AnalysisRecord(BaseModel):
    """Persisted per-artifact state of a project, read from kind-prefixed columns."""

    model_config = ConfigDict(extra="ignore")

    kind: SourceKind
    source_url: Optional[str] = None
    extraction_status: PhaseStatus = PhaseStatus.NOT_STARTED
    comparison_status: PhaseStatus = PhaseStatus.NOT_STARTED
    website_status: Optional[WebsiteStatus] = None
    content: Optional[str] = None
    fetch_strategy: Optional[FetchStrategy] = None
    preprocess_method: Optional[str] = None
    needs_special_handling: bool = False
    extraction: Optional[ExtractionBundle] = None
    comparison: Optional[TierComparison] = None
    final_tier: Optional[int] = None
    final_score: Optional[int] = None
    last_error: Optional[str] = None
    extraction_completed_at: Optional[datetime] = None
    comparison_completed_at: Optional[datetime] = None

    @field_validator("extraction_status", "comparison_status", mode="before")
    @classmethod
    def _status(cls, value):
        if value in (None, ""):
            return PhaseStatus.NOT_STARTED
        # Older rows used "processing" for in-flight work
        if value == "processing":
            return PhaseStatus.IN_PROGRESS
        return value


class Project(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str
    website: AnalysisRecord
    whitepaper: AnalysisRecord

    def analysis(self, kind: SourceKind) -> AnalysisRecord:
        return self.website if kind == SourceKind.WEBSITE else self.whitepaper


class PhaseOneResult(BaseModel):
    success: bool = True
    phase: Literal[1] = 1
    project_id: str
    symbol: str
    source_kind: SourceKind
    status: PhaseStatus
    cached: bool = False
    skipped: bool = False
    website_status: Optional[WebsiteStatus] = None
    fetch_strategy: Optional[FetchStrategy] = None
    content_complete: Optional[bool] = None
    preprocess_method: Optional[str] = None
    signals_count: int = 0
    extraction: Optional[ExtractionBundle] = None
    phase2_scheduled: bool = False
    message: str = ""


class PhaseTwoResult(BaseModel):
    success: bool = True
    phase: Literal[2] = 2
    project_id: str
    symbol: Optional[str] = None
    source_kind: SourceKind
    status: PhaseStatus
    skipped: bool = False
    comparison: Optional[TierComparison] = None
    message: str = ""
