from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError

LLM_MODEL = "gemini-2.5-flash"
FETCH_TIMEOUT_SECONDS = 15.0
RENDER_TIMEOUT_SECONDS = 70.0
LLM_TIMEOUT_SECONDS = 180.0
REQUEST_TIMEOUT_SECONDS = 300.0

LOW_SIGNAL_CHARACTERS = 500
RENDER_SETTLE_MS = 3000
RENDER_RETRY_SETTLE_MS = 5000
COMPLETE_CONTENT_CHARACTERS = 5000
HEURISTIC_COMPLETE_CHARACTERS = 1000
MIN_USABLE_CHARACTERS = 100

PREPROCESS_THRESHOLD = 240_000
PROMPT_CEILING = 250_000
STORED_CONTENT_CAP = 240_000

PHASE_SETTLE_SECONDS = 0.5
CHAIN_MAX_WORKERS = 4
SUSPECT_CLAIM_TIER_CAP = 3

TIER_SCORE_RANGES: Dict[int, Tuple[int, int]] = {
    1: (85, 100),
    2: (60, 84),
    3: (30, 59),
    4: (0, 29),
}

SUSPECT_ENDORSEMENT_PATTERNS: Tuple[str, ...] = (
    r"matt\s+furie",
    r"endorsed\s+by",
    r"backed\s+by\s+elon",
    r"elon\s+musk",
    r"approved\s+by\s+vitalik",
    r"celebrity\s+(?:backed|endorsed|partner)",
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be numeric, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once and handed to every component."""

    google_api_key: Optional[str] = None
    scraperapi_key: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    service_url: Optional[str] = None

    llm_model: str = LLM_MODEL
    fetch_timeout: float = FETCH_TIMEOUT_SECONDS
    render_timeout: float = RENDER_TIMEOUT_SECONDS
    llm_timeout: float = LLM_TIMEOUT_SECONDS
    request_timeout: float = REQUEST_TIMEOUT_SECONDS

    low_signal_chars: int = LOW_SIGNAL_CHARACTERS
    render_settle_ms: int = RENDER_SETTLE_MS
    render_retry_settle_ms: int = RENDER_RETRY_SETTLE_MS
    complete_content_chars: int = COMPLETE_CONTENT_CHARACTERS
    heuristic_complete_chars: int = HEURISTIC_COMPLETE_CHARACTERS
    min_usable_chars: int = MIN_USABLE_CHARACTERS

    preprocess_threshold: int = PREPROCESS_THRESHOLD
    prompt_ceiling: int = PROMPT_CEILING
    stored_content_cap: int = STORED_CONTENT_CAP

    phase_settle_seconds: float = PHASE_SETTLE_SECONDS
    chain_max_workers: int = CHAIN_MAX_WORKERS
    suspect_claim_tier_cap: int = SUSPECT_CLAIM_TIER_CAP
    suspect_endorsement_patterns: Tuple[str, ...] = SUSPECT_ENDORSEMENT_PATTERNS

    @classmethod
    def from_env(cls) -> "Settings":
        """Read `.env` plus the process environment."""
        load_dotenv()
        return cls(
            google_api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY"),
            scraperapi_key=os.getenv("SCRAPERAPI_KEY"),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            service_url=os.getenv("TIERSCOPE_SERVICE_URL"),
            llm_model=os.getenv("TIERSCOPE_LLM_MODEL", LLM_MODEL),
            fetch_timeout=_env_float("TIERSCOPE_FETCH_TIMEOUT", FETCH_TIMEOUT_SECONDS),
            render_timeout=_env_float("TIERSCOPE_RENDER_TIMEOUT", RENDER_TIMEOUT_SECONDS),
            llm_timeout=_env_float("TIERSCOPE_LLM_TIMEOUT", LLM_TIMEOUT_SECONDS),
            request_timeout=_env_float("TIERSCOPE_REQUEST_TIMEOUT", REQUEST_TIMEOUT_SECONDS),
            low_signal_chars=_env_int("TIERSCOPE_LOW_SIGNAL_CHARS", LOW_SIGNAL_CHARACTERS),
            complete_content_chars=_env_int(
                "TIERSCOPE_COMPLETE_CONTENT_CHARS", COMPLETE_CONTENT_CHARACTERS
            ),
            preprocess_threshold=_env_int("TIERSCOPE_PREPROCESS_THRESHOLD", PREPROCESS_THRESHOLD),
            prompt_ceiling=_env_int("TIERSCOPE_PROMPT_CEILING", PROMPT_CEILING),
            phase_settle_seconds=_env_float("TIERSCOPE_PHASE_SETTLE_SECONDS", PHASE_SETTLE_SECONDS),
            chain_max_workers=_env_int("TIERSCOPE_CHAIN_MAX_WORKERS", CHAIN_MAX_WORKERS),
        )

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every unset credential in `names`."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                "Missing configuration: " + ", ".join(n.upper() for n in missing)
            )

