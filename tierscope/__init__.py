"""Tier classification of crypto projects from their websites and whitepapers."""

from .config import Settings
from .errors import PipelineError
from .models import AnalysisRequest, PhaseOneResult, PhaseTwoResult, TierComparison

__version__ = "0.3.0"

__all__ = [
    "AnalysisRequest",
    "PhaseOneResult",
    "PhaseTwoResult",
    "PipelineError",
    "Settings",
    "TierComparison",
    "__version__",
]
