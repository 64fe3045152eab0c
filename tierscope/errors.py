"""Typed failures raised across the acquisition and analysis pipeline.

Every error carries the pipeline `stage` that produced it and a free-form
`detail` string so alerting can tell which strategy failed and why.
"""

from __future__ import annotations

from typing import List, Optional


class PipelineError(Exception):
    stage = "pipeline"

    def __init__(self, message: str, *, stage: Optional[str] = None, detail: Optional[str] = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": str(self),
            "stage": self.stage,
            "detail": self.detail,
        }


class ConfigurationError(PipelineError, ValueError):
    stage = "configuration"


class AcquisitionError(PipelineError):
    """Every acquisition strategy was exhausted without usable content."""

    stage = "acquisition"

    def __init__(
        self,
        message: str,
        *,
        trail: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        looks_dead: bool = False,
        looks_blocked: bool = False,
    ) -> None:
        self.trail = list(trail or [])
        super().__init__(message, detail=" | ".join(self.trail) or None)
        self.status_code = status_code
        self.looks_dead = looks_dead
        self.looks_blocked = looks_blocked


class ContentFormatError(PipelineError):
    stage = "format"


class ContentTooLargeError(PipelineError, ValueError):
    stage = "size"

    def __init__(self, message: str, *, original_length: int, reduced_length: int) -> None:
        super().__init__(
            message,
            detail=f"original={original_length} reduced={reduced_length}",
        )
        self.original_length = original_length
        self.reduced_length = reduced_length


class InferenceError(PipelineError):
    stage = "inference"


class ModelOutputError(InferenceError):
    """The model answered, but not with anything repairable into a JSON object."""

    def __init__(self, message: str, *, preview: str = "") -> None:
        super().__init__(message, detail=preview[:500] or None)
        self.preview = preview


class InferenceTimeoutError(InferenceError, TimeoutError):
    pass


class ComparisonError(PipelineError):
    stage = "comparison"


class BenchmarkUnavailableError(ComparisonError):
    pass


class PhaseOrderError(PipelineError):
    stage = "orchestration"


class ProjectNotFoundError(PipelineError, LookupError):
    stage = "storage"


class PipelineTimeoutError(PipelineError, TimeoutError):
    stage = "request"
