from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Union

import httpx
from fastapi import Depends, FastAPI, Path, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import Settings
from .errors import (
    AcquisitionError,
    ComparisonError,
    ConfigurationError,
    ContentTooLargeError,
    InferenceError,
    PhaseOrderError,
    PipelineError,
    ProjectNotFoundError,
)
from .models import TIER_NAMES, AnalysisRequest, PhaseOneResult, PhaseTwoResult, SourceKind
from .orchestrator import PipelineOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    client = httpx.AsyncClient()
    orchestrator = build_orchestrator(settings, client)
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        await orchestrator.chainer.drain()
        await client.aclose()


app = FastAPI(title="Tierscope API", version=__version__, lifespan=lifespan)


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def error_response(exc: Exception) -> JSONResponse:
    """Map a pipeline failure onto an HTTP status with a uniform error body."""
    if isinstance(exc, TimeoutError):
        status_code = 504
    elif isinstance(exc, ProjectNotFoundError):
        status_code = 404
    elif isinstance(exc, PhaseOrderError):
        status_code = 409
    elif isinstance(exc, ContentTooLargeError):
        status_code = 413
    elif isinstance(exc, (AcquisitionError, InferenceError, ComparisonError)):
        status_code = 502
    elif isinstance(exc, ConfigurationError):
        status_code = 500
    elif isinstance(exc, ValueError):
        status_code = 422
    else:
        status_code = 500

    if isinstance(exc, PipelineError):
        body = exc.to_dict()
    else:
        body = {
            "success": False,
            "error": f"Unexpected error: {exc}",
            "stage": "unexpected",
            "detail": None,
        }
    if status_code >= 500:
        logger.error("Request failed with %d: %s", status_code, body["error"])
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
def healthcheck() -> dict:
    return {"ok": True}


@app.post("/analyze", response_model=Union[PhaseOneResult, PhaseTwoResult])
async def analyze(
    request: AnalysisRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Run one analysis phase for a project.

    Phase 1 fetches the source, extracts signals and schedules Phase 2 in the
    background; its response does not wait for Phase 2. Phase 2 compares the
    stored signals with the active benchmarks and returns the tier and score.
    """
    try:
        return await orchestrator.handle(request)
    except Exception as exc:
        return error_response(exc)


@app.get("/projects/{project_id}")
async def project_status(
    project_id: str = Path(..., min_length=1, max_length=64),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Persisted phase status, tier and score for each artifact of a project."""
    try:
        project = await orchestrator.store.get(project_id)
    except Exception as exc:
        return error_response(exc)

    summary = {"project_id": project.id, "symbol": project.symbol}
    for kind in SourceKind:
        record = project.analysis(kind)
        summary[kind.value] = {
            "source_url": record.source_url,
            "extraction_status": record.extraction_status.value,
            "comparison_status": record.comparison_status.value,
            "website_status": record.website_status,
            "final_tier": record.final_tier,
            "final_score": record.final_score,
            "tier_name": TIER_NAMES.get(record.final_tier) if record.final_tier else None,
            "needs_special_handling": record.needs_special_handling,
            "last_error": record.last_error,
        }
    return summary


if __name__ == "__main__":
    # Optional: run with `python -m tierscope.app`
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "tierscope.app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
