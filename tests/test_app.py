"""
Tests for the HTTP surface: request validation, error mapping and status reads.

The lifespan is not entered; the orchestrator dependency is overridden.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tierscope.app import app, get_orchestrator
from tierscope.errors import (
    AcquisitionError,
    ConfigurationError,
    ContentTooLargeError,
    PhaseOrderError,
    PipelineTimeoutError,
    ProjectNotFoundError,
)
from tierscope.models import PhaseOneResult, PhaseStatus, SourceKind

from .conftest import InMemoryProjectStore


class FakeOrchestrator:
    def __init__(self, outcome=None, store=None) -> None:
        self.outcome = outcome
        self.store = store or InMemoryProjectStore()
        self.requests = []

    async def handle(self, request):
        self.requests.append(request)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


@pytest.fixture
def use_orchestrator():
    def install(orchestrator):
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return TestClient(app)

    yield install
    app.dependency_overrides.clear()


def phase_one_body(**extra):
    return {"phase": 1, "symbol": "KTA", "sourceUrl": "https://keeta.com", **extra}


def test_health(use_orchestrator):
    client = use_orchestrator(FakeOrchestrator())
    assert client.get("/health").json() == {"ok": True}


def test_phase_one_accepts_camel_case(use_orchestrator):
    orchestrator = FakeOrchestrator(
        PhaseOneResult(
            project_id="p1",
            symbol="KTA",
            source_kind=SourceKind.WEBSITE,
            status=PhaseStatus.COMPLETED,
            website_status="active",
            signals_count=3,
            phase2_scheduled=True,
        )
    )
    client = use_orchestrator(orchestrator)

    response = client.post("/analyze", json=phase_one_body(forceReanalysis=True))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] and body["signals_count"] == 3 and body["phase2_scheduled"]
    assert orchestrator.requests[0].force_reanalysis


@pytest.mark.parametrize(
    "body",
    [
        {"phase": 1, "sourceUrl": "https://keeta.com"},
        {"phase": 1, "symbol": "KTA", "sourceUrl": "ftp://keeta.com"},
        {"phase": 2, "symbol": "KTA"},
        {"phase": 3, "projectId": "p1"},
    ],
)
def test_invalid_requests_rejected(use_orchestrator, body):
    orchestrator = FakeOrchestrator()
    client = use_orchestrator(orchestrator)

    response = client.post("/analyze", json=body)

    assert response.status_code == 422
    assert orchestrator.requests == []


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ProjectNotFoundError("Project p9 not found"), 404),
        (PhaseOrderError("Phase 1 not completed"), 409),
        (ContentTooLargeError("too large", original_length=900_000, reduced_length=400_000), 413),
        (AcquisitionError("No usable content", trail=["direct: HTTP 403"], looks_blocked=True), 502),
        (PipelineTimeoutError("Phase 1 exceeded the 120s request timeout"), 504),
        (ConfigurationError("GOOGLE_API_KEY is not set"), 500),
        (RuntimeError("boom"), 500),
    ],
)
def test_errors_map_to_status_codes(use_orchestrator, error, status_code):
    client = use_orchestrator(FakeOrchestrator(error))

    response = client.post("/analyze", json={"phase": 2, "projectId": "p9"})

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"]


def test_error_body_names_stage_and_detail(use_orchestrator):
    error = AcquisitionError("No usable content", trail=["direct: HTTP 404", "render: 3000ms empty"], looks_dead=True)
    client = use_orchestrator(FakeOrchestrator(error))

    body = client.post("/analyze", json=phase_one_body()).json()

    assert body["stage"] == "acquisition"
    assert body["detail"] == "direct: HTTP 404 | render: 3000ms empty"


def test_project_status_summary(use_orchestrator):
    store = InMemoryProjectStore()
    project_id = store.add(
        "KTA",
        website_url="https://keeta.com",
        website_extraction_status="completed",
        website_comparison_status="completed",
        website_status="active",
        website_tier=2,
        website_score=72,
        whitepaper_url="https://keeta.com/wp.pdf",
        whitepaper_extraction_status="failed",
        whitepaper_needs_special_handling=True,
        whitepaper_error="too large",
    )
    client = use_orchestrator(FakeOrchestrator(store=store))

    summary = client.get(f"/projects/{project_id}").json()

    assert summary["symbol"] == "KTA"
    assert summary["website"]["final_tier"] == 2
    assert summary["website"]["tier_name"] == "SOLID"
    assert summary["whitepaper"]["extraction_status"] == "failed"
    assert summary["whitepaper"]["comparison_status"] == "not_started"
    assert summary["whitepaper"]["needs_special_handling"]


def test_unknown_project_is_404(use_orchestrator):
    client = use_orchestrator(FakeOrchestrator())
    response = client.get("/projects/missing")

    assert response.status_code == 404
    assert response.json()["stage"] == "storage"
