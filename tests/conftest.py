"""
Pytest fixtures for tierscope tests.

No network, model or database access: HTTP goes through httpx.MockTransport,
the model is replaced by a scripted stand-in, and projects live in memory.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

import httpx
import pytest

from tierscope.config import Settings
from tierscope.errors import ProjectNotFoundError
from tierscope.llm import parse_model_json
from tierscope.models import Benchmark, Project, SourceKind
from tierscope.storage import analysis_columns, column_name, row_to_project


class ScriptedInference:
    """Stands in for InferenceClient; replies are consumed in order.

    A reply may be a dict (returned as JSON), a string (raw model text) or an
    exception instance (raised).
    """

    def __init__(self, replies: Optional[List[Any]] = None) -> None:
        self.replies = list(replies or [])
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str, *, timeout: Optional[float] = None) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            raise AssertionError("Unexpected model call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply

    async def complete_json(self, prompt: str, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        return parse_model_json(await self.complete(prompt, timeout=timeout))


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[str] = []

    async def notify(self, message: str) -> bool:
        self.messages.append(message)
        return True


class InMemoryProjectStore:
    """ProjectStore over plain dict rows, using the same column mapping as Supabase."""

    def __init__(self, benchmarks: Optional[Dict[str, List[Benchmark]]] = None) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.benchmarks = benchmarks or {}

    def add(self, symbol: str, **columns: Any) -> str:
        project_id = str(uuid.uuid4())
        self.rows[project_id] = {"id": project_id, "symbol": symbol, **columns}
        return project_id

    async def get(self, project_id: str) -> Project:
        if project_id not in self.rows:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return row_to_project(self.rows[project_id])

    async def get_or_create(self, symbol, project_id=None, source_url=None, kind=SourceKind.WEBSITE) -> Project:
        if project_id:
            project = await self.get(project_id)
        else:
            match = next((row for row in self.rows.values() if row["symbol"] == symbol), None)
            if match is None:
                return await self.get(self.add(symbol, **{column_name(kind, "source_url"): source_url}))
            project = row_to_project(match)
        if source_url:
            await self.update(project.id, kind, source_url=source_url)
        return await self.get(project.id)

    async def update(self, project_id: str, kind: SourceKind, **fields: Any) -> None:
        self.rows[project_id].update(analysis_columns(kind, fields))

    async def load_benchmarks(self, kind: str) -> List[Benchmark]:
        return list(self.benchmarks.get(kind, []))

    async def list_pending(self, kind: SourceKind, limit: int = 50) -> List[Project]:
        pending = []
        for row in self.rows.values():
            if not row.get(column_name(kind, "source_url")):
                continue
            statuses = (
                row.get(column_name(kind, "extraction_status")),
                row.get(column_name(kind, "comparison_status")),
            )
            if any(status != "completed" for status in statuses):
                pending.append(row_to_project(row))
        return pending[:limit]


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_benchmarks(kind: str = "signal") -> List[Benchmark]:
    texts = {
        4: ("community", "Has a Telegram group"),
        3: ("exchange", "Listed on a mid-size centralised exchange"),
        2: ("partnership", "Official partnership with a top-50 crypto protocol"),
        1: ("partnership", "Partnership with a Fortune 500 company"),
    }
    return [
        Benchmark(id=f"{kind}-{tier}", tier=tier, category=category, benchmark_signal=text, kind=kind)
        for tier, (category, text) in texts.items()
    ]


def verdicts(**results: str) -> Dict[str, Any]:
    """Per-tier verdicts for one item, e.g. verdicts(t4="stronger", t3="equal")."""
    raw: Dict[str, Any] = {}
    for key, result in results.items():
        tier = int(key[1:])
        raw[f"tier_{tier}_comparison"] = {"result": result, "compared_to": "", "why": f"{result} at tier {tier}"}
    return raw


@pytest.fixture
def settings() -> Settings:
    return Settings(
        google_api_key="test-google-key",
        scraperapi_key="test-scraper-key",
        phase_settle_seconds=0.0,
        fetch_timeout=5.0,
        render_timeout=5.0,
        llm_timeout=5.0,
    )


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore(
        benchmarks={
            "signal": make_benchmarks("signal"),
            "claim": make_benchmarks("claim"),
            "evidence": make_benchmarks("evidence"),
        }
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
