"""Project persistence on Supabase.

Each project row carries one set of columns per artifact kind, prefixed with
the kind (`website_extraction_status`, `whitepaper_tier`, ...), so the two
artifacts move through their phases independently.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel
from supabase import Client, create_client

from .config import Settings
from .errors import ProjectNotFoundError
from .models import AnalysisRecord, Benchmark, BenchmarkKind, Project, SourceKind

logger = logging.getLogger(__name__)

PROJECTS_TABLE = "projects"
BENCHMARK_TABLES: Dict[str, str] = {
    "signal": "website_tier_benchmarks",
    "claim": "whitepaper_claim_benchmarks",
    "evidence": "whitepaper_evidence_benchmarks",
}
# AnalysisRecord fields whose column name is not simply "<kind>_<field>"
COLUMN_ALIASES = {
    "source_url": "url",
    "website_status": "status",
    "final_tier": "tier",
    "final_score": "score",
    "last_error": "error",
}


def column_name(kind: SourceKind, field: str) -> str:
    return f"{kind.value}_{COLUMN_ALIASES.get(field, field)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialise(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def analysis_columns(kind: SourceKind, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Map AnalysisRecord field updates onto kind-prefixed, JSON-ready columns."""
    unknown = set(fields) - set(AnalysisRecord.model_fields)
    if unknown:
        raise ValueError(f"Unknown analysis fields: {', '.join(sorted(unknown))}")
    return {column_name(kind, field): _serialise(value) for field, value in fields.items()}


def row_to_project(row: Dict[str, Any]) -> Project:
    records = {}
    for kind in SourceKind:
        values = {}
        for field in AnalysisRecord.model_fields:
            if field == "kind":
                continue
            column = column_name(kind, field)
            if row.get(column) is not None:
                values[field] = row[column]
        records[kind.value] = AnalysisRecord(kind=kind, **values)
    return Project(id=str(row["id"]), symbol=row.get("symbol") or "", **records)


def row_to_benchmark(row: Dict[str, Any], kind: BenchmarkKind) -> Optional[Benchmark]:
    text = (
        row.get("benchmark_signal")
        or row.get("benchmark_claim")
        or row.get("benchmark_evidence")
        or row.get("description")
    )
    if not text or row.get("tier") is None:
        logger.warning("Skipping benchmark row without tier or text: %s", row.get("id"))
        return None
    return Benchmark(
        id=row.get("id"),
        tier=int(row["tier"]),
        category=row.get("signal_category") or row.get("category") or "other",
        benchmark_signal=text,
        kind=kind,
        is_active=row.get("is_active", True) is not False,
    )


class ProjectStore(Protocol):
    async def get_or_create(
        self,
        symbol: Optional[str],
        project_id: Optional[str] = None,
        source_url: Optional[str] = None,
        kind: SourceKind = SourceKind.WEBSITE,
    ) -> Project: ...

    async def get(self, project_id: str) -> Project: ...

    async def update(self, project_id: str, kind: SourceKind, **fields: Any) -> None: ...

    async def load_benchmarks(self, kind: BenchmarkKind) -> List[Benchmark]: ...

    async def list_pending(self, kind: SourceKind, limit: int = 50) -> List[Project]: ...


def get_supabase_client(settings: Settings) -> Client:
    """
    Create a Supabase client using the service role key.

    Raises:
        ConfigurationError: If SUPABASE_URL or SUPABASE_SERVICE_KEY is not set
    """
    settings.require("supabase_url", "supabase_service_key")
    return create_client(settings.supabase_url, settings.supabase_service_key)


class SupabaseProjectStore:
    def __init__(self, settings: Settings, client: Optional[Client] = None) -> None:
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_client(self.settings)
        return self._client

    async def get(self, project_id: str) -> Project:
        response = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .eq("id", project_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return row_to_project(response.data[0])

    async def get_or_create(
        self,
        symbol: Optional[str],
        project_id: Optional[str] = None,
        source_url: Optional[str] = None,
        kind: SourceKind = SourceKind.WEBSITE,
    ) -> Project:
        url_column = column_name(kind, "source_url")

        if project_id:
            project = await self.get(project_id)
        else:
            if not symbol:
                raise ValueError("A symbol is required to look up a project without an id")
            response = (
                self.client.table(PROJECTS_TABLE)
                .select("*")
                .eq("symbol", symbol)
                .limit(1)
                .execute()
            )
            if not response.data:
                logger.info("Creating project %s (%s=%s)", symbol, url_column, source_url)
                created = (
                    self.client.table(PROJECTS_TABLE)
                    .insert({"symbol": symbol, url_column: source_url})
                    .execute()
                )
                return row_to_project(created.data[0])
            project = row_to_project(response.data[0])

        if source_url and project.analysis(kind).source_url != source_url:
            logger.info("Updating %s for %s to %s", url_column, project.id, source_url)
            await self.update(project.id, kind, source_url=source_url)
            project = await self.get(project.id)
        return project

    async def update(self, project_id: str, kind: SourceKind, **fields: Any) -> None:
        columns = analysis_columns(kind, fields)
        logger.debug("Updating project %s: %s", project_id, sorted(columns))
        self.client.table(PROJECTS_TABLE).update(columns).eq("id", project_id).execute()

    async def load_benchmarks(self, kind: BenchmarkKind) -> List[Benchmark]:
        table = BENCHMARK_TABLES[kind]
        response = (
            self.client.table(table)
            .select("*")
            .eq("is_active", True)
            .order("tier", desc=True)
            .execute()
        )
        benchmarks = [b for b in (row_to_benchmark(row, kind) for row in response.data or []) if b]
        logger.info("Loaded %d %s benchmarks from %s", len(benchmarks), kind, table)
        return benchmarks

    async def list_pending(self, kind: SourceKind, limit: int = 50) -> List[Project]:
        """Projects with a URL for `kind` whose phases are not both completed."""
        extraction = column_name(kind, "extraction_status")
        comparison = column_name(kind, "comparison_status")
        response = (
            self.client.table(PROJECTS_TABLE)
            .select("*")
            .not_.is_(column_name(kind, "source_url"), "null")
            .or_(
                f"{extraction}.is.null,{extraction}.neq.completed,"
                f"{comparison}.is.null,{comparison}.neq.completed"
            )
            .limit(limit)
            .execute()
        )
        return [row_to_project(row) for row in response.data or []]
