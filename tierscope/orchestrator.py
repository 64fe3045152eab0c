from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Set, Union

import httpx

from .acquisition import ContentFetcher, ContentValidator, RenderClient
from .classification import TierClassifier
from .config import Settings
from .errors import (
    AcquisitionError,
    ContentTooLargeError,
    PhaseOrderError,
    PipelineError,
    PipelineTimeoutError,
)
from .extraction import SignalExtractor
from .llm import InferenceClient
from .models import (
    AnalysisRequest,
    ExtractionBundle,
    PhaseOneResult,
    PhaseStatus,
    PhaseTwoResult,
    Project,
    SourceKind,
)
from .notifications import NullNotifier, TelegramNotifier
from .preprocessing import PreprocessingStage
from .storage import ProjectStore, SupabaseProjectStore, utcnow

logger = logging.getLogger(__name__)

PhaseResult = Union[PhaseOneResult, PhaseTwoResult]


@dataclass
class ChainOutcome:
    """Result of one chained Phase 2 dispatch.

    Over HTTP, `accepted` means the service answered 2xx. In-process there is
    no separate acceptance step, so it means the phase ran to completion
    within the request timeout.
    """

    project_id: str
    accepted: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class PhaseChainer:
    """Runs chained Phase 2 calls on a bounded set of background tasks.

    Scheduling returns immediately. Each task waits the settle delay, then
    either POSTs the Phase 2 request to the service URL (accepted means a 2xx
    answer) or runs it in-process through `dispatch`, normally the
    orchestrator's `handle` so the request timeout applies. Outcomes are logged,
    failures are also sent to the notifier, and recent outcomes are kept in
    `outcomes` for inspection.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        dispatch: Optional[Callable[[AnalysisRequest], Awaitable[Any]]] = None,
        client: Optional[httpx.AsyncClient] = None,
        notifier=None,
    ) -> None:
        self.settings = settings
        self.dispatch = dispatch
        self.client = client
        self.notifier = notifier or NullNotifier()
        self._semaphore = asyncio.Semaphore(max(1, settings.chain_max_workers))
        self._tasks: Set[asyncio.Task] = set()
        self.outcomes: Deque[ChainOutcome] = deque(maxlen=100)

    def schedule(self, request: AnalysisRequest) -> asyncio.Task:
        task = asyncio.create_task(self._run(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled chain to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, request: AnalysisRequest) -> ChainOutcome:
        async with self._semaphore:
            await asyncio.sleep(self.settings.phase_settle_seconds)
            if self.settings.service_url and self.client is not None:
                outcome = await self._post(request)
            else:
                outcome = await self._call(request)

        self.outcomes.append(outcome)
        if outcome.accepted:
            logger.info("Phase 2 for %s accepted (status %s)", outcome.project_id, outcome.status_code)
        else:
            logger.error("Phase 2 for %s not accepted: %s", outcome.project_id, outcome.error)
        return outcome

    async def _post(self, request: AnalysisRequest) -> ChainOutcome:
        url = self.settings.service_url.rstrip("/") + "/analyze"
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        try:
            response = await self.client.post(url, json=payload, timeout=self.settings.request_timeout)
        except httpx.HTTPError as exc:
            await self.notifier.notify(f"⚠️ Phase 2 trigger failed for `{request.project_id}`: {exc}")
            return ChainOutcome(request.project_id, accepted=False, error=str(exc))

        accepted = 200 <= response.status_code < 300
        if not accepted:
            await self.notifier.notify(
                f"⚠️ Phase 2 trigger for `{request.project_id}` returned HTTP {response.status_code}"
            )
        return ChainOutcome(
            request.project_id,
            accepted=accepted,
            status_code=response.status_code,
            error=None if accepted else response.text[:500],
        )

    async def _call(self, request: AnalysisRequest) -> ChainOutcome:
        if self.dispatch is None:
            return ChainOutcome(request.project_id, accepted=False, error="No Phase 2 dispatcher configured")
        try:
            await self.dispatch(request)
        except Exception as exc:
            # The phase itself has already recorded and reported the failure
            return ChainOutcome(request.project_id, accepted=False, error=str(exc))
        return ChainOutcome(request.project_id, accepted=True)


class PipelineOrchestrator:
    """Drives a project's artifact through Phase 1 (extraction) and Phase 2 (tiering).

    Per phase and artifact: not_started -> in_progress -> completed | failed.
    All state lives in the store; nothing is shared between requests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: ProjectStore,
        fetcher: ContentFetcher,
        extractor: SignalExtractor,
        classifier: TierClassifier,
        preprocessor: Optional[PreprocessingStage] = None,
        notifier=None,
        chainer: Optional[PhaseChainer] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.classifier = classifier
        self.preprocessor = preprocessor or PreprocessingStage(settings)
        self.notifier = notifier or NullNotifier()
        self.chainer = chainer or PhaseChainer(settings, dispatch=self.handle, notifier=self.notifier)

    async def handle(self, request: AnalysisRequest) -> PhaseResult:
        """Run the requested phase under the overall request timeout."""
        try:
            return await asyncio.wait_for(self.run(request), timeout=self.settings.request_timeout)
        except asyncio.TimeoutError as exc:
            raise PipelineTimeoutError(
                f"Phase {request.phase} exceeded the {self.settings.request_timeout}s request timeout"
            ) from exc

    async def run(self, request: AnalysisRequest) -> PhaseResult:
        if request.phase == 1:
            return await self.run_phase_one(request)
        return await self.run_phase_two(request)

    # Phase 1

    async def run_phase_one(self, request: AnalysisRequest) -> PhaseOneResult:
        kind = request.source_kind
        project = await self.store.get_or_create(
            request.symbol, request.project_id, request.source_url, kind
        )
        record = project.analysis(kind)
        base = dict(project_id=project.id, symbol=project.symbol, source_kind=kind)

        if not request.force_reanalysis:
            if record.extraction_status == PhaseStatus.COMPLETED:
                logger.info("Phase 1 for %s/%s already completed, reusing signals", project.id, kind.value)
                bundle = record.extraction
                return PhaseOneResult(
                    **base,
                    status=PhaseStatus.COMPLETED,
                    cached=True,
                    website_status=record.website_status,
                    fetch_strategy=record.fetch_strategy,
                    preprocess_method=record.preprocess_method,
                    signals_count=len(bundle.signals) if bundle else 0,
                    extraction=bundle,
                    message="Cached Phase 1 result",
                )
            if record.extraction_status == PhaseStatus.IN_PROGRESS:
                logger.info("Phase 1 for %s/%s already in progress, skipping", project.id, kind.value)
                return PhaseOneResult(
                    **base,
                    status=PhaseStatus.IN_PROGRESS,
                    skipped=True,
                    message="Phase 1 already in progress",
                )

        # A forced run replaces earlier results; nothing is merged
        await self._transition(
            project,
            kind,
            1,
            PhaseStatus.IN_PROGRESS,
            last_error=None,
            needs_special_handling=False,
            extraction=None,
            comparison_status=PhaseStatus.NOT_STARTED,
            comparison=None,
            final_tier=None,
            final_score=None,
        )

        url = request.source_url or record.source_url
        try:
            fetched = await self.fetcher.acquire(url)
            outcome = self.preprocessor.run(fetched.analysis_input, is_markup=fetched.markup is not None)
            bundle = await self.extractor.extract(
                outcome.content,
                symbol=project.symbol,
                url=fetched.url,
                kind=kind,
                verification_target=request.verification_target,
                preprocess=outcome,
            )
        except AcquisitionError as exc:
            website_status = "dead" if exc.looks_dead else "blocked" if exc.looks_blocked else None
            await self._fail(project, kind, 1, exc, website_status=website_status)
            raise
        except ContentTooLargeError as exc:
            await self._fail(project, kind, 1, exc, needs_special_handling=True)
            raise
        except (PipelineError, asyncio.CancelledError) as exc:
            await self._fail(project, kind, 1, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected Phase 1 failure for %s", project.id)
            await self._fail(project, kind, 1, exc)
            raise

        await self._transition(
            project,
            kind,
            1,
            PhaseStatus.COMPLETED,
            website_status=bundle.website_status,
            content=fetched.content[: self.settings.stored_content_cap],
            fetch_strategy=fetched.strategy,
            preprocess_method=outcome.method,
            extraction=bundle,
            extraction_completed_at=utcnow(),
        )

        scheduled = False
        if bundle.website_status == "active":
            self.chainer.schedule(
                AnalysisRequest(phase=2, project_id=project.id, symbol=project.symbol, source_kind=kind)
            )
            scheduled = True
        else:
            logger.info(
                "%s %s is %s, Phase 2 not triggered", project.symbol, kind.value, bundle.website_status
            )

        return PhaseOneResult(
            **base,
            status=PhaseStatus.COMPLETED,
            website_status=bundle.website_status,
            fetch_strategy=fetched.strategy,
            content_complete=fetched.is_complete,
            preprocess_method=outcome.method,
            signals_count=len(bundle.signals),
            extraction=bundle,
            phase2_scheduled=scheduled,
            message=f"Extracted {len(bundle.signals)} signals",
        )

    # Phase 2

    async def run_phase_two(self, request: AnalysisRequest) -> PhaseTwoResult:
        kind = request.source_kind
        project = await self.store.get(request.project_id)
        record = project.analysis(kind)
        base = dict(project_id=project.id, symbol=project.symbol, source_kind=kind)

        if record.extraction_status != PhaseStatus.COMPLETED:
            raise PhaseOrderError(
                f"Phase 2 requires a completed Phase 1 for {project.id} "
                f"({kind.value} extraction is {record.extraction_status.value})"
            )

        if not request.force_reanalysis:
            if record.comparison_status == PhaseStatus.COMPLETED:
                return PhaseTwoResult(
                    **base,
                    status=PhaseStatus.COMPLETED,
                    skipped=True,
                    comparison=record.comparison,
                    message="Phase 2 already completed",
                )
            if record.comparison_status == PhaseStatus.IN_PROGRESS:
                return PhaseTwoResult(
                    **base,
                    status=PhaseStatus.IN_PROGRESS,
                    skipped=True,
                    message="Phase 2 already in progress",
                )

        await self._transition(project, kind, 2, PhaseStatus.IN_PROGRESS, last_error=None)

        bundle = record.extraction or ExtractionBundle()
        try:
            if kind == SourceKind.WEBSITE:
                benchmarks = await self.store.load_benchmarks("signal")
                comparison = await self.classifier.classify(bundle, benchmarks, symbol=project.symbol)
            else:
                claims = await self.store.load_benchmarks("claim")
                evidence = await self.store.load_benchmarks("evidence")
                comparison = await self.classifier.classify_document(
                    bundle, claims, evidence, symbol=project.symbol
                )
        except (PipelineError, asyncio.CancelledError) as exc:
            await self._fail(project, kind, 2, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected Phase 2 failure for %s", project.id)
            await self._fail(project, kind, 2, exc)
            raise

        await self._transition(
            project,
            kind,
            2,
            PhaseStatus.COMPLETED,
            comparison=comparison,
            final_tier=comparison.final_tier,
            final_score=comparison.final_score,
            last_error=comparison.explanation if comparison.evaluation_failed else None,
            comparison_completed_at=utcnow(),
        )
        if comparison.evaluation_failed:
            await self.notifier.notify(
                f"⚠️ *{project.symbol}* {kind.value} comparison failed closed to tier 4: "
                f"{comparison.explanation}"
            )

        return PhaseTwoResult(
            **base,
            status=PhaseStatus.COMPLETED,
            comparison=comparison,
            message=f"Tier {comparison.final_tier} ({comparison.tier_name}), score {comparison.final_score}",
        )

    # State transitions

    async def _transition(
        self, project: Project, kind: SourceKind, phase: int, status: PhaseStatus, **fields: Any
    ) -> None:
        status_field = "extraction_status" if phase == 1 else "comparison_status"
        logger.info("Project %s %s phase %d -> %s", project.id, kind.value, phase, status.value)
        await self.store.update(project.id, kind, **{status_field: status}, **fields)

    async def _fail(
        self, project: Project, kind: SourceKind, phase: int, exc: BaseException, **fields: Any
    ) -> None:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, asyncio.CancelledError):
            message = "Cancelled (request timeout)"
        detail = getattr(exc, "detail", None)
        error_text = f"{message} | {detail}" if detail else message
        try:
            await self._transition(project, kind, phase, PhaseStatus.FAILED, last_error=error_text[:2000], **fields)
        except Exception:
            logger.exception("Could not record Phase %d failure for %s", phase, project.id)
        await self.notifier.notify(
            f"❌ *{project.symbol}* {kind.value} phase {phase} failed "
            f"[{getattr(exc, 'stage', 'unexpected')}]: {message[:300]}"
        )


def build_orchestrator(
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    store: Optional[ProjectStore] = None,
    inference=None,
    notifier=None,
) -> PipelineOrchestrator:
    """Wire the production components around one shared HTTP client."""
    inference = inference or InferenceClient(settings)
    notifier = notifier or TelegramNotifier(settings, client)
    renderer = RenderClient(settings, client) if settings.scraperapi_key else None
    fetcher = ContentFetcher(
        settings,
        client,
        renderer=renderer,
        validator=ContentValidator(settings, inference),
    )
    orchestrator = PipelineOrchestrator(
        settings,
        store=store or SupabaseProjectStore(settings),
        fetcher=fetcher,
        extractor=SignalExtractor(settings, inference),
        classifier=TierClassifier(settings, inference),
        notifier=notifier,
    )
    orchestrator.chainer = PhaseChainer(
        settings, dispatch=orchestrator.handle, client=client, notifier=notifier
    )
    return orchestrator
