from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

import httpx

from ..config import Settings
from ..errors import AcquisitionError, ContentFormatError, PipelineError
from ..models import FetchResult, FetchStrategy
from .formats import decode_bytes, detect_format, extract_pdf_text, html_to_text
from .recovery import (
    ProbePathPattern,
    RecoveryAction,
    TryAlternateUrl,
    UseHeadlessRender,
    describe,
)
from .rendering import RenderClient
from .validator import ContentValidator, ValidationVerdict

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}
DEAD_STATUS_CODES = {404, 410}
BLOCKED_STATUS_CODES = {401, 403, 429, 451}


@dataclass
class _Attempt:
    url: str
    content: str
    markup: Optional[str]
    strategy: FetchStrategy
    content_type: str
    original_length: int


def _longer(current: Optional[_Attempt], candidate: Optional[_Attempt]) -> Optional[_Attempt]:
    if candidate is None:
        return current
    if current is None or len(candidate.content) > len(current.content):
        return candidate
    return current


class ContentFetcher:
    """Retrieve usable text from a URL through an ordered fallback chain.

    direct fetch -> format-aware extraction -> script rendering (twice, with a
    longer settle time) -> validator-proposed recovery actions. The longest
    successful result wins. Every failure is recorded in a diagnostic trail,
    and nothing but AcquisitionError escapes `acquire`.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        *,
        renderer: Optional[RenderClient] = None,
        validator: Optional[ContentValidator] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.renderer = renderer
        self.validator = validator or ContentValidator(settings)

    async def acquire(self, url: str) -> FetchResult:
        trail: List[str] = []
        try:
            return await self._acquire(url, trail)
        except AcquisitionError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure acquiring %s", url)
            trail.append(f"unexpected: {exc}")
            raise AcquisitionError(f"Unexpected failure acquiring {url}: {exc}", trail=trail) from exc

    async def _acquire(self, url: str, trail: List[str]) -> FetchResult:
        best: Optional[_Attempt] = None
        failure: Optional[str] = None
        status_code: Optional[int] = None
        looks_dead = looks_blocked = False

        try:
            best = await self.fetch_direct(url, FetchStrategy.DIRECT, trail)
            trail.append(f"direct: {len(best.content)} chars via {best.strategy.value}")
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            looks_dead = status_code in DEAD_STATUS_CODES or status_code >= 500
            looks_blocked = status_code in BLOCKED_STATUS_CODES
            failure = f"HTTP {status_code}"
            trail.append(f"direct: {failure}")
        except httpx.TimeoutException:
            failure = f"timed out after {self.settings.fetch_timeout}s"
            trail.append(f"direct: {failure}")
        except httpx.RequestError as exc:
            looks_dead = isinstance(exc, httpx.ConnectError)
            failure = f"network error: {exc}"
            trail.append(f"direct: {failure}")

        low_signal = best is not None and best.markup is not None and (
            len(best.content) < self.settings.low_signal_chars
        )
        if low_signal or (best is None and not looks_dead):
            if low_signal:
                logger.info(
                    "Direct fetch of %s returned minimal content (%d chars), rendering",
                    url,
                    len(best.content),
                )
            best = _longer(best, await self._render_with_retry(url, trail))

        if best is not None:
            failure = None
        verdict = await self.validator.validate(
            best.content if best else "", url, failure=failure
        )

        if not verdict.is_complete and verdict.suggestions:
            logger.info("Content for %s incomplete, trying %s", url, describe(verdict.suggestions))
            best, verdict = await self._recover(url, best, verdict, trail)

        if best is None or not (best.content.strip() or (best.markup or "").strip()):
            raise AcquisitionError(
                f"No usable content retrieved from {url}",
                trail=trail,
                status_code=status_code,
                looks_dead=looks_dead,
                looks_blocked=looks_blocked,
            )

        if len(best.content) < self.settings.min_usable_chars:
            # The page loaded; parking and placeholder pages are judged by extraction
            logger.warning(
                "Only %d chars of text from %s after every strategy, passing it on as incomplete",
                len(best.content),
                best.url,
            )
            trail.append(f"below {self.settings.min_usable_chars} chars, returned as incomplete")
            verdict = ValidationVerdict(is_complete=False, reason="Below minimum usable length")

        logger.info(
            "Acquired %d chars from %s via %s (complete=%s)",
            len(best.content),
            best.url,
            best.strategy.value,
            verdict.is_complete,
        )
        return FetchResult(
            url=best.url,
            content=best.content,
            markup=best.markup,
            strategy=best.strategy,
            content_type=best.content_type,
            original_length=best.original_length,
            is_complete=verdict.is_complete,
            trail=trail,
        )

    async def fetch_direct(
        self, url: str, strategy: FetchStrategy, trail: Optional[List[str]] = None
    ) -> _Attempt:
        """One plain GET, read according to the detected payload format."""
        response = await self.client.get(
            url,
            headers=DEFAULT_HEADERS,
            timeout=self.settings.fetch_timeout,
            follow_redirects=True,
        )
        response.raise_for_status()

        body = response.content
        content_type = response.headers.get("content-type", "")
        fmt = detect_format(content_type, body, url)
        logger.debug(
            "Fetched %s: %d bytes, content-type=%r, first bytes=%r, detected=%s",
            url,
            len(body),
            content_type,
            body[:8],
            fmt,
        )

        markup: Optional[str] = None
        if fmt == "pdf":
            try:
                content = extract_pdf_text(body)
                if strategy == FetchStrategy.DIRECT:
                    strategy = FetchStrategy.PDF_EXTRACTED
            except ContentFormatError as exc:
                logger.warning("%s; reading %s as text", exc, url)
                if trail is not None:
                    trail.append(f"pdf extraction failed for {url}: {exc}")
                content = html_to_text(decode_bytes(body, response.encoding))
        elif fmt == "markup":
            markup = decode_bytes(body, response.encoding)
            content = html_to_text(markup)
        else:
            content = " ".join(decode_bytes(body, response.encoding).split())

        return _Attempt(
            url=str(response.url),
            content=content,
            markup=markup,
            strategy=strategy,
            content_type=content_type,
            original_length=len(body),
        )

    async def render(
        self, url: str, *, wait_ms: int, selector: Optional[str] = None
    ) -> _Attempt:
        if self.renderer is None:
            raise AcquisitionError("No rendering service configured")
        markup = await self.renderer.render(url, wait_ms=wait_ms, selector=selector)
        return _Attempt(
            url=url,
            content=html_to_text(markup),
            markup=markup,
            strategy=FetchStrategy.RENDERED,
            content_type="text/html",
            original_length=len(markup),
        )

    async def _render_with_retry(self, url: str, trail: List[str]) -> Optional[_Attempt]:
        best: Optional[_Attempt] = None
        for wait_ms in (self.settings.render_settle_ms, self.settings.render_retry_settle_ms):
            try:
                attempt = await self.render(url, wait_ms=wait_ms)
            except (httpx.HTTPError, PipelineError) as exc:
                trail.append(f"render wait={wait_ms}ms: {exc}")
                # A missing service or credential will not fix itself on retry
                if isinstance(exc, PipelineError):
                    break
                continue
            trail.append(f"render wait={wait_ms}ms: {len(attempt.content)} chars")
            best = _longer(best, attempt)
            if len(best.content) >= self.settings.low_signal_chars:
                break
            logger.info("Only %d chars after render of %s, possible loading screen", len(attempt.content), url)
        return best

    async def dispatch(
        self, action: RecoveryAction, url: str, trail: List[str]
    ) -> Optional[_Attempt]:
        """Run one recovery action; failures are recorded and return None."""
        try:
            if isinstance(action, UseHeadlessRender):
                target = action.url or url
                attempt = await self.render(
                    target, wait_ms=self.settings.render_settle_ms, selector=action.selector
                )
                trail.append(f"recovery render {target}: {len(attempt.content)} chars")
                return attempt
            if isinstance(action, TryAlternateUrl):
                attempt = await self.fetch_direct(action.url, FetchStrategy.ALTERNATE_URL, trail)
                trail.append(f"recovery url {action.url}: {len(attempt.content)} chars")
                return attempt
            if isinstance(action, ProbePathPattern):
                return await self._probe(url, action.patterns, trail)
        except (httpx.HTTPError, PipelineError) as exc:
            trail.append(f"recovery {action.action}: {exc}")
            return None

        logger.warning("Ignoring unsupported recovery action %r", action)
        return None

    async def _probe(self, url: str, patterns: List[str], trail: List[str]) -> Optional[_Attempt]:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        best: Optional[_Attempt] = None
        for pattern in patterns:
            candidate_url = origin + pattern
            try:
                attempt = await self.fetch_direct(candidate_url, FetchStrategy.PATTERN_MATCHED, trail)
            except (httpx.HTTPError, PipelineError) as exc:
                trail.append(f"probe {candidate_url}: {exc.__class__.__name__}")
                continue
            trail.append(f"probe {candidate_url}: {len(attempt.content)} chars")
            best = _longer(best, attempt)
            if len(best.content) > self.settings.complete_content_chars:
                break
        return best

    async def _recover(
        self,
        url: str,
        best: Optional[_Attempt],
        verdict: ValidationVerdict,
        trail: List[str],
    ):
        for action in verdict.suggestions:
            candidate = await self.dispatch(action, url, trail)
            if candidate is None:
                continue
            improved = _longer(best, candidate)
            if improved is best:
                continue
            best = improved
            verdict = await self.validator.validate(best.content, best.url)
            if verdict.is_complete:
                logger.info("Recovery via %s produced complete content", action.action)
                break
        return best, verdict
