#!/usr/bin/env python3
"""
Command-line tool for running the analysis pipeline.

Usage:
    tierscope analyze KTA https://keeta.com --verify 0xc063...
    tierscope analyze KTA https://keeta.com/whitepaper.pdf --kind whitepaper
    tierscope score PROJECT_ID
    tierscope reprocess --kind website --limit 20
    tierscope fetch https://example.com/whitepaper
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

import httpx

from .acquisition import ContentFetcher, ContentValidator, RenderClient
from .config import Settings
from .errors import PipelineError
from .models import AnalysisRequest, SourceKind
from .notifications import NullNotifier
from .orchestrator import build_orchestrator

logger = logging.getLogger(__name__)

REPROCESS_DELAY_SECONDS = 2.0


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def cmd_analyze(args, settings: Settings) -> int:
    """Run Phase 1 and wait for the chained Phase 2."""
    async with httpx.AsyncClient() as client:
        orchestrator = build_orchestrator(settings, client, notifier=NullNotifier())
        request = AnalysisRequest(
            phase=1,
            symbol=args.symbol,
            project_id=args.project_id,
            source_url=args.url,
            verification_target=args.verify,
            force_reanalysis=args.force,
            source_kind=SourceKind(args.kind),
        )
        print(f"🔍 Phase 1: {args.symbol} ({args.kind}) {args.url}")
        result = await orchestrator.handle(request)
        print(f"✓ {result.message} (status={result.status.value}, cached={result.cached})")

        if result.phase2_scheduled:
            print("⏳ Waiting for Phase 2...")
            await orchestrator.chainer.drain()
            project = await orchestrator.store.get(result.project_id)
            record = project.analysis(request.source_kind)
            if record.comparison is not None:
                _print_json(record.comparison.model_dump(mode="json"))
            else:
                print(f"✗ Phase 2 did not complete: {record.last_error or record.comparison_status.value}")
                return 1
    return 0


async def cmd_score(args, settings: Settings) -> int:
    async with httpx.AsyncClient() as client:
        orchestrator = build_orchestrator(settings, client, notifier=NullNotifier())
        request = AnalysisRequest(
            phase=2,
            project_id=args.project_id,
            source_kind=SourceKind(args.kind),
            force_reanalysis=args.force,
        )
        result = await orchestrator.handle(request)
        print(f"✓ {result.message}")
        if result.comparison is not None:
            _print_json(result.comparison.model_dump(mode="json"))
    return 0


async def cmd_reprocess(args, settings: Settings) -> int:
    """Re-run every project whose phases for `kind` are not both completed."""
    kind = SourceKind(args.kind)
    failures = 0
    async with httpx.AsyncClient() as client:
        orchestrator = build_orchestrator(settings, client)
        projects = await orchestrator.store.list_pending(kind, limit=args.limit)
        print(f"📦 {len(projects)} {kind.value} projects to reprocess")

        for position, project in enumerate(projects, start=1):
            record = project.analysis(kind)
            print(f"[{position}/{len(projects)}] {project.symbol}: {record.source_url}")
            try:
                if record.extraction_status.value != "completed":
                    await orchestrator.handle(
                        AnalysisRequest(
                            phase=1,
                            project_id=project.id,
                            symbol=project.symbol,
                            source_url=record.source_url,
                            source_kind=kind,
                            force_reanalysis=True,
                        )
                    )
                    await orchestrator.chainer.drain()
                else:
                    await orchestrator.handle(
                        AnalysisRequest(phase=2, project_id=project.id, source_kind=kind, force_reanalysis=True)
                    )
                print("  ✓ done")
            except PipelineError as exc:
                failures += 1
                print(f"  ✗ {exc.stage}: {exc}")

            if position < len(projects):
                await asyncio.sleep(REPROCESS_DELAY_SECONDS)

    print(f"\nFinished with {failures} failures")
    return 1 if failures else 0


async def cmd_fetch(args, settings: Settings) -> int:
    """Run only the acquisition chain and show how content was obtained."""
    async with httpx.AsyncClient() as client:
        renderer = RenderClient(settings, client) if settings.scraperapi_key else None
        fetcher = ContentFetcher(settings, client, renderer=renderer, validator=ContentValidator(settings))
        result = await fetcher.acquire(args.url)

    print(f"Strategy: {result.strategy.value}")
    print(f"Length:   {len(result.content)} chars (original {result.original_length} bytes)")
    print(f"Complete: {result.is_complete}")
    print("Trail:")
    for entry in result.trail:
        print(f"  - {entry}")
    if args.show:
        print()
        print(result.content[: args.show])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tierscope",
        description="Tier classification of crypto projects from their websites and whitepapers",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    kinds = [kind.value for kind in SourceKind]

    analyze_parser = subparsers.add_parser("analyze", help="Run Phase 1 and the chained Phase 2")
    analyze_parser.add_argument("symbol", help="Project ticker symbol")
    analyze_parser.add_argument("url", help="Website or whitepaper URL")
    analyze_parser.add_argument("--kind", choices=kinds, default="website")
    analyze_parser.add_argument("--project-id", help="Existing project id")
    analyze_parser.add_argument("--verify", help="Identifier (e.g. contract address) to look for")
    analyze_parser.add_argument("--force", action="store_true", help="Ignore cached results")

    score_parser = subparsers.add_parser("score", help="Run Phase 2 for a project")
    score_parser.add_argument("project_id", help="Project id")
    score_parser.add_argument("--kind", choices=kinds, default="website")
    score_parser.add_argument("--force", action="store_true", help="Re-score a completed project")

    reprocess_parser = subparsers.add_parser("reprocess", help="Re-run incomplete projects")
    reprocess_parser.add_argument("--kind", choices=kinds, default="website")
    reprocess_parser.add_argument("--limit", type=int, default=50)

    fetch_parser = subparsers.add_parser("fetch", help="Run the acquisition chain only")
    fetch_parser.add_argument("url", help="URL to fetch")
    fetch_parser.add_argument("--show", type=int, default=0, help="Print the first N characters")

    return parser


COMMANDS = {
    "analyze": cmd_analyze,
    "score": cmd_score,
    "reprocess": cmd_reprocess,
    "fetch": cmd_fetch,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = Settings.from_env()
        return asyncio.run(COMMANDS[args.command](args, settings))
    except PipelineError as exc:
        print(f"✗ [{exc.stage}] {exc}", file=sys.stderr)
        if exc.detail:
            print(f"  {exc.detail}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
