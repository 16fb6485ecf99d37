#!/usr/bin/env python3
"""
Command line entry point.

Usage:
    canary-promoter run --image-tag 1.4.2 --image-digest sha256:... \\
        --approve approver=alice --approve change_summary="Fix checkout"
    canary-promoter serve --port 8080
"""
import argparse
import asyncio
import json
import sys
from typing import List, Optional, Tuple

from loguru import logger

from src.promoter.core.config import settings
from src.promoter.core.logging import setup_logging
from src.promoter.deployment.approval import StaticApprovalGate
from src.promoter.deployment.coordinator import BuildInfo, PipelineResult
from src.promoter.monitoring.tracing import setup_tracing
from src.promoter.services.promotion_service import build_coordinator


def key_value(pair: str) -> Tuple[str, str]:
    """Parse a ``KEY=VALUE`` approval answer."""
    key, sep, value = pair.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
    return key.strip(), value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="canary-promoter", description=__doc__.strip().splitlines()[0])
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Promote one build through dev, stage and prod")
    run.add_argument("--image-tag", required=True)
    run.add_argument("--image-digest", default="")
    run.add_argument("--git-tag", default=None, help="Release tag; enables the prod stage")
    run.add_argument("--upstream-status", default="success", help="Result of the upstream pipeline")
    run.add_argument("--change-summary", default="")
    run.add_argument("--force-prod", action="store_true", help="Release to prod without a tag")
    run.add_argument(
        "--allow-unclean-prod",
        action="store_true",
        help="Allow a prod release when the upstream result is not clean",
    )
    run.add_argument(
        "--approve",
        action="append",
        default=[],
        type=key_value,
        metavar="KEY=VALUE",
        help="Answer for an approval field (repeatable)",
    )
    run.add_argument("--reject", action="store_true", help="Decline every approval gate")

    serve = commands.add_parser("serve", help="Run the approval and promotion API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8080)

    return parser


async def run_promotion(args: argparse.Namespace) -> PipelineResult:
    active = settings.model_copy(update={
        "FORCE_PROD": settings.FORCE_PROD or args.force_prod,
        "ALLOW_UNCLEAN_PROD": settings.ALLOW_UNCLEAN_PROD or args.allow_unclean_prod,
    })
    gate = StaticApprovalGate(dict(args.approve), approve=not args.reject)
    coordinator = build_coordinator(gate, active)
    build = BuildInfo(
        image_tag=args.image_tag,
        image_digest=args.image_digest,
        git_tag=args.git_tag,
        upstream_status=args.upstream_status,
        change_summary=args.change_summary,
    )
    try:
        return await coordinator.run(build)
    finally:
        await coordinator.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn
        uvicorn.run("src.promoter.main:app", host=args.host, port=args.port)
        return 0

    setup_logging()
    setup_tracing()
    result = asyncio.run(run_promotion(args))
    print(json.dumps(result.to_dict(), indent=2, default=str))

    if not result.succeeded:
        logger.error("Promotion failed; re-run the pipeline to retry")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
