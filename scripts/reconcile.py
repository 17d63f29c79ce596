#!/usr/bin/env python3
"""Print a Notion reconciliation report as JSON.

Usage:
    python scripts/reconcile.py
    python scripts/reconcile.py --output report.json

Exit code 0 when the report is healthy or mostly_synced, 1 otherwise
(needs_attention or error), so it can gate a scheduled job.

Reads DATABASE_URL and NOTION_* settings from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.backoffice.api.middleware.logging import configure_structlog  # noqa: E402
from src.backoffice.config import get_settings  # noqa: E402
from src.backoffice.core.database import close_db, get_session  # noqa: E402
from src.backoffice.sync.handlers import build_handlers  # noqa: E402
from src.backoffice.sync.notion import NotionWorkspaceAdapter  # noqa: E402
from src.backoffice.sync.ratelimit import RateLimiter  # noqa: E402
from src.backoffice.sync.reconciliation import ReconciliationReporter  # noqa: E402
from src.backoffice.sync.repository import EntityStore  # noqa: E402
from src.backoffice.sync.schemas import ReconciliationStatus  # noqa: E402

logger = structlog.get_logger(__name__)

_PASSING = {ReconciliationStatus.HEALTHY, ReconciliationStatus.MOSTLY_SYNCED}


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_structlog()

    if not settings.NOTION_TOKEN:
        logger.error("reconcile.notion_not_configured", hint="set NOTION_TOKEN")
        return 1

    adapter = NotionWorkspaceAdapter.from_token(
        settings.NOTION_TOKEN,
        rate_limiter=RateLimiter(settings.SYNC_RATE_LIMIT_PER_SECOND),
    )
    reporter = ReconciliationReporter(
        store=EntityStore(session_factory=get_session),
        adapter=adapter,
        handlers=build_handlers(settings),
        tolerance_seconds=settings.RECONCILIATION_TOLERANCE_SECONDS,
        drift_threshold=settings.RECONCILIATION_DRIFT_THRESHOLD,
    )
    try:
        report = await reporter.generate()
    finally:
        await adapter.aclose()
        await close_db()

    output = report.model_dump_json(indent=2)
    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        logger.info("reconcile.report_written", path=args.output, status=report.status.value)
    else:
        print(output)

    return 0 if report.status in _PASSING else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Compare local entities with their Notion pages")
    parser.add_argument("--output", help="Write the JSON report to this file instead of stdout")
    args = parser.parse_args()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
