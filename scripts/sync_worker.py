#!/usr/bin/env python3
"""Standalone Notion sync worker.

Usage:
    python scripts/sync_worker.py            # poll until interrupted
    python scripts/sync_worker.py --once     # single drain, then exit
    python scripts/sync_worker.py --once --max-jobs 50

Runs the same QueueProcessor the API starts in-process, so the API can be
deployed with SYNC_WORKER_ENABLED=false and workers scaled separately.
Claims are atomic, so several workers can drain one queue.

Reads DATABASE_URL and NOTION_* settings from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.backoffice.api.middleware.logging import configure_structlog  # noqa: E402
from src.backoffice.config import get_settings  # noqa: E402
from src.backoffice.core.database import close_db, get_session, init_db  # noqa: E402
from src.backoffice.sync.handlers import build_handlers  # noqa: E402
from src.backoffice.sync.notion import NotionWorkspaceAdapter  # noqa: E402
from src.backoffice.sync.processor import QueueProcessor  # noqa: E402
from src.backoffice.sync.queue import SyncJobQueue  # noqa: E402
from src.backoffice.sync.ratelimit import RateLimiter  # noqa: E402
from src.backoffice.sync.repository import EntityStore  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_structlog()

    if not settings.NOTION_TOKEN:
        logger.error("worker.notion_not_configured", hint="set NOTION_TOKEN")
        return 1

    await init_db()
    queue = SyncJobQueue(
        session_factory=get_session,
        max_retries=settings.SYNC_MAX_RETRIES,
        backoff_base=settings.SYNC_BACKOFF_BASE_SECONDS,
        backoff_max=settings.SYNC_BACKOFF_MAX_SECONDS,
    )
    adapter = NotionWorkspaceAdapter.from_token(
        settings.NOTION_TOKEN,
        rate_limiter=RateLimiter(settings.SYNC_RATE_LIMIT_PER_SECOND),
    )
    processor = QueueProcessor(
        queue=queue,
        store=EntityStore(session_factory=get_session),
        adapter=adapter,
        handlers=build_handlers(settings),
        concurrency=args.concurrency or settings.SYNC_CONCURRENCY,
        poll_interval=settings.SYNC_POLL_INTERVAL_SECONDS,
    )

    try:
        recovered = await queue.recover_stale(settings.SYNC_STALE_CLAIM_SECONDS)
        if recovered:
            logger.info("worker.stale_jobs_recovered", count=recovered)

        if args.once:
            summary = await processor.drain(max_jobs=args.max_jobs)
            print(json.dumps(summary.model_dump(), indent=2))
            return 0

        try:
            await processor.run()
        except asyncio.CancelledError:
            processor.stop()
        return 0
    finally:
        await adapter.aclose()
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Drain the Notion sync job queue")
    parser.add_argument("--once", action="store_true", help="Run a single drain and exit")
    parser.add_argument("--max-jobs", type=int, default=None, help="Limit jobs claimed with --once")
    parser.add_argument("--concurrency", type=int, default=None, help="Override SYNC_CONCURRENCY")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(main_async(args)))
    except KeyboardInterrupt:
        logger.info("worker.interrupted")


if __name__ == "__main__":
    main()
