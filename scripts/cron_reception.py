#!/usr/bin/env python3
"""
Reception Cron Crawl
====================

Scheduled review crawl: resumes the checkpoint, crawls the next batch of
subjects, then refreshes reception profiles older than a week.

Cron: Schedule every 6-12h
    Command: python scripts/cron_reception.py

Env vars:
    DATABASE_PASSWORD: Required
    CRON_SELECTION: priority | backfill | new (default: priority)
    CRON_MAX_SUBJECTS: Subjects per run (default: 50)
    CRON_ITEMS_PER_SUBJECT: Reviews per subject (default: 50)
    CRON_MAX_TOTAL: Reviews per run (default: 2000)
    CRON_STALE_LIMIT: Stale profiles to refresh per run (default: 100)
"""

import sys
import logging
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")

from reception.data.config import get_env, get_env_int, LoggingConfig
from reception.data.data_models import CrawlConfig
from reception.orchestrator.checkpoint import CheckpointWriteError
from reception.orchestrator.cli import EXIT_CODES
from reception.orchestrator.crawl_pipeline import CrawlOrchestrator, CrawlStatus
from reception.orchestrator.logging_config import setup_logging

logger = logging.getLogger("reception.cron")


def main():
    log_config = LoggingConfig()
    setup_logging(level=log_config.level, json_output=True, log_file=log_config.log_file)

    config = CrawlConfig(
        items_per_subject=get_env_int("CRON_ITEMS_PER_SUBJECT", 50),
        max_subjects=get_env_int("CRON_MAX_SUBJECTS", 50),
        max_total_items=get_env_int("CRON_MAX_TOTAL", 2000),
        selection=get_env("CRON_SELECTION", "priority"),
    )
    stale_limit = get_env_int("CRON_STALE_LIMIT", 100)

    logger.info("=" * 60)
    logger.info(f"RECEPTION CRON: mode={config.selection}, max_subjects={config.max_subjects}")
    logger.info("=" * 60)

    try:
        with CrawlOrchestrator.from_settings() as orchestrator:
            result = orchestrator.run(config, handle_signals=True)
            if result.status != CrawlStatus.INTERRUPTED:
                refreshed = orchestrator.aggregator.recompute_stale(limit=stale_limit)
                logger.info(f"Stale reception profiles refreshed: {refreshed}")
    except CheckpointWriteError as e:
        logger.error(f"Crawl aborted: {e}")
        return 1

    logger.info(
        f"Cron crawl {result.status.value}: {result.items_ingested} reviews, "
        f"{result.subjects_completed} subjects",
        extra={"run_id": result.run_id},
    )
    return EXIT_CODES[result.status]


if __name__ == "__main__":
    sys.exit(main())
