"""
Reception Orchestrator Module
=============================

Orchestration layer for the review crawler.

Components:
    - CrawlOrchestrator: Sequential, resumable review crawl
    - CheckpointStore: Durable crawl progress
    - CLI: Command-line interface

Usage:
    from reception.orchestrator import CrawlOrchestrator

    with CrawlOrchestrator.from_settings() as orchestrator:
        result = orchestrator.run()
"""

from .checkpoint import CheckpointStore, CheckpointWriteError
from .crawl_pipeline import (
    CrawlOrchestrator,
    CrawlResult,
    CrawlStatus,
    SubjectOutcome,
    SubjectError,
    ItemError,
)

__all__ = [
    # Checkpoint
    "CheckpointStore",
    "CheckpointWriteError",
    # Crawl
    "CrawlOrchestrator",
    "CrawlResult",
    "CrawlStatus",
    "SubjectOutcome",
    "SubjectError",
    "ItemError",
]
