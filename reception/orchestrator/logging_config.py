"""
Reception Crawler Logging Configuration
=======================================

Every record emitted while a crawl is running carries the crawl's position:
the run id, the subject being crawled and the page being fetched. The
orchestrator declares that position with crawl_context(); a filter on each
handler copies it onto the record, so modules below the orchestrator
(fetcher, limiter, store) log with it without knowing about it.

Output:
- JSON lines with run_id / subject_id / page keys (cron runs, log aggregation)
- Human-readable lines prefixed with "[run 1a2b3c4d subject 5114 p3]"
- Optional rotating log file

Usage:
    from reception.orchestrator.logging_config import setup_logging, crawl_context

    setup_logging(json_output=True, log_file="logs/crawler.log")
    with crawl_context(run_id=run_id):
        with crawl_context(subject_id=5114):
            crawl_context_update(page=3)
            logger.info("Fetching page")
"""

import json
import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ("run_id", "subject_id", "page")

_crawl_position: ContextVar[Dict[str, Any]] = ContextVar("crawl_position", default={})


@contextmanager
def crawl_context(**fields):
    """Add fields to the crawl position for the duration of the block."""
    token = _crawl_position.set({**_crawl_position.get(), **fields})
    try:
        yield
    finally:
        _crawl_position.reset(token)


def crawl_context_update(**fields) -> None:
    """Change fields until the enclosing crawl_context() block exits (e.g. the page)."""
    _crawl_position.set({**_crawl_position.get(), **fields})


def current_crawl_context() -> Dict[str, Any]:
    return dict(_crawl_position.get())


class CrawlContextFilter(logging.Filter):
    """Stamps the current crawl position onto records that don't set it via extra=."""

    def filter(self, record: logging.LogRecord) -> bool:
        position = _crawl_position.get()
        for key in CONTEXT_FIELDS:
            if getattr(record, key, None) is None:
                setattr(record, key, position.get(key))

        parts = []
        if record.run_id is not None:
            parts.append(f"run {str(record.run_id)[:8]}")
        if record.subject_id is not None:
            parts.append(f"subject {record.subject_id}")
        if record.page is not None:
            parts.append(f"p{record.page}")
        record.crawl_prefix = f"[{' '.join(parts)}] " if parts else ""
        return True


class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Output format:
        {"ts": "2026-...", "level": "INFO", "logger": "reception.data.review_client",
         "msg": "...", "run_id": "...", "subject_id": 5114, "page": 3}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in CONTEXT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
):
    """
    Configure crawler logging.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON structured format
        log_file: Optional file path for log output (with rotation)
        max_bytes: Max file size before rotation
        backup_count: Number of rotated files to keep
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    if json_output:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)-36s | %(crawl_prefix)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        ))

    context_filter = CrawlContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    # requests logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
