"""
Reception Data Module
=====================

Review source access and persistence for the reception crawler.

This module provides:
    - RateLimiter: Sliding-window admission control (per second and per minute)
    - ResilientFetcher: HTTP GET with retry/backoff for 429s and network errors
    - ReviewSourceClient: Paginated review pages for one subject
    - ReviewStore: PostgreSQL storage for subjects, reviews and reception data
    - Data models: ReviewItem, ReviewPage, RawReview, Subject, CrawlConfig, CrawlProgress

Quick Start:
    from reception.data import RateLimiter, ResilientFetcher, ReviewSourceClient

    fetcher = ResilientFetcher(RateLimiter())
    client = ReviewSourceClient(fetcher)
    page = client.fetch_review_page(5114, page=1)

Configuration:
    Set environment variables or create a .env file.

Required Environment Variables:
    DATABASE_PASSWORD: PostgreSQL password
"""

from .config import get_settings, load_settings, Settings
from .data_models import (
    SelectionMode,
    ErrorKind,
    ReviewItem,
    ReviewPage,
    RawReview,
    Subject,
    CrawlConfig,
    CurrentSubject,
    CrawlTotals,
    CrawlError,
    CrawlProgress,
)
from .rate_limiter import RateLimiter, RequestInterrupted
from .review_client import (
    ResilientFetcher,
    ReviewSourceClient,
    ReviewSourceError,
    RateLimitExceededError,
    SourceNetworkError,
    SourceHTTPError,
)
from .review_store import ReviewStore, DatabaseError

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "get_settings",
    "load_settings",
    "Settings",
    # Data models
    "SelectionMode",
    "ErrorKind",
    "ReviewItem",
    "ReviewPage",
    "RawReview",
    "Subject",
    "CrawlConfig",
    "CurrentSubject",
    "CrawlTotals",
    "CrawlError",
    "CrawlProgress",
    # Source
    "RateLimiter",
    "RequestInterrupted",
    "ResilientFetcher",
    "ReviewSourceClient",
    "ReviewSourceError",
    "RateLimitExceededError",
    "SourceNetworkError",
    "SourceHTTPError",
    # Storage
    "ReviewStore",
    "DatabaseError",
]
