"""
Review Source Client
====================

HTTP client for a Jikan-compatible paginated review API with shared rate
limiting, retry logic, and error classification.

Features:
    - Every attempt (retries included) passes through the shared RateLimiter
    - Exponential backoff on 429 and on network-level failures
    - 404 is reported as "no data" (None), never as an error
    - Page parsing into ReviewItem objects, keeping malformed entries apart

Usage:
    limiter = RateLimiter(max_per_second=3, max_per_minute=60)
    fetcher = ResilientFetcher(limiter)
    client = ReviewSourceClient(fetcher)
    page = client.fetch_review_page(5114, page=1)
"""

import time
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

import requests

from .rate_limiter import RateLimiter, RequestInterrupted
from .data_models import ReviewItem, ReviewPage


logger = logging.getLogger(__name__)


class ReviewSourceError(Exception):
    """Base exception for review source errors."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message
        self.url = url
        self.status_code = status_code
        super().__init__(self.message)


class RateLimitExceededError(ReviewSourceError):
    """The source kept answering 429 after all retries."""

    def __init__(self, url: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Rate limited by source after {attempts} attempts: {url}",
            url=url,
            status_code=429,
        )


class SourceNetworkError(ReviewSourceError):
    """Connection, timeout or DNS failure that outlasted all retries."""

    def __init__(self, url: str, attempts: int, cause: Exception):
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Network error after {attempts} attempts: {cause}", url=url)


class SourceHTTPError(ReviewSourceError):
    """Non-retriable HTTP failure or unreadable response body."""
    pass


class ResilientFetcher:
    """
    Issues one GET at a time through the shared RateLimiter.

    Retry policy:
        429            -> retry, backoff rate_limit_backoff * 2**n (n = prior 429s)
        network error  -> retry, backoff network_backoff * 2**n (n = prior network errors)
        404            -> None
        other non-2xx  -> SourceHTTPError (no retry)

    Each failure class has its own budget of max_retries. A sleep callable
    that returns True (threading.Event.wait) aborts the backoff with
    RequestInterrupted.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        session: Optional[requests.Session] = None,
        user_agent: str = "Reception-ReviewCrawler/1.0",
        timeout: int = 30,
        max_retries: int = 3,
        rate_limit_backoff: float = 5.0,
        network_backoff: float = 2.0,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.limiter = limiter
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self.timeout = timeout
        self.max_retries = max_retries
        self.rate_limit_backoff = rate_limit_backoff
        self.network_backoff = network_backoff
        self._sleep = sleep

        self._stats = {
            "requests_made": 0,
            "retries": 0,
            "not_found": 0,
            "errors": 0,
        }

    def _backoff(self, base: float, attempt: int) -> float:
        return base * (2 ** attempt)

    def _wait(self, seconds: float) -> None:
        if self._sleep(seconds):
            raise RequestInterrupted(f"Backoff of {seconds:.0f}s interrupted")

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Fetch a JSON document.

        Returns:
            Decoded JSON body, or None when the source answers 404

        Raises:
            RateLimitExceededError: 429 persisted through all retries
            SourceNetworkError: transport failure persisted through all retries
            SourceHTTPError: any other non-success status or a non-JSON body
            RequestInterrupted: a stop was requested during a limiter or backoff wait
        """
        rate_limited = 0
        network_failures = 0

        while True:
            self.limiter.admit()
            self._stats["requests_made"] += 1
            attempts = rate_limited + network_failures + 1

            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                if network_failures < self.max_retries:
                    wait_time = self._backoff(self.network_backoff, network_failures)
                    logger.warning(
                        f"Network error (retry {network_failures + 1}/{self.max_retries}), "
                        f"retrying in {wait_time:.0f}s: {e}"
                    )
                    self._stats["retries"] += 1
                    self._wait(wait_time)
                    network_failures += 1
                    continue
                self._stats["errors"] += 1
                raise SourceNetworkError(url, attempts, e) from e

            if response.status_code == 429:
                if rate_limited < self.max_retries:
                    wait_time = self._backoff(self.rate_limit_backoff, rate_limited)
                    logger.warning(
                        f"429 Too Many Requests, backing off {wait_time:.0f}s "
                        f"(retry {rate_limited + 1}/{self.max_retries})"
                    )
                    self._stats["retries"] += 1
                    self._wait(wait_time)
                    rate_limited += 1
                    continue
                self._stats["errors"] += 1
                raise RateLimitExceededError(url, attempts)

            if response.status_code == 404:
                self._stats["not_found"] += 1
                return None

            if not 200 <= response.status_code < 300:
                self._stats["errors"] += 1
                raise SourceHTTPError(
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    url=url,
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError as e:
                self._stats["errors"] += 1
                raise SourceHTTPError(
                    f"Response is not valid JSON: {e}",
                    url=url,
                    status_code=response.status_code,
                ) from e

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)


class ReviewSourceClient:
    """Builds review page URLs and parses pages into ReviewItem objects."""

    def __init__(
        self,
        fetcher: ResilientFetcher,
        base_url: str = "https://api.jikan.moe/v4",
        subject_path: str = "anime",
    ):
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")
        self.subject_path = subject_path.strip("/")

    def review_url(self, subject_id: int) -> str:
        return f"{self.base_url}/{self.subject_path}/{subject_id}/reviews"

    def fetch_review_page(
        self,
        subject_id: int,
        page: int = 1,
        include_preliminary: bool = True,
    ) -> Optional[ReviewPage]:
        """
        Fetch one page of reviews.

        Returns:
            ReviewPage, or None if the source reports 404 for this subject/page
        """
        params = {
            "page": page,
            "preliminary": "true" if include_preliminary else "false",
        }
        data = self.fetcher.fetch(self.review_url(subject_id), params=params)
        if data is None:
            return None
        return self.parse_page(subject_id, page, data)

    def parse_page(self, subject_id: int, page: int, data: Dict[str, Any]) -> ReviewPage:
        """Parse a decoded page body."""
        if not isinstance(data, dict):
            raise SourceHTTPError(f"Unexpected page payload for subject {subject_id}: {type(data).__name__}")

        entries = data.get("data") or []
        pagination = data.get("pagination") or {}

        result = ReviewPage(
            subject_id=subject_id,
            page=page,
            has_next_page=bool(pagination.get("has_next_page", False)),
        )

        for entry in entries:
            item = self._parse_item(entry)
            if item is None:
                result.malformed.append(entry)
            else:
                result.items.append(item)

        return result

    def _parse_item(self, entry: Any) -> Optional[ReviewItem]:
        if not isinstance(entry, dict):
            return None

        user = entry.get("user") or {}
        reviewer = user.get("username") if isinstance(user, dict) else None
        if not reviewer:
            return None

        text = entry.get("review")
        if text is None:
            text = ""
        elif not isinstance(text, str):
            return None

        score = entry.get("score")
        if score is not None:
            try:
                score = int(score)
            except (TypeError, ValueError):
                score = None

        helpful = entry.get("votes")
        if helpful is None:
            reactions = entry.get("reactions") or {}
            helpful = reactions.get("overall", 0) if isinstance(reactions, dict) else 0
        try:
            helpful = int(helpful or 0)
        except (TypeError, ValueError):
            helpful = 0

        date_posted = None
        raw_date = entry.get("date")
        if raw_date:
            try:
                date_posted = datetime.fromisoformat(str(raw_date).replace("Z", "+00:00")).date()
            except ValueError:
                logger.debug(f"Unparseable review date from {reviewer}: {raw_date}")

        return ReviewItem(
            reviewer=str(reviewer),
            score=score,
            text=text,
            helpful_count=helpful,
            is_preliminary=bool(entry.get("is_preliminary", False)),
            date_posted=date_posted,
        )
