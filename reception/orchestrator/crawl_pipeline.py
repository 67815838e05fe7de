"""
Reception Crawl Pipeline
========================

Orchestrates a review crawl run:
1. Resume the subject that was in progress when the last run stopped
2. Select candidate subjects from the subject store (most popular first)
3. Paginate each subject's reviews through the rate-limited fetcher
4. Classify and upsert every new review, updating the checkpoint
5. Recompute the subject's reception profile once it is complete

Features:
    - Resumable (checkpointed cursor, completed subjects skipped)
    - Idempotent (existing (subject, reviewer) pairs are skipped)
    - Budgeted (items per subject, subjects per run, items per run)
    - Resilient (item and subject failures are logged, the run continues)
    - Interruptible (SIGINT / SIGTERM flush the checkpoint before exit)

Usage:
    with CrawlOrchestrator.from_settings() as orchestrator:
        result = orchestrator.run(CrawlConfig(items_per_subject=50))
"""

import uuid
import signal
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Union, Callable

from ..data.config import get_settings, Settings
from ..data.data_models import (
    CrawlConfig,
    ErrorKind,
    RawReview,
    ReviewItem,
    SelectionMode,
    Subject,
)
from ..data.rate_limiter import RateLimiter, RequestInterrupted
from ..data.review_client import ResilientFetcher, ReviewSourceClient, ReviewSourceError
from ..data.review_store import ReviewStore, DatabaseError
from ..reviews.sentiment import SentimentAnalyzer
from ..reviews.reception_insights import ReceptionAggregator
from .checkpoint import CheckpointStore
from .logging_config import crawl_context, crawl_context_update

logger = logging.getLogger(__name__)


class CrawlStatus(Enum):
    """Crawl run status."""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class SubjectError(Exception):
    """A subject's crawl was aborted; it stays eligible for the next run."""

    def __init__(self, subject_id: int, page: int, cause: Exception):
        self.subject_id = subject_id
        self.page = page
        self.cause = cause
        super().__init__(f"Failed to fetch page {page} of subject {subject_id}: {cause}")


class ItemError(Exception):
    """One review could not be analyzed or stored; the item is skipped."""

    def __init__(self, subject_id: int, reviewer: Optional[str], cause: Exception):
        self.subject_id = subject_id
        self.reviewer = reviewer
        self.cause = cause
        super().__init__(f"Failed to process review from {reviewer or '<unknown>'}: {cause}")


@dataclass
class SubjectOutcome:
    """Result of crawling one subject."""
    subject_id: int
    title: str
    status: str = "running"    # completed, skipped, failed, interrupted, budget_exhausted
    start_page: int = 1
    pages_fetched: int = 0
    items_ingested: int = 0
    duplicates_skipped: int = 0
    item_errors: int = 0
    analyzed: bool = False
    error: Optional[str] = None


@dataclass
class CrawlResult:
    """Complete crawl run result."""
    run_id: str
    status: CrawlStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    subjects_targeted: int = 0
    subjects_completed: int = 0
    subjects_skipped: int = 0
    subjects_failed: int = 0
    subjects_analyzed: int = 0
    items_ingested: int = 0
    duplicates_skipped: int = 0
    item_errors: int = 0
    error_count: int = 0
    recent_errors: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[SubjectOutcome] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def add_outcome(self, outcome: SubjectOutcome) -> None:
        self.outcomes.append(outcome)
        self.items_ingested += outcome.items_ingested
        self.duplicates_skipped += outcome.duplicates_skipped
        self.item_errors += outcome.item_errors
        if outcome.status == "completed":
            self.subjects_completed += 1
        elif outcome.status == "skipped":
            self.subjects_skipped += 1
        elif outcome.status == "failed":
            self.subjects_failed += 1
        if outcome.analyzed:
            self.subjects_analyzed += 1

    def get_summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "subjects_targeted": self.subjects_targeted,
            "subjects_completed": self.subjects_completed,
            "subjects_skipped": self.subjects_skipped,
            "subjects_failed": self.subjects_failed,
            "subjects_analyzed": self.subjects_analyzed,
            "items_ingested": self.items_ingested,
            "duplicates_skipped": self.duplicates_skipped,
            "item_errors": self.item_errors,
            "error_count": self.error_count,
            "recent_errors": self.recent_errors,
        }


class CrawlOrchestrator:
    """
    Sequential review crawler.

    Owns the checkpoint; the rate limiter lives inside the source client's
    fetcher and is shared by every request of the run. Only checkpoint
    write failures (CheckpointWriteError) escape run().
    """

    def __init__(
        self,
        source: ReviewSourceClient,
        store,
        checkpoint: CheckpointStore,
        analyzer: Optional[SentimentAnalyzer] = None,
        aggregator: Optional[ReceptionAggregator] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.store = store
        self.checkpoint = checkpoint
        self.analyzer = analyzer or SentimentAnalyzer()
        self.aggregator = aggregator or ReceptionAggregator(store)

        self._stop_event = stop_event or threading.Event()
        self._sleep = sleep or self._stop_event.wait

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, entity: str = "review") -> "CrawlOrchestrator":
        """Wire the production collaborators from configuration."""
        settings = settings or get_settings()
        src = settings.source

        stop_event = threading.Event()
        limiter = RateLimiter(
            max_per_second=src.max_per_second,
            max_per_minute=src.max_per_minute,
            sleep=stop_event.wait,
        )
        fetcher = ResilientFetcher(
            limiter,
            sleep=stop_event.wait,
            user_agent=src.user_agent,
            timeout=src.request_timeout,
            max_retries=src.max_retries,
            rate_limit_backoff=src.rate_limit_backoff,
            network_backoff=src.network_backoff,
        )
        source = ReviewSourceClient(fetcher, base_url=src.base_url, subject_path=src.subject_path)
        store = ReviewStore()
        checkpoint = CheckpointStore(
            settings.checkpoint.directory,
            entity=entity,
            save_interval=settings.checkpoint.save_interval,
        )
        return cls(source, store, checkpoint, stop_event=stop_event)

    def close(self):
        if hasattr(self.store, "close"):
            self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # =========================================================================
    # Interruption
    # =========================================================================

    def request_stop(self) -> None:
        """Ask the run to stop at the next item, page or subject boundary."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @contextmanager
    def signal_handlers(self):
        """Route SIGINT / SIGTERM to request_stop() for the duration of a run."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum, frame):
            logger.warning(f"Received signal {signum}, stopping after the current item...")
            self.request_stop()

        previous = {
            sig: signal.signal(sig, handler)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

    # =========================================================================
    # Run
    # =========================================================================

    def select_subjects(self, config: CrawlConfig) -> List[Subject]:
        """In-progress subject first, then fresh candidates, bounded by max_subjects."""
        queue: List[Subject] = []
        excluded = set(self.checkpoint.progress.processed_subject_ids)

        current = self.checkpoint.current_subject
        if current is not None and not self.checkpoint.is_processed(current.subject_id):
            subject = self.store.get_subject(current.subject_id) or Subject(current.subject_id, current.title)
            queue.append(subject)
            excluded.add(current.subject_id)
            logger.info(f"Resuming {current.title} at page {current.page}")

        remaining = config.max_subjects - len(queue)
        if remaining > 0:
            candidates = self.store.select_subjects(
                SelectionMode(config.selection),
                limit=remaining,
                exclude_ids=excluded,
                items_per_subject=config.items_per_subject,
                min_members=config.min_members,
            )
            queue.extend(s for s in candidates if s.subject_id not in excluded)

        return queue[:config.max_subjects]

    def run(self, config: Optional[CrawlConfig] = None, handle_signals: bool = False) -> CrawlResult:
        """
        Execute one crawl run.

        Args:
            config: Run parameters (defaults to the checkpoint's last config)
            handle_signals: Install SIGINT / SIGTERM handlers for the run

        Raises:
            CheckpointWriteError: If progress can no longer be saved
        """
        config = config or self.checkpoint.progress.config
        self.checkpoint.configure(config)
        self._stop_event.clear()

        result = CrawlResult(
            run_id=str(uuid.uuid4()),
            status=CrawlStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"Starting review crawl {result.run_id}: mode={config.selection}, "
            f"items/subject={config.items_per_subject}, max_subjects={config.max_subjects}",
            extra={"run_id": result.run_id},
        )

        guard = self.signal_handlers() if handle_signals else _null_context()
        with crawl_context(run_id=result.run_id), guard:
            try:
                self._run_subjects(config, result)
            except KeyboardInterrupt:
                logger.warning("Crawl interrupted, flushing checkpoint")
                self.request_stop()

        # Final flush; a failure here propagates as CheckpointWriteError
        self.checkpoint.save()

        result.completed_at = datetime.now(timezone.utc)
        result.error_count = len(self.checkpoint.progress.errors)
        result.recent_errors = [
            {"timestamp": e.timestamp, "kind": e.kind, "subject_id": e.subject_id, "message": e.message}
            for e in self.checkpoint.recent_errors(10)
        ]

        if self.stop_requested:
            result.status = CrawlStatus.INTERRUPTED
        elif result.subjects_failed > 0 and result.subjects_completed == 0:
            result.status = CrawlStatus.FAILED
        elif result.subjects_failed > 0:
            result.status = CrawlStatus.PARTIAL_FAILURE
        else:
            result.status = CrawlStatus.COMPLETED

        logger.info(
            f"Crawl {result.status.value}: {result.subjects_completed} subjects completed, "
            f"{result.items_ingested} reviews ingested, {result.subjects_failed} subjects failed, "
            f"{result.error_count} errors logged",
            extra={"run_id": result.run_id},
        )
        return result

    def _run_subjects(self, config: CrawlConfig, result: CrawlResult) -> None:
        subjects = self.select_subjects(config)
        result.subjects_targeted = len(subjects)
        logger.info(f"Found {len(subjects)} subjects for review crawling")

        for index, subject in enumerate(subjects, 1):
            if self.stop_requested:
                break

            budget = config.max_total_items - result.items_ingested
            if budget <= 0:
                logger.info(f"Global cap reached ({config.max_total_items} reviews)")
                break

            logger.info(f"[{index}/{len(subjects)}] {subject.title} (members: {subject.members or 'n/a'})")
            outcome = self.crawl_subject(subject, config, budget=budget)
            result.add_outcome(outcome)

            if outcome.status in ("interrupted", "budget_exhausted"):
                break

            if outcome.status != "skipped" and index < len(subjects) and config.subject_delay > 0:
                self._sleep(config.subject_delay)

    # =========================================================================
    # Subject
    # =========================================================================

    def crawl_subject(
        self,
        subject: Union[Subject, int],
        config: Optional[CrawlConfig] = None,
        budget: Optional[int] = None,
    ) -> SubjectOutcome:
        """
        Crawl one subject's reviews, resuming from the checkpoint cursor.

        Args:
            subject: Subject or subject id
            config: Run parameters (defaults to the checkpoint's config)
            budget: Maximum new reviews to ingest in this call

        Another subject left in progress by an interrupted run is parked
        for the duration of the call and restored afterwards, cursor and
        item count intact.
        """
        config = config or self.checkpoint.progress.config
        if not isinstance(subject, Subject):
            subject = self.store.get_subject(subject) or Subject(subject, f"Subject {subject}")

        parked = self.checkpoint.park_subject(subject.subject_id)
        try:
            with crawl_context(subject_id=subject.subject_id):
                return self._crawl_subject(subject, config, budget)
        finally:
            if parked is not None:
                self.checkpoint.restore_subject(parked)

    def _crawl_subject(self, subject: Subject, config: CrawlConfig, budget: Optional[int]) -> SubjectOutcome:
        subject_id = subject.subject_id
        outcome = SubjectOutcome(subject_id=subject_id, title=subject.title)

        if self.checkpoint.is_processed(subject_id):
            logger.info(f"Skipping {subject.title} - already processed")
            outcome.status = "skipped"
            return outcome

        needed = config.items_per_subject
        if config.top_up_existing:
            try:
                existing = self.store.count_reviews(subject_id)
            except DatabaseError as e:
                return self._fail_subject(outcome, ErrorKind.SUBJECT_ERROR, f"Failed to count reviews: {e}")
            if existing >= needed:
                logger.info(f"  {subject.title} already has {existing} reviews (target: {needed})")
                self.checkpoint.complete_subject(subject_id)
                outcome.status = "completed"
                return outcome
            needed -= existing

        current = self.checkpoint.start_subject(subject_id, subject.title)
        resumed_items = current.items_processed
        # A top-up target is already net of everything stored, the partial pass included
        saved = 0 if config.top_up_existing else resumed_items
        page = current.page
        outcome.start_page = page

        try:
            while saved < needed:
                if self.stop_requested:
                    outcome.status = "interrupted"
                    return outcome
                if budget is not None and outcome.items_ingested >= budget:
                    outcome.status = "budget_exhausted"
                    return outcome

                crawl_context_update(page=page)
                logger.debug(f"  Fetching page {page} for {subject.title}")
                try:
                    review_page = self.source.fetch_review_page(subject_id, page, config.include_preliminary)
                except RequestInterrupted:
                    self.request_stop()
                    outcome.status = "interrupted"
                    return outcome
                except ReviewSourceError as e:
                    raise SubjectError(subject_id, page, e) from e
                outcome.pages_fetched += 1

                if review_page is None:
                    logger.info(f"  No reviews found for {subject.title} (page {page})")
                    break
                if review_page.is_empty:
                    logger.info(f"  No more reviews on page {page}")
                    break

                for entry in review_page.malformed:
                    self._record_item_error(
                        outcome,
                        ItemError(subject_id, None, ValueError(f"malformed review entry: {str(entry)[:100]}")),
                    )

                budget_hit = False
                for item in review_page.items:
                    if saved >= needed or self.stop_requested:
                        break
                    if budget is not None and outcome.items_ingested >= budget:
                        budget_hit = True
                        break
                    if self._ingest_item(subject_id, item, outcome):
                        saved += 1

                # Page not fully consumed: keep the cursor so it is re-fetched
                if self.stop_requested:
                    outcome.status = "interrupted"
                    return outcome
                if budget_hit:
                    outcome.status = "budget_exhausted"
                    return outcome

                self.checkpoint.complete_page(page)
                logger.info(f"  Page {page} completed. Reviews saved: {saved} / {needed}")

                if not review_page.has_next_page:
                    break
                page += 1

                if saved < needed and (budget is None or outcome.items_ingested < budget):
                    self._sleep(config.request_delay)

        except SubjectError as e:
            return self._fail_subject(outcome, ErrorKind.API_ERROR, str(e), page=e.page)

        if saved > 0 or resumed_items > 0:
            outcome.analyzed = self._update_reception(subject)

        self.checkpoint.complete_subject(subject_id)
        outcome.status = "completed"
        logger.info(
            f"Completed {subject.title}: {outcome.items_ingested} new reviews, "
            f"{outcome.duplicates_skipped} duplicates skipped",
        )
        return outcome

    def _fail_subject(
        self,
        outcome: SubjectOutcome,
        kind: ErrorKind,
        message: str,
        page: Optional[int] = None,
    ) -> SubjectOutcome:
        """Log a subject-level failure and release the subject for a later run."""
        logger.error(f"  {outcome.title}: {message}", extra={"page": page})
        self.checkpoint.log_error(kind.value, message, subject_id=outcome.subject_id, page=page)
        self.checkpoint.abandon_subject(outcome.subject_id)
        outcome.status = "failed"
        outcome.error = message
        return outcome

    def _ingest_item(self, subject_id: int, item: ReviewItem, outcome: SubjectOutcome) -> bool:
        """Analyze and store one review. Returns True if it was newly ingested."""
        try:
            if self.store.review_exists(subject_id, item.reviewer):
                logger.debug(f"    Skipping duplicate review from {item.reviewer}")
                outcome.duplicates_skipped += 1
                return False

            sentiment = self.analyzer.analyze(item.text)
            self.store.upsert_review(RawReview.from_item(subject_id, item, sentiment))
        except (DatabaseError, ValueError, TypeError) as e:
            self._record_item_error(outcome, ItemError(subject_id, item.reviewer, e))
            return False

        outcome.items_ingested += 1
        self.checkpoint.record_item()
        return True

    def _record_item_error(self, outcome: SubjectOutcome, error: ItemError) -> None:
        logger.error(f"    {error}")
        outcome.item_errors += 1
        self.checkpoint.log_error(ErrorKind.ITEM_ERROR.value, str(error), subject_id=error.subject_id)

    def _update_reception(self, subject: Subject) -> bool:
        try:
            self.aggregator.recompute(subject.subject_id)
            logger.info(f"  Reception data updated for {subject.title}")
            return True
        except Exception as e:
            logger.error(f"  Failed to update reception data for {subject.title}: {e}")
            self.checkpoint.log_error(
                ErrorKind.ANALYSIS_ERROR.value,
                f"Failed to update reception data: {e}",
                subject_id=subject.subject_id,
            )
            return False


@contextmanager
def _null_context():
    yield
