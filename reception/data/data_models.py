"""
Reception Data Models
=====================

Dataclasses representing the core data structures of the review crawl.
These models sit between the review source's JSON pages, the PostgreSQL
schema, and the on-disk crawl checkpoint.

Models:
    - ReviewItem: One review as returned by the source
    - ReviewPage: One page of review items plus pagination state
    - RawReview: One stored review row (with sentiment folded in)
    - Subject: A crawl candidate from the subject store
    - CrawlConfig / CrawlProgress: Persisted run parameters and progress
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Set, Dict, Any


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class SelectionMode(Enum):
    """How the orchestrator picks subjects to crawl."""
    PRIORITY = "priority"   # airing, popular, hidden gems, polarizing
    BACKFILL = "backfill"   # fewer stored reviews than the per-subject target
    NEW = "new"             # no stored reviews at all


class ErrorKind(Enum):
    """Entries of the checkpoint error ring."""
    SUBJECT_ERROR = "subject_error"
    API_ERROR = "api_error"
    ITEM_ERROR = "item_error"
    ANALYSIS_ERROR = "analysis_error"


@dataclass
class ReviewItem:
    """Single review as delivered by the review source."""
    reviewer: str
    score: Optional[int]
    text: str
    helpful_count: int = 0
    is_preliminary: bool = False
    date_posted: Optional[date] = None

    @property
    def text_length(self) -> int:
        return len(self.text or "")


@dataclass
class ReviewPage:
    """One page of the source's paginated review stream."""
    subject_id: int
    page: int
    items: List[ReviewItem] = field(default_factory=list)
    has_next_page: bool = False
    # Raw entries that could not be parsed into a ReviewItem
    malformed: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.items and not self.malformed


@dataclass
class RawReview:
    """
    Stored review row.

    Unique per (subject_id, reviewer); re-ingestion updates in place.
    """
    subject_id: int
    reviewer: str
    score: Optional[int]
    text: str
    helpful_count: int = 0
    is_preliminary: bool = False
    date_posted: Optional[date] = None
    text_length: int = 0
    sentiment_score: float = 0.0
    sentiment_label: str = "neutral"

    @classmethod
    def from_item(cls, subject_id: int, item: ReviewItem, sentiment) -> "RawReview":
        """Build a stored review from a source item and its SentimentResult."""
        return cls(
            subject_id=subject_id,
            reviewer=item.reviewer,
            score=item.score,
            text=item.text,
            helpful_count=item.helpful_count,
            is_preliminary=item.is_preliminary,
            date_posted=item.date_posted,
            text_length=item.text_length,
            sentiment_score=sentiment.score,
            sentiment_label=sentiment.label,
        )


@dataclass
class Subject:
    """Crawl candidate from the subject store."""
    subject_id: int
    title: str
    members: Optional[int] = None
    score: Optional[float] = None
    airing: bool = False
    review_count: int = 0


# =============================================================================
# Checkpoint state
# =============================================================================

MAX_ERROR_ENTRIES = 100


@dataclass
class CrawlConfig:
    """Run parameters, persisted with the checkpoint."""
    items_per_subject: int = 50
    include_preliminary: bool = True
    request_delay: float = 1.5         # seconds between pages of one subject
    subject_delay: float = 3.0         # seconds between subjects
    max_subjects: int = 200            # candidates selected per run
    max_total_items: int = 5000        # global ingestion budget per run
    selection: str = SelectionMode.PRIORITY.value
    min_members: int = 1000
    top_up_existing: bool = False      # count already stored reviews toward the target

    def __post_init__(self):
        if self.items_per_subject <= 0:
            raise ValueError("items_per_subject must be positive")
        if self.request_delay < 0 or self.subject_delay < 0:
            raise ValueError("delays cannot be negative")
        SelectionMode(self.selection)


@dataclass
class CurrentSubject:
    """Subject being crawled when the checkpoint was written."""
    subject_id: int
    title: str
    page: int = 1
    items_processed: int = 0


@dataclass
class CrawlTotals:
    subjects_completed: int = 0
    items_ingested: int = 0


@dataclass
class CrawlError:
    timestamp: str
    kind: str
    message: str
    subject_id: Optional[int] = None
    page: Optional[int] = None


@dataclass
class CrawlProgress:
    """Process-wide crawl progress for one entity type."""
    processed_subject_ids: Set[int] = field(default_factory=set)
    current_subject: Optional[CurrentSubject] = None
    totals: CrawlTotals = field(default_factory=CrawlTotals)
    errors: List[CrawlError] = field(default_factory=list)
    config: CrawlConfig = field(default_factory=CrawlConfig)
    started_at: str = field(default_factory=lambda: utc_now().isoformat())
    last_updated_at: str = field(default_factory=lambda: utc_now().isoformat())

    def is_processed(self, subject_id: int) -> bool:
        return subject_id in self.processed_subject_ids
