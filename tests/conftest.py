"""
Shared fakes for the reception crawler tests.

No test touches the network or a database: the review source and the
review store are replaced by the in-memory doubles below.
"""

from typing import Dict, List, Optional, Tuple

import pytest

from reception.data.data_models import RawReview, ReviewItem, ReviewPage, Subject


class FakeClock:
    """Manually advanced monotonic clock; sleep() advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryReviewStore:
    """ReviewStore double keyed by (subject_id, reviewer)."""

    def __init__(self, subjects: Optional[List[Subject]] = None):
        self.subjects: Dict[int, Subject] = {s.subject_id: s for s in subjects or []}
        self.reviews: Dict[Tuple[int, str], RawReview] = {}
        self.profiles: Dict[int, dict] = {}
        self.select_calls: List[dict] = []
        self.closed = False

    def get_subject(self, subject_id: int) -> Optional[Subject]:
        return self.subjects.get(subject_id)

    def select_subjects(self, mode, limit, exclude_ids, items_per_subject, min_members):
        self.select_calls.append({
            "mode": mode,
            "limit": limit,
            "exclude_ids": set(exclude_ids),
            "items_per_subject": items_per_subject,
            "min_members": min_members,
        })
        return list(self.subjects.values())[:limit]

    def review_exists(self, subject_id: int, reviewer: str) -> bool:
        return (subject_id, reviewer) in self.reviews

    def count_reviews(self, subject_id: int) -> int:
        return sum(1 for sid, _ in self.reviews if sid == subject_id)

    def upsert_review(self, review: RawReview) -> bool:
        key = (review.subject_id, review.reviewer)
        inserted = key not in self.reviews
        self.reviews[key] = review
        return inserted

    def load_reviews(self, subject_id: int) -> List[RawReview]:
        return [r for (sid, _), r in self.reviews.items() if sid == subject_id]

    def save_reception_profile(self, subject_id: int, reception_data: dict) -> None:
        self.profiles[subject_id] = reception_data

    def load_reception_profile(self, subject_id: int) -> Optional[dict]:
        return self.profiles.get(subject_id)

    def find_stale_subjects(self, limit: int = 100, max_age_days: int = 7) -> List[int]:
        with_reviews = sorted({sid for sid, _ in self.reviews})
        return [sid for sid in with_reviews if sid not in self.profiles][:limit]

    def close(self):
        self.closed = True


class FakeReviewSource:
    """
    ReviewSourceClient double serving canned pages.

    pages: {subject_id: [ReviewPage | None | Exception, ...]} indexed by page - 1.
    A page number past the end answers None (404).
    """

    def __init__(self, pages: Optional[Dict[int, list]] = None):
        self.pages = pages or {}
        self.calls: List[Tuple[int, int, bool]] = []

    def fetch_review_page(self, subject_id: int, page: int = 1, include_preliminary: bool = True):
        self.calls.append((subject_id, page, include_preliminary))
        subject_pages = self.pages.get(subject_id, [])
        if page - 1 >= len(subject_pages):
            return None
        result = subject_pages[page - 1]
        if isinstance(result, BaseException):
            raise result
        return result

    def pages_requested(self, subject_id: int) -> List[int]:
        return [page for sid, page, _ in self.calls if sid == subject_id]


def make_item(reviewer: str, score: Optional[int] = 8, text: str = "A great and very engaging story.") -> ReviewItem:
    """Helper to create a source review item."""
    return ReviewItem(reviewer=reviewer, score=score, text=text, helpful_count=3)


def make_page(subject_id: int, page: int, reviewers: List[str], has_next_page: bool = True) -> ReviewPage:
    """Helper to create a page of well-formed review items."""
    return ReviewPage(
        subject_id=subject_id,
        page=page,
        items=[make_item(r) for r in reviewers],
        has_next_page=has_next_page,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryReviewStore()
