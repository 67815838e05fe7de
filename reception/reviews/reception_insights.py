"""
Reception Aggregator
====================

Recomputes a subject's reception profile from every stored review:
score variance, sentiment ratio, preliminary count, average length and the
most frequent complaint / praise themes. The profile is written wholesale
to subjects.reception_data with a fresh last_analyzed timestamp.

Usage:
    aggregator = ReceptionAggregator(store)
    profile = aggregator.recompute(5114)
    aggregator.recompute_stale(limit=100)
"""

import re
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Callable

from ..data.data_models import RawReview
from .reception_models import ReceptionProfile, STALE_AFTER_DAYS

logger = logging.getLogger(__name__)


# =============================================================================
# THEME LISTS
# =============================================================================
# Ranked by occurrence count; ties keep list order.

PRAISE_THEMES = [
    "animation", "art style", "visuals", "soundtrack", "music", "ost",
    "story", "plot", "narrative", "storytelling", "world building",
    "character development", "characters", "protagonist", "voice acting",
    "action scenes", "fight scenes", "comedy", "humor", "romance",
    "emotional", "touching", "deep", "meaningful", "original",
    "unique", "creative", "well written", "pacing", "ending",
]

COMPLAINT_THEMES = [
    "pacing", "slow pacing", "rushed", "animation quality", "bad animation",
    "plot holes", "confusing plot", "weak story", "boring story",
    "character development", "flat characters", "annoying characters",
    "bad ending", "disappointing ending", "filler episodes", "filler",
    "fan service", "fanservice", "cliche", "generic", "predictable",
    "overrated", "overhyped", "repetitive", "dragged out", "inconsistent",
]

TOP_THEMES = 5
POSITIVE_SENTIMENT = 0.2
NEGATIVE_SENTIMENT = -0.2


class NoReviewsError(Exception):
    """A reception profile was requested for a subject with no reviews."""

    def __init__(self, subject_id: int):
        self.subject_id = subject_id
        super().__init__(f"No reviews found for subject {subject_id}")


def theme_variants(theme: str) -> List[str]:
    """
    Regex fragments that count as a mention of the theme:
    exact, first space removed, first space hyphenated, words joined by '.*'.
    """
    words = theme.split(" ")
    return [
        re.escape(theme),
        re.escape(theme.replace(" ", "", 1)),
        re.escape(theme.replace(" ", "-", 1)),
        ".*".join(re.escape(w) for w in words),
    ]


def extract_themes(corpus: str, themes: Sequence[str], top_n: int = TOP_THEMES) -> List[str]:
    """Top themes found in a lower-cased corpus, by exact-phrase count."""
    found = []
    for theme in themes:
        if any(re.search(rf"\b{variant}\b", corpus, re.IGNORECASE) for variant in theme_variants(theme)):
            count = len(re.findall(rf"\b{re.escape(theme)}\b", corpus, re.IGNORECASE))
            found.append((theme, count))

    # sorted() is stable, so equal counts keep list order
    ranked = sorted(found, key=lambda pair: pair[1], reverse=True)
    return [theme for theme, _ in ranked[:top_n]]


def score_statistics(scores: Sequence[Optional[float]]):
    """Mean and population variance of the non-null scores (None, None if empty)."""
    values = [float(s) for s in scores if s is not None]
    if not values:
        return None, None
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, variance


class ReceptionAggregator:
    """
    Builds and persists per-subject reception profiles.

    Staleness (absent or older than 7 days) is decided by callers; this
    class always recomputes when asked.
    """

    def __init__(self, store=None, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self._clock = clock

    def build_profile(self, subject_id: int, reviews: Sequence[RawReview]) -> ReceptionProfile:
        """
        Compute a profile from reviews without touching storage.

        Raises:
            NoReviewsError: If reviews is empty
        """
        if not reviews:
            raise NoReviewsError(subject_id)

        mean_score, variance = score_statistics([r.score for r in reviews])

        positive = sum(1 for r in reviews if r.sentiment_score > POSITIVE_SENTIMENT)
        negative = sum(1 for r in reviews if r.sentiment_score < NEGATIVE_SENTIMENT)
        sentiment_ratio = positive / max(negative, 1)

        preliminary = sum(1 for r in reviews if r.is_preliminary)
        avg_length = sum(r.text_length or 0 for r in reviews) / len(reviews)

        corpus = " ".join(r.text or "" for r in reviews).lower()

        return ReceptionProfile(
            subject_id=subject_id,
            review_count=len(reviews),
            mean_score=mean_score,
            score_variance=variance,
            sentiment_ratio=sentiment_ratio,
            preliminary_review_count=preliminary,
            avg_review_length=avg_length,
            common_complaints=extract_themes(corpus, COMPLAINT_THEMES),
            common_praises=extract_themes(corpus, PRAISE_THEMES),
            last_analyzed=self._clock(),
        )

    def recompute(self, subject_id: int) -> ReceptionProfile:
        """
        Recompute and persist the subject's profile from all stored reviews.

        Raises:
            NoReviewsError: If the subject has no stored reviews
            DatabaseError: If loading or saving fails
        """
        reviews = self.store.load_reviews(subject_id)
        profile = self.build_profile(subject_id, reviews)
        self.store.save_reception_profile(subject_id, profile.to_reception_data())

        variance = f"{profile.score_variance:.2f}" if profile.score_variance is not None else "n/a"
        logger.info(
            f"Saved reception profile for subject {subject_id}: "
            f"{profile.review_count} reviews, variance={variance}, "
            f"ratio={profile.sentiment_ratio:.2f}"
        )
        return profile

    def recompute_stale(self, limit: int = 100, max_age_days: int = STALE_AFTER_DAYS) -> int:
        """
        Recompute profiles that are missing or older than max_age_days.

        Returns:
            Number of profiles recomputed
        """
        subject_ids = self.store.find_stale_subjects(limit=limit, max_age_days=max_age_days)
        logger.info(f"{len(subject_ids)} subjects have a missing or stale reception profile")

        processed = 0
        for subject_id in subject_ids:
            try:
                self.recompute(subject_id)
                processed += 1
            except Exception as e:
                logger.error(f"Failed to analyze reception for subject {subject_id}: {e}")

        return processed
