"""
Reception Data Models
=====================

Outputs of the review analysis: the per-review sentiment classification
and the per-subject reception profile stored in subjects.reception_data.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Dict, Any


STALE_AFTER_DAYS = 7


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class SentimentResult:
    """Sentiment of one review text."""
    score: float                # -1.0 (negative) to 1.0 (positive)
    label: str                  # SentimentLabel value
    confidence: float           # 0.0 to 1.0


@dataclass
class ReceptionProfile:
    """Aggregated reception statistics for one subject."""
    subject_id: int
    review_count: int
    mean_score: Optional[float]
    score_variance: Optional[float]
    sentiment_ratio: float
    preliminary_review_count: int
    avg_review_length: float
    common_complaints: List[str] = field(default_factory=list)
    common_praises: List[str] = field(default_factory=list)
    last_analyzed: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def polarization_score(self) -> Optional[float]:
        """Approximated by the score variance."""
        return self.score_variance

    def is_stale(self, now: Optional[datetime] = None, max_age_days: int = STALE_AFTER_DAYS) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.last_analyzed > timedelta(days=max_age_days)

    def to_reception_data(self) -> Dict[str, Any]:
        """JSON document written to subjects.reception_data."""
        return {
            "review_count": self.review_count,
            "mean_score": self.mean_score,
            "score_variance": self.score_variance,
            "polarization_score": self.polarization_score,
            "sentiment_ratio": self.sentiment_ratio,
            "preliminary_review_count": self.preliminary_review_count,
            "avg_review_length": self.avg_review_length,
            "common_complaints": list(self.common_complaints),
            "common_praises": list(self.common_praises),
            "last_analyzed": self.last_analyzed.isoformat(),
        }

    @classmethod
    def from_reception_data(cls, subject_id: int, data: Dict[str, Any]) -> "ReceptionProfile":
        last_analyzed = datetime.fromisoformat(data["last_analyzed"])
        if last_analyzed.tzinfo is None:
            last_analyzed = last_analyzed.replace(tzinfo=timezone.utc)
        return cls(
            subject_id=subject_id,
            review_count=data.get("review_count", 0),
            mean_score=data.get("mean_score"),
            score_variance=data.get("score_variance"),
            sentiment_ratio=data.get("sentiment_ratio", 0.0),
            preliminary_review_count=data.get("preliminary_review_count", 0),
            avg_review_length=data.get("avg_review_length", 0.0),
            common_complaints=list(data.get("common_complaints") or []),
            common_praises=list(data.get("common_praises") or []),
            last_analyzed=last_analyzed,
        )


def is_profile_stale(
    data: Optional[Dict[str, Any]],
    now: Optional[datetime] = None,
    max_age_days: int = STALE_AFTER_DAYS,
) -> bool:
    """
    True if a stored reception_data document should be recomputed:
    it is absent, unreadable, or last_analyzed is older than max_age_days.
    """
    if not data or not data.get("last_analyzed"):
        return True
    try:
        profile = ReceptionProfile.from_reception_data(0, data)
    except (TypeError, ValueError):
        return True
    return profile.is_stale(now, max_age_days)
