"""
Reception Review Analysis
=========================

Deterministic sentiment classification of review text and aggregation
into per-subject reception profiles. No ML model.

Modules:
    reception_models   - Data models (SentimentResult, ReceptionProfile)
    sentiment          - Lexicon-based sentiment with negation and intensifiers
    reception_insights - Aggregation into per-subject reception profiles
"""

from .reception_models import SentimentResult, SentimentLabel, ReceptionProfile, is_profile_stale
from .sentiment import SentimentAnalyzer
from .reception_insights import ReceptionAggregator, NoReviewsError
