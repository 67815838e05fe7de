"""
Review Sentiment Analyzer (Deterministic)
=========================================

Classifies review text with a fixed lexicon plus two rules on the word
immediately before each sentiment word: intensifiers scale it by 1.5 and
negators flip its sign. No model, no training data: the same text always
produces the same result.

Usage:
    analyzer = SentimentAnalyzer()
    result = analyzer.analyze("Not boring at all, the ending was amazing.")
    result.label    # "positive"
"""

import re
import logging
from typing import List, Tuple

from .reception_models import SentimentResult, SentimentLabel

logger = logging.getLogger(__name__)


# =============================================================================
# LEXICONS
# =============================================================================

POSITIVE_WORDS = frozenset({
    "amazing", "excellent", "fantastic", "brilliant", "masterpiece",
    "beautiful", "perfect", "incredible", "outstanding", "wonderful",
    "love", "adore", "enjoy", "great", "awesome", "superb", "stunning",
    "captivating", "engaging", "entertaining", "hilarious", "touching",
    "emotional", "gripping", "compelling", "satisfying", "phenomenal",
    "breathtaking", "marvelous", "spectacular", "impressive", "charming",
    "delightful", "refreshing", "unique", "innovative", "creative",
})

NEGATIVE_WORDS = frozenset({
    "terrible", "awful", "horrible", "boring", "disappointing",
    "waste", "trash", "bad", "worst", "hate", "annoying",
    "stupid", "ridiculous", "pointless", "overrated", "underwhelming",
    "painful", "cringe", "bland", "dull", "mediocre", "weak",
    "confusing", "messy", "rushed", "poorly", "lacking", "forced",
    "awkward", "predictable", "cliche", "generic", "uninspired",
})

INTENSIFIERS = frozenset({"very", "extremely", "absolutely", "incredibly", "totally", "completely"})
NEGATORS = frozenset({"not", "never", "no", "hardly", "barely", "scarcely"})

INTENSIFIER_MULTIPLIER = 1.5
MIN_TEXT_LENGTH = 10
LABEL_THRESHOLD = 0.3

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_WORD_SPLIT = re.compile(r"\W+", re.ASCII)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class SentimentAnalyzer:
    """
    Lexicon-based sentiment classifier.

    A word before a sentiment word can be both a negator and an intensifier
    in an extended lexicon; the sign flip and the 1.5 multiplier are then
    both applied. Multiplication commutes, so the order does not matter.
    """

    def __init__(
        self,
        positive_words=POSITIVE_WORDS,
        negative_words=NEGATIVE_WORDS,
        intensifiers=INTENSIFIERS,
        negators=NEGATORS,
    ):
        self.positive_words = frozenset(positive_words)
        self.negative_words = frozenset(negative_words)
        self.intensifiers = frozenset(intensifiers)
        self.negators = frozenset(negators)

    def contributions(self, text: str) -> List[Tuple[str, float]]:
        """
        Per-word contributions of every sentiment-bearing word, in text order.

        Returns:
            List of (word, contribution) tuples
        """
        result = []
        for sentence in _SENTENCE_SPLIT.split((text or "").lower()):
            words = _WORD_SPLIT.split(sentence)
            for i, word in enumerate(words):
                if word in self.positive_words:
                    base = 1.0
                elif word in self.negative_words:
                    base = -1.0
                else:
                    continue

                if i > 0:
                    previous = words[i - 1]
                    if previous in self.negators:
                        base = -base
                    if previous in self.intensifiers:
                        base *= INTENSIFIER_MULTIPLIER

                result.append((word, base))
        return result

    def analyze(self, text: str) -> SentimentResult:
        """Classify one review text."""
        if not text or len(text) < MIN_TEXT_LENGTH:
            return SentimentResult(score=0.0, label=SentimentLabel.NEUTRAL.value, confidence=0.0)

        scored = self.contributions(text)
        if not scored:
            return SentimentResult(score=0.0, label=SentimentLabel.NEUTRAL.value, confidence=0.1)

        sentiment_word_count = len(scored)
        total = sum(contribution for _, contribution in scored)
        normalized = total / sentiment_word_count

        total_word_count = len(_WORD_SPLIT.split(text))
        confidence = _clamp(sentiment_word_count / (total_word_count * 0.1), 0.1, 1.0)

        if normalized > LABEL_THRESHOLD:
            label = SentimentLabel.POSITIVE
        elif normalized < -LABEL_THRESHOLD:
            label = SentimentLabel.NEGATIVE
        else:
            label = SentimentLabel.NEUTRAL

        return SentimentResult(
            score=_clamp(normalized, -1.0, 1.0),
            label=label.value,
            confidence=confidence,
        )
