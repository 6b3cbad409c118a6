"""
Content-aware cache expiration.

Volatile content expires fast, stable reference content is kept long, and
strongly negative results get a shorter lifetime than the default.
"""

from dataclasses import dataclass
from typing import FrozenSet

from core.enums import SentimentLabel
from core.models import Classification

ONE_HOUR = 3600
TWELVE_HOURS = 43200
ONE_DAY = 86400
ONE_WEEK = 604800


@dataclass(frozen=True)
class TTLPolicy:
    """Chooses a TTL in seconds for a classified result. First matching rule wins."""

    default_ttl: int = ONE_DAY
    volatile_intents: FrozenSet[str] = frozenset({"news", "current_events"})
    stable_intents: FrozenSet[str] = frozenset({"factual", "reference"})
    volatile_ttl: int = ONE_HOUR
    stable_ttl: int = ONE_WEEK
    negative_ttl: int = TWELVE_HOURS
    negative_threshold: float = -0.5

    def determine_ttl(self, result: Classification) -> int:
        intents = set(result.intents)

        if intents & self.volatile_intents:
            return self.volatile_ttl

        if intents & self.stable_intents:
            return self.stable_ttl

        if (
            result.sentiment.sentiment == SentimentLabel.NEGATIVE
            and result.sentiment.score < self.negative_threshold
        ):
            return self.negative_ttl

        return self.default_ttl


__all__ = ["TTLPolicy", "ONE_HOUR", "TWELVE_HOURS", "ONE_DAY", "ONE_WEEK"]
