"""
Domain Enumerations
===================
String enums serialize directly into JSON bodies and database columns.
"""

from enum import Enum, IntEnum


class ErrorSeverity(IntEnum):
    """
    Error classification by impact severity.

    Determines alerting and logging level.
    """

    CRITICAL = 5  # System failure, immediate intervention required
    ERROR = 4  # Operation failed
    WARNING = 3  # Degraded behaviour, request still served
    INFO = 2  # Notable event, no action required
    DEBUG = 1  # Diagnostic information


class SentimentLabel(str, Enum):
    """Polarity label produced by the classifier."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class TransactionType(str, Enum):
    """Kinds of balance ledger entries."""

    ADD = "add"
    DEDUCT = "deduct"
    REFUND = "refund"


class DistributionDimension(str, Enum):
    """Categorical dimensions tracked by the analytics rollups."""

    MODEL = "model"
    LANGUAGE = "language"
    SENTIMENT = "sentiment"
    INTENT = "intent"


class AnalysisOutcome(str, Enum):
    """Terminal state of a single analysis request."""

    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    REJECTED = "rejected"
    INVALID = "invalid"
    FAILED = "failed"
