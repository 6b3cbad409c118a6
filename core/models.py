"""
Domain Data Models
==================
Pydantic v2 schemas for the analysis pipeline, the balance ledger and the
analytics recorder.

Python attributes are snake_case; JSON bodies and cache entries use the
camelCase aliases clients already consume (`inputCost`, `requestDetails`,
`balanceRemaining`, ...). Always serialize with `to_payload()` (or
`model_dump(by_alias=True)`).
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from core.enums import SentimentLabel, TransactionType

# =============================================================================
# CONFIGURATION
# =============================================================================


class BaseModelConfig(BaseModel):
    """Base configuration for all models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_payload(self, *, exclude_none: bool = False) -> dict[str, Any]:
        """JSON-compatible dict using the public (camelCase) field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=exclude_none)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CLASSIFICATION
# =============================================================================


class SentimentScore(BaseModelConfig):
    """Polarity score in [-1, 1] with its label."""

    score: float = Field(..., ge=-1.0, le=1.0)
    sentiment: SentimentLabel

    @field_validator("sentiment", mode="before")
    @classmethod
    def normalize_label(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v


class Profanity(BaseModelConfig):
    score: float = Field(default=0.0, ge=0.0)
    words: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """
    Upstream token accounting.

    Field names stay snake_case on the wire, matching the upstream payload.
    """

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def fill_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("total_tokens") is None:
            data = dict(data)
            data["total_tokens"] = int(data.get("prompt_tokens") or 0) + int(
                data.get("completion_tokens") or 0
            )
        return data

    @model_validator(mode="after")
    def validate_total(self) -> "TokenUsage":
        if self.total_tokens != self.prompt_tokens + self.completion_tokens:
            raise ValueError("total_tokens must equal prompt_tokens + completion_tokens")
        return self

    def to_payload(self) -> dict[str, int]:
        return self.model_dump()


class CostBreakdown(BaseModelConfig):
    """
    Provider cost and billed price of one classification.

    Built by `PricingTable.calculate_cost`; never assembled by hand.
    """

    model_config = ConfigDict(frozen=True)

    input_cost: float = Field(..., ge=0.0)
    output_cost: float = Field(..., ge=0.0)
    total_cost: float = Field(..., ge=0.0)
    input_price: float = Field(..., ge=0.0)
    output_price: float = Field(..., ge=0.0)
    total_price: float = Field(..., ge=0.0)
    currency: str = Field(default="USD")

    @model_validator(mode="after")
    def validate_price_covers_cost(self) -> "CostBreakdown":
        if self.total_price < self.total_cost:
            raise ValueError("total_price must not be lower than total_cost")
        return self

    @property
    def profit(self) -> float:
        return self.total_price - self.total_cost


class Classification(BaseModelConfig):
    """Structured output parsed from the upstream classifier."""

    language: str = Field(default="unknown")
    sentiment: SentimentScore
    profanity: Profanity = Field(default_factory=Profanity)
    intents: list[str] = Field(default_factory=list)

    @field_validator("intents", mode="before")
    @classmethod
    def dedupe_intents(cls, v: Any) -> Any:
        if isinstance(v, list):
            return list(dict.fromkeys(str(i) for i in v))
        return v


class RequestDetails(BaseModelConfig):
    model: str
    timestamp: datetime = Field(default_factory=utcnow)
    host: str


class AnalysisResult(Classification):
    """
    Canonical analysis output.

    Produced once per (normalized text, model) per cache TTL window and
    stored verbatim in the result cache.
    """

    usage: TokenUsage
    cost: CostBreakdown
    request_details: RequestDetails


class AnalysisResponse(AnalysisResult):
    """Result returned to a caller, annotated with cache and balance state."""

    cached: bool
    balance_remaining: float


# =============================================================================
# BALANCE LEDGER
# =============================================================================


class LedgerOutcome(BaseModelConfig):
    """Common envelope of every ledger operation."""

    success: bool = True
    error: Optional[str] = None


class BalanceCheck(BaseModelConfig):
    sufficient: bool
    balance: float = 0.0
    host_exists: bool = False
    active: bool = False
    error: Optional[str] = None


class DeductionResult(LedgerOutcome):
    balance: Optional[float] = None
    deducted: Optional[float] = None
    transaction_id: Optional[str] = None


class CreditResult(LedgerOutcome):
    balance: Optional[float] = None
    added: Optional[float] = None
    transaction_id: Optional[str] = None


class RefundResult(LedgerOutcome):
    balance: Optional[float] = None
    refunded: Optional[float] = None
    transaction_id: Optional[str] = None


class HostStatusResult(LedgerOutcome):
    active: Optional[bool] = None
    host: Optional[str] = None


class HostBalance(BaseModelConfig):
    """Prepaid balance record of one host."""

    host: str
    balance: float = Field(default=0.0, ge=0.0)
    total_credits_added: float = 0.0
    total_credits_used: float = 0.0
    active: bool = True
    notes: Optional[str] = None
    last_updated: Optional[datetime] = None


class HostBalanceResult(LedgerOutcome):
    host_exists: bool = False
    balance: Optional[float] = None
    total_credits_added: Optional[float] = None
    total_credits_used: Optional[float] = None
    last_updated: Optional[datetime] = None
    active: Optional[bool] = None
    notes: Optional[str] = None


class BalanceTransaction(BaseModelConfig):
    """Immutable ledger entry. Deductions carry a negative amount."""

    id: str
    host: str
    timestamp: datetime
    amount: float
    type: TransactionType
    balance_after: float
    description: Optional[str] = None
    reference: Optional[str] = None
    performed_by: Optional[str] = None


class Pagination(BaseModelConfig):
    total: int
    page: int
    limit: int
    pages: int


class TransactionHistory(LedgerOutcome):
    transactions: list[BalanceTransaction] = Field(default_factory=list)
    pagination: Optional[Pagination] = None
    host_exists: bool = False


class HostList(LedgerOutcome):
    hosts: list[HostBalance] = Field(default_factory=list)


# =============================================================================
# ANALYTICS
# =============================================================================


class AnalyticsEvent(BaseModelConfig):
    """One served analysis, as seen by the analytics recorder."""

    host: str
    text: str
    model: str
    cached: bool
    cost: CostBreakdown
    usage: TokenUsage
    language: Optional[str] = None
    sentiment: Optional[SentimentScore] = None
    intents: list[str] = Field(default_factory=list)
    profanity: Optional[Profanity] = None
    response_time_ms: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=utcnow)


class AnalyticsSummary(BaseModelConfig):
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: str = "0%"
    total_cost: float = 0.0
    cost_saved: float = 0.0
    cost_savings_rate: str = "0%"
    total_price: float = 0.0
    price_saved: float = 0.0
    price_savings_rate: str = "0%"
    input_tokens: int = 0
    output_tokens: int = 0


class UsagePoint(BaseModelConfig):
    """Counters of one bucket of a usage series."""

    requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cost: float = 0.0
    cost_saved: float = 0.0
    price: float = 0.0
    price_saved: float = 0.0


class HourlyUsage(UsagePoint):
    hour: str  # "DD-Hh"


class DailyUsage(UsagePoint):
    day: str  # "MM/DD"


class ModelUsage(BaseModelConfig):
    model: str
    count: int


class HostAnalytics(BaseModelConfig):
    summary: AnalyticsSummary = Field(default_factory=AnalyticsSummary)
    hourly_data: list[HourlyUsage] = Field(default_factory=list)
    daily_data: list[DailyUsage] = Field(default_factory=list)
    model_usage: list[ModelUsage] = Field(default_factory=list)
    analytics_not_available: Optional[bool] = None


class HostUsage(BaseModelConfig):
    host: str
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_cost: float = 0.0
    total_price: float = 0.0
    last_updated: Optional[datetime] = None


class AnalyticsMaintenanceResult(BaseModelConfig):
    success: bool
    message: Optional[str] = None
    deleted: Optional[dict[str, int]] = None


# =============================================================================
# BATCH
# =============================================================================


class SentimentBreakdown(BaseModelConfig):
    positive: int = 0
    neutral: int = 0
    negative: int = 0


class BatchErrorBreakdown(BaseModelConfig):
    balance_errors: int = 0
    other_errors: int = 0


class BatchSummary(BaseModelConfig):
    total_texts: int = 0
    successful: int = 0
    failed: int = 0
    cached: int = 0
    fresh: int = 0
    avg_sentiment_score: float = 0.0
    total_cost: float = 0.0
    total_price: float = 0.0
    profit: float = 0.0
    sentiment_breakdown: SentimentBreakdown = Field(default_factory=SentimentBreakdown)
    intents: dict[str, int] = Field(default_factory=dict)
    errors: BatchErrorBreakdown = Field(default_factory=BatchErrorBreakdown)


class BatchResponse(BaseModelConfig):
    """Batch outcome. Failed items appear in `results` as `{error, details, ...}` entries."""

    summary: BatchSummary
    results: list[dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "BaseModelConfig",
    "utcnow",
    "SentimentScore",
    "Profanity",
    "TokenUsage",
    "CostBreakdown",
    "Classification",
    "RequestDetails",
    "AnalysisResult",
    "AnalysisResponse",
    "LedgerOutcome",
    "BalanceCheck",
    "DeductionResult",
    "CreditResult",
    "RefundResult",
    "HostStatusResult",
    "HostBalance",
    "HostBalanceResult",
    "BalanceTransaction",
    "Pagination",
    "TransactionHistory",
    "HostList",
    "AnalyticsEvent",
    "AnalyticsSummary",
    "UsagePoint",
    "HourlyUsage",
    "DailyUsage",
    "ModelUsage",
    "HostAnalytics",
    "HostUsage",
    "AnalyticsMaintenanceResult",
    "SentimentBreakdown",
    "BatchErrorBreakdown",
    "BatchSummary",
    "BatchResponse",
]
