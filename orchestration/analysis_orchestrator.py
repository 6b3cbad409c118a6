"""
Analysis Orchestrator

Drives one analysis request through cost estimation, the balance pre-check,
the result cache and, on a miss, the upstream classifier, then bills the
host and records usage. The batch path runs the same pipeline for every text
concurrently and summarizes the outcomes.

Charging rules:
- Nothing is charged for a request that ends in 400, 402 or 500.
- A cache hit is charged a discounted fee (a fraction of the cached cost).
- A miss is charged the full provider cost of the classification.
- A failed deduction after a successful pre-check is logged, never surfaced.
"""

import asyncio
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from config.settings import DEFAULT_MODEL
from core.enums import AnalysisOutcome
from core.exceptions import (
    CacheError,
    GatewayException,
    PaymentRequiredError,
    UpstreamError,
    UpstreamParseError,
    ValidationError,
)
from core.models import (
    AnalysisResponse,
    AnalysisResult,
    AnalyticsEvent,
    BatchErrorBreakdown,
    BatchResponse,
    BatchSummary,
    BalanceCheck,
    RequestDetails,
    SentimentBreakdown,
)
from core.pricing import PricingTable
from infrastructure.background import BackgroundTaskRunner
from infrastructure.classifier_client import ClassifierClient
from infrastructure.monitoring import MetricsCollector
from optimization.cache_manager import ResultCache, derive_cache_key, normalize_text
from optimization.ttl_policy import TTLPolicy
from services.analytics_service import AnalyticsRecorder
from services.balance_ledger import BalanceLedger

TEXT_PREVIEW_LENGTH = 50

BatchItem = Union[AnalysisResponse, Dict[str, Any]]


class AnalysisOrchestrator:
    """
    Request pipeline for single and batch sentiment analysis.

    States of a single request:
        START -> ESTIMATE_COST -> CHECK_BALANCE -> {CACHE_HIT | CACHE_MISS} -> DONE
    with REJECTED (402) leaving CHECK_BALANCE and FAILED (500) leaving the
    classifier call.
    """

    def __init__(
        self,
        pricing: PricingTable,
        cache: ResultCache,
        classifier: ClassifierClient,
        ledger: BalanceLedger,
        analytics: AnalyticsRecorder,
        ttl_policy: TTLPolicy,
        background: BackgroundTaskRunner,
        metrics: Optional[MetricsCollector] = None,
        cache_hit_discount: float = 0.10,
        batch_size_limit: int = 100,
        default_model: str = DEFAULT_MODEL,
    ):
        self.pricing = pricing
        self.cache = cache
        self.classifier = classifier
        self.ledger = ledger
        self.analytics = analytics
        self.ttl_policy = ttl_policy
        self.background = background
        self.metrics = metrics
        self.cache_hit_discount = cache_hit_discount
        self.batch_size_limit = batch_size_limit
        self.default_model = default_model

        logger.info(
            "AnalysisOrchestrator initialized | "
            f"default_model={default_model} | "
            f"cache_hit_discount={cache_hit_discount:.0%} | "
            f"batch_size_limit={batch_size_limit}"
        )

    # =========================================================================
    # SINGLE TEXT
    # =========================================================================

    async def analyze(
        self, text: Optional[str], host: Optional[str], model: Optional[str] = None
    ) -> AnalysisResponse:
        """
        Analyze one text on behalf of a host.

        Raises:
            ValidationError: Text or host missing
            PaymentRequiredError: Balance pre-check failed
            UpstreamError: Classifier transport or HTTP failure
            UpstreamParseError: Classifier reply unusable
        """
        start_time = time.perf_counter()
        model = model or self.default_model

        if not text or not text.strip() or not host:
            self._record(AnalysisOutcome.INVALID, model)
            raise ValidationError(
                "Text and host are required", field="text" if host else "host"
            )

        estimated_cost = self.pricing.estimate_cost(text, model)
        check = await self.ledger.check_balance(host, estimated_cost)
        if not check.sufficient:
            self._record(AnalysisOutcome.REJECTED, model)
            logger.info(
                f"Rejected analysis for {host}: {check.error} | "
                f"balance={check.balance} | estimated_cost={estimated_cost:.6f}"
            )
            raise PaymentRequiredError(
                check.error or "Insufficient balance",
                balance=check.balance,
                estimated_cost=estimated_cost,
                host_exists=check.host_exists,
                active=check.active,
            )

        cleaned = normalize_text(text)
        cache_key = derive_cache_key(text, model)

        cached = await self.cache.get(cache_key, model)
        if cached is not None:
            return await self._serve_cached(cached, cleaned, host, model, cache_key, check, start_time)

        try:
            return await self._serve_fresh(cleaned, host, model, cache_key, check, start_time)
        except (UpstreamError, UpstreamParseError):
            self._record(AnalysisOutcome.FAILED, model, start_time)
            raise

    async def _serve_cached(
        self,
        cached: AnalysisResult,
        cleaned: str,
        host: str,
        model: str,
        cache_key: str,
        check: BalanceCheck,
        start_time: float,
    ) -> AnalysisResponse:
        fee = self.pricing.discounted_fee(cached.cost.total_cost, self.cache_hit_discount)

        if fee > 0:
            deduction = await self.ledger.deduct_credits(
                host,
                fee,
                description=f"Cache hit for sentiment analysis ({model})",
                reference=cache_key,
            )
            if not deduction.success:
                logger.warning(f"Failed to deduct cache hit fee for {host}: {deduction.error}")

        response = AnalysisResponse.model_validate(
            {
                **cached.model_dump(),
                "cached": True,
                "balance_remaining": round(check.balance - fee, 6),
            }
        )

        self._record_usage(response, cleaned, host, model, start_time)
        self._record(AnalysisOutcome.CACHE_HIT, model, start_time, cached=True)
        logger.debug(f"Served cached analysis | host={host} | model={model} | fee={fee}")
        return response

    async def _serve_fresh(
        self,
        cleaned: str,
        host: str,
        model: str,
        cache_key: str,
        check: BalanceCheck,
        start_time: float,
    ) -> AnalysisResponse:
        classified = await self.classifier.classify(cleaned, model)
        cost = self.pricing.calculate_cost(classified.usage, model)

        balance_remaining = round(check.balance - cost.total_cost, 6)
        if cost.total_cost > 0:
            deduction = await self.ledger.deduct_credits(
                host,
                cost.total_cost,
                description=f"Sentiment analysis ({model})",
                reference=cache_key,
            )
            if deduction.success and deduction.balance is not None:
                balance_remaining = deduction.balance
            else:
                logger.warning(f"Failed to deduct analysis cost for {host}: {deduction.error}")

        result = AnalysisResult(
            **classified.classification.model_dump(),
            usage=classified.usage,
            cost=cost,
            request_details=RequestDetails(model=model, host=host),
        )

        ttl = self.ttl_policy.determine_ttl(result)
        try:
            await self.cache.set(cache_key, result, ttl=ttl)
        except CacheError as e:
            logger.warning(f"Could not cache analysis {cache_key[:16]}: {e.message}")

        response = AnalysisResponse.model_validate(
            {**result.model_dump(), "cached": False, "balance_remaining": balance_remaining}
        )

        self._record_usage(response, cleaned, host, model, start_time)
        self._record(AnalysisOutcome.CACHE_MISS, model, start_time)
        logger.debug(
            f"Served fresh analysis | host={host} | model={model} | "
            f"cost={cost.total_cost} | ttl={ttl}s"
        )
        return response

    def _record_usage(
        self,
        response: AnalysisResponse,
        cleaned: str,
        host: str,
        model: str,
        start_time: float,
    ) -> None:
        event = AnalyticsEvent(
            host=host,
            text=cleaned,
            model=model,
            cached=response.cached,
            cost=response.cost,
            usage=response.usage,
            language=response.language,
            sentiment=response.sentiment,
            intents=response.intents,
            profanity=response.profanity,
            response_time_ms=(time.perf_counter() - start_time) * 1000,
        )
        self.background.submit(self.analytics.record(event), name=f"analytics:{host}")

    def _record(
        self,
        outcome: AnalysisOutcome,
        model: str,
        start_time: Optional[float] = None,
        cached: bool = False,
    ) -> None:
        if not self.metrics:
            return
        self.metrics.record_analysis(
            outcome=outcome.value,
            model=model,
            duration_seconds=(time.perf_counter() - start_time) if start_time else None,
            cached=cached,
        )

    # =========================================================================
    # BATCH
    # =========================================================================

    async def analyze_batch(
        self,
        texts: Optional[Sequence[str]],
        host: Optional[str],
        model: Optional[str] = None,
    ) -> BatchResponse:
        """
        Analyze every text concurrently.

        Each item checks the balance against its own estimate; nothing is
        reserved for the batch as a whole, so a host running low can see
        later items rejected with 402 while earlier ones succeed.

        Raises:
            ValidationError: Texts missing, empty, over the size limit, or host missing
        """
        if not texts or isinstance(texts, str):
            raise ValidationError("Array of texts is required", field="texts")

        if len(texts) > self.batch_size_limit:
            raise ValidationError(
                "Batch size too large. Maximum allowed is "
                f"{self.batch_size_limit} texts.",
                field="texts",
            )

        if not host:
            raise ValidationError("Host is required", field="host")

        if self.metrics:
            self.metrics.record_batch(len(texts))

        items: List[BatchItem] = await asyncio.gather(
            *(self._analyze_item(text, host, model) for text in texts)
        )

        summary = self.summarize(items)
        logger.info(
            f"Batch completed | host={host} | total={summary.total_texts} | "
            f"successful={summary.successful} | failed={summary.failed} | "
            f"cached={summary.cached}"
        )

        return BatchResponse(
            summary=summary,
            results=[
                item.to_payload() if isinstance(item, AnalysisResponse) else item
                for item in items
            ],
        )

    async def _analyze_item(self, text: str, host: str, model: Optional[str]) -> BatchItem:
        preview = f"{(text or '')[:TEXT_PREVIEW_LENGTH]}..."

        try:
            return await self.analyze(text, host, model)
        except PaymentRequiredError as e:
            return {
                "error": "Payment required",
                "details": e.message,
                "balance": e.balance,
                "estimatedCost": e.estimated_cost,
                "hostExists": e.host_exists,
                "active": e.active,
                "text": preview,
            }
        except ValidationError as e:
            return {"error": "Invalid input", "details": e.message, "text": preview}
        except GatewayException as e:
            logger.error(f"Batch item failed for {host}: {e}")
            return {"error": "Analysis failed", "details": e.message, "text": preview}
        except Exception as e:
            logger.opt(exception=e).error(f"Unexpected batch item failure for {host}: {e}")
            return {"error": "Analysis failed", "details": str(e), "text": preview}

    @staticmethod
    def summarize(items: Sequence[BatchItem]) -> BatchSummary:
        """Counts, totals and breakdowns over the outcome of every batch item."""
        successes = [item for item in items if isinstance(item, AnalysisResponse)]
        failures = [item for item in items if not isinstance(item, AnalysisResponse)]

        labels = Counter(str(item.sentiment.sentiment) for item in successes)
        intents = Counter(intent for item in successes for intent in item.intents)
        balance_errors = sum(
            1 for item in failures if "balance" in str(item.get("details", "")).lower()
        )

        total_cost = round(sum(item.cost.total_cost for item in successes), 6)
        total_price = round(sum(item.cost.total_price for item in successes), 6)
        avg_score = (
            sum(item.sentiment.score for item in successes) / len(successes) if successes else 0.0
        )

        return BatchSummary(
            total_texts=len(items),
            successful=len(successes),
            failed=len(failures),
            cached=sum(1 for item in successes if item.cached),
            fresh=sum(1 for item in successes if not item.cached),
            avg_sentiment_score=round(avg_score, 4),
            total_cost=total_cost,
            total_price=total_price,
            profit=round(total_price - total_cost, 6),
            sentiment_breakdown=SentimentBreakdown(
                positive=labels.get("positive", 0),
                neutral=labels.get("neutral", 0),
                negative=labels.get("negative", 0),
            ),
            intents=dict(intents),
            errors=BatchErrorBreakdown(
                balance_errors=balance_errors,
                other_errors=len(failures) - balance_errors,
            ),
        )


__all__ = ["AnalysisOrchestrator", "BatchItem"]
