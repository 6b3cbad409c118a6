"""
Unit Tests for the Analysis Orchestrator
========================================

Ledger and analytics recorder are mocked; pricing, the result cache (over
the Redis double) and the background runner are real.

Covers every terminal state of a request:
- INVALID (400), REJECTED (402), FAILED (500)
- CACHE_MISS with full charge, CACHE_HIT with discounted fee
- Batch fan-out and summary
"""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError

from config.settings import DEFAULT_MODEL
from core.exceptions import (
    PaymentRequiredError,
    UpstreamError,
    UpstreamParseError,
    ValidationError,
)
from core.models import AnalysisResponse, BalanceCheck, DeductionResult
from infrastructure.background import BackgroundTaskRunner
from optimization.cache_manager import derive_cache_key
from optimization.ttl_policy import ONE_HOUR, TTLPolicy
from orchestration.analysis_orchestrator import AnalysisOrchestrator
from services.analytics_service import SqlAnalyticsRecorder
from services.balance_ledger import SqlBalanceLedger

from conftest import make_analysis_result, make_classification, make_classifier_response

HOST = "a.com"
TEXT = "I love this"


@pytest.fixture
def ledger_double() -> AsyncMock:
    ledger = AsyncMock(spec=SqlBalanceLedger)
    ledger.check_balance.return_value = BalanceCheck(
        sufficient=True, balance=10.0, host_exists=True, active=True
    )
    ledger.deduct_credits.return_value = DeductionResult(
        success=True, balance=9.99988, deducted=0.00012, transaction_id="1"
    )
    return ledger


@pytest.fixture
def analytics_double() -> AsyncMock:
    return AsyncMock(spec=SqlAnalyticsRecorder)


@pytest.fixture
def background(metrics) -> BackgroundTaskRunner:
    return BackgroundTaskRunner(metrics=metrics)


@pytest.fixture
def orchestrator(
    pricing, result_cache, classifier_double, ledger_double, analytics_double, background, metrics
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        pricing=pricing,
        cache=result_cache,
        classifier=classifier_double,
        ledger=ledger_double,
        analytics=analytics_double,
        ttl_policy=TTLPolicy(),
        background=background,
        metrics=metrics,
        cache_hit_discount=0.10,
        batch_size_limit=5,
    )


def outcome_count(metrics, outcome: str, model: str = DEFAULT_MODEL):
    return metrics.registry.get_sample_value(
        "analysis_requests_total", {"outcome": outcome, "model": model}
    )


# =============================================================================
# SINGLE TEXT
# =============================================================================


class TestCacheMiss:
    async def test_classifies_charges_full_cost_and_caches(
        self, orchestrator, classifier_double, ledger_double, result_cache, background, metrics
    ):
        response = await orchestrator.analyze(TEXT, HOST)
        await background.drain()

        classifier_double.classify.assert_awaited_once_with(TEXT, DEFAULT_MODEL)
        ledger_double.check_balance.assert_awaited_once_with(HOST, pytest.approx(0.000006))
        ledger_double.deduct_credits.assert_awaited_once_with(
            HOST,
            0.00012,
            description=f"Sentiment analysis ({DEFAULT_MODEL})",
            reference=derive_cache_key(TEXT, DEFAULT_MODEL),
        )

        assert isinstance(response, AnalysisResponse)
        assert response.cached is False
        assert response.balance_remaining == 9.99988
        assert response.cost.total_cost == pytest.approx(0.00012)
        assert response.cost.total_price == pytest.approx(0.00015)
        assert response.request_details.host == HOST
        assert response.request_details.model == DEFAULT_MODEL

        assert await result_cache.get(derive_cache_key(TEXT, DEFAULT_MODEL)) is not None
        assert outcome_count(metrics, "cache_miss") == 1.0

    async def test_classifier_receives_normalized_text(self, orchestrator, classifier_double):
        await orchestrator.analyze("  I   love\nthis ", HOST)

        classifier_double.classify.assert_awaited_once_with(TEXT, DEFAULT_MODEL)

    async def test_requested_model_is_used(self, orchestrator, classifier_double, ledger_double):
        await orchestrator.analyze(TEXT, HOST, model="gpt-4")

        classifier_double.classify.assert_awaited_once_with(TEXT, "gpt-4")
        assert ledger_double.deduct_credits.call_args.kwargs["description"] == (
            "Sentiment analysis (gpt-4)"
        )

    async def test_ttl_follows_classification(
        self, orchestrator, classifier_double, fake_redis
    ):
        classifier_double.classify.return_value = make_classifier_response(
            make_classification(intents=["news"])
        )

        await orchestrator.analyze(TEXT, HOST)

        key = f"analysis:{derive_cache_key(TEXT, DEFAULT_MODEL)}"
        assert fake_redis.expirations[key] == ONE_HOUR

    async def test_zero_cost_is_not_charged(self, orchestrator, classifier_double, ledger_double):
        classifier_double.classify.return_value = make_classifier_response(
            prompt_tokens=0, completion_tokens=0
        )

        response = await orchestrator.analyze(TEXT, HOST)

        ledger_double.deduct_credits.assert_not_awaited()
        assert response.balance_remaining == 10.0

    async def test_failed_deduction_still_serves_result(self, orchestrator, ledger_double):
        ledger_double.deduct_credits.return_value = DeductionResult(
            success=False, error="Insufficient balance"
        )

        response = await orchestrator.analyze(TEXT, HOST)

        assert response.cached is False
        assert response.balance_remaining == pytest.approx(10.0 - 0.00012)

    async def test_cache_outage_after_charge_still_serves_result(
        self, orchestrator, fake_redis, ledger_double
    ):
        fake_redis.fail_with = ConnectionError("refused")

        response = await orchestrator.analyze(TEXT, HOST)

        assert response.cached is False
        ledger_double.deduct_credits.assert_awaited_once()

    async def test_usage_is_recorded_in_background(
        self, orchestrator, analytics_double, background
    ):
        await orchestrator.analyze(TEXT, HOST)
        await background.drain()

        analytics_double.record.assert_awaited_once()
        event = analytics_double.record.call_args.args[0]
        assert event.host == HOST
        assert event.text == TEXT
        assert event.cached is False
        assert event.intents == ["feedback"]
        assert event.cost.total_price == pytest.approx(0.00015)


class TestCacheHit:
    @pytest.fixture
    async def cached_entry(self, result_cache, pricing):
        result = make_analysis_result(pricing)
        await result_cache.set(derive_cache_key(TEXT, DEFAULT_MODEL), result)
        return result

    async def test_serves_cached_result_with_discounted_fee(
        self, orchestrator, cached_entry, classifier_double, ledger_double, metrics
    ):
        response = await orchestrator.analyze("  I love   this", HOST)

        classifier_double.classify.assert_not_awaited()
        ledger_double.deduct_credits.assert_awaited_once_with(
            HOST,
            0.000012,
            description=f"Cache hit for sentiment analysis ({DEFAULT_MODEL})",
            reference=derive_cache_key(TEXT, DEFAULT_MODEL),
        )
        assert response.cached is True
        assert response.balance_remaining == 9.999988
        assert response.cost == cached_entry.cost
        assert response.sentiment == cached_entry.sentiment
        assert outcome_count(metrics, "cache_hit") == 1.0

    async def test_zero_cost_entry_is_free(
        self, orchestrator, result_cache, pricing, ledger_double
    ):
        await result_cache.set(
            derive_cache_key(TEXT, DEFAULT_MODEL),
            make_analysis_result(pricing, prompt_tokens=0, completion_tokens=0),
        )

        response = await orchestrator.analyze(TEXT, HOST)

        ledger_double.deduct_credits.assert_not_awaited()
        assert response.balance_remaining == 10.0

    async def test_hit_is_recorded_as_cached(
        self, orchestrator, cached_entry, analytics_double, background
    ):
        await orchestrator.analyze(TEXT, HOST)
        await background.drain()

        assert analytics_double.record.call_args.args[0].cached is True

    async def test_other_model_misses(self, orchestrator, cached_entry, classifier_double):
        response = await orchestrator.analyze(TEXT, HOST, model="gpt-4")

        assert response.cached is False
        classifier_double.classify.assert_awaited_once()


class TestRejections:
    @pytest.mark.parametrize(
        "text,host",
        [(None, HOST), ("", HOST), ("   \n", HOST), (TEXT, None), (TEXT, "")],
    )
    async def test_missing_input(self, orchestrator, ledger_double, metrics, text, host):
        with pytest.raises(ValidationError, match="Text and host are required"):
            await orchestrator.analyze(text, host)

        ledger_double.check_balance.assert_not_awaited()
        assert outcome_count(metrics, "invalid") == 1.0

    async def test_insufficient_balance(
        self, orchestrator, ledger_double, classifier_double, analytics_double, background, metrics
    ):
        ledger_double.check_balance.return_value = BalanceCheck(
            sufficient=False,
            balance=0.0001,
            host_exists=True,
            active=True,
            error="Insufficient balance",
        )
        text = "x" * 4000

        with pytest.raises(PaymentRequiredError) as exc_info:
            await orchestrator.analyze(text, HOST, model="gpt-4")
        await background.drain()

        error = exc_info.value
        assert error.message == "Insufficient balance"
        assert error.balance == 0.0001
        assert error.estimated_cost == pytest.approx(0.09)
        assert error.host_exists is True
        assert error.active is True
        classifier_double.classify.assert_not_awaited()
        ledger_double.deduct_credits.assert_not_awaited()
        analytics_double.record.assert_not_awaited()
        assert outcome_count(metrics, "rejected", "gpt-4") == 1.0

    async def test_unknown_host(self, orchestrator, ledger_double):
        ledger_double.check_balance.return_value = BalanceCheck(
            sufficient=False, error="Host not registered in the system"
        )

        with pytest.raises(PaymentRequiredError) as exc_info:
            await orchestrator.analyze(TEXT, "unknown.com")

        assert exc_info.value.host_exists is False
        assert exc_info.value.message == "Host not registered in the system"


class TestUpstreamFailures:
    @pytest.mark.parametrize(
        "error",
        [
            UpstreamParseError("Failed to parse classifier response", response_text="nope"),
            UpstreamError("Provider error: Service Unavailable", status=503),
        ],
    )
    async def test_failure_charges_and_caches_nothing(
        self,
        orchestrator,
        classifier_double,
        ledger_double,
        analytics_double,
        fake_redis,
        background,
        metrics,
        error,
    ):
        classifier_double.classify.side_effect = error

        with pytest.raises(type(error)):
            await orchestrator.analyze(TEXT, HOST)
        await background.drain()

        ledger_double.deduct_credits.assert_not_awaited()
        analytics_double.record.assert_not_awaited()
        assert fake_redis.store == {}
        assert outcome_count(metrics, "failed") == 1.0


# =============================================================================
# BATCH
# =============================================================================


class TestBatchValidation:
    @pytest.mark.parametrize("texts", [None, [], "I love this"])
    async def test_texts_required(self, orchestrator, texts):
        with pytest.raises(ValidationError, match="Array of texts is required"):
            await orchestrator.analyze_batch(texts, HOST)

    async def test_size_limit(self, orchestrator, ledger_double):
        with pytest.raises(ValidationError, match="Maximum allowed is 5 texts"):
            await orchestrator.analyze_batch([TEXT] * 6, HOST)

        ledger_double.check_balance.assert_not_awaited()

    async def test_host_required(self, orchestrator):
        with pytest.raises(ValidationError, match="Host is required"):
            await orchestrator.analyze_batch([TEXT], None)


class TestBatchAnalysis:
    async def test_mixed_outcomes(
        self, orchestrator, classifier_double, ledger_double, background, metrics
    ):
        async def classify(text, model):
            if text == "boom":
                raise UpstreamError("Provider error: Bad Gateway", status=502)
            return make_classifier_response()

        async def check_balance(host, amount):
            if amount > 0.001:
                return BalanceCheck(
                    sufficient=False,
                    balance=0.001,
                    host_exists=True,
                    active=True,
                    error="Insufficient balance",
                )
            return BalanceCheck(sufficient=True, balance=10.0, host_exists=True, active=True)

        classifier_double.classify.side_effect = classify
        ledger_double.check_balance.side_effect = check_balance
        long_text = "x" * 4000

        batch = await orchestrator.analyze_batch([TEXT, "", "boom", long_text], HOST)
        await background.drain()

        ok, invalid, failed, rejected = batch.results
        assert ok["cached"] is False
        assert ok["sentiment"] == {"score": 0.8, "sentiment": "positive"}
        assert invalid == {
            "error": "Invalid input",
            "details": "Text and host are required",
            "text": "...",
        }
        assert failed["error"] == "Analysis failed"
        assert failed["text"] == "boom..."
        assert rejected["error"] == "Payment required"
        assert rejected["details"] == "Insufficient balance"
        assert rejected["hostExists"] is True
        assert rejected["text"] == "x" * 50 + "..."

        summary = batch.summary
        assert summary.total_texts == 4
        assert summary.successful == 1
        assert summary.failed == 3
        assert summary.fresh == 1
        assert summary.cached == 0
        assert summary.total_cost == pytest.approx(0.00012)
        assert summary.total_price == pytest.approx(0.00015)
        assert summary.profit == pytest.approx(0.00003)
        assert summary.errors.balance_errors == 1
        assert summary.errors.other_errors == 2
        assert metrics.registry.get_sample_value("analysis_batch_size_count") == 1.0

    async def test_repeated_text_is_served_from_cache(self, orchestrator, background):
        await orchestrator.analyze(TEXT, HOST)

        batch = await orchestrator.analyze_batch([TEXT, "I  love this"], HOST)
        await background.drain()

        assert batch.summary.cached == 2
        assert batch.summary.fresh == 0
        assert all(item["cached"] for item in batch.results)

    async def test_payload_uses_public_field_names(self, orchestrator):
        batch = await orchestrator.analyze_batch([TEXT], HOST)

        payload = batch.to_payload()
        assert set(payload) == {"summary", "results"}
        assert payload["summary"]["totalTexts"] == 1
        assert payload["summary"]["sentimentBreakdown"]["positive"] == 1
        assert "balanceRemaining" in payload["results"][0]


class TestSummarize:
    def test_empty(self):
        summary = AnalysisOrchestrator.summarize([])

        assert summary.total_texts == 0
        assert summary.avg_sentiment_score == 0.0

    def test_breakdowns(self, pricing):
        def response(score, label, intents, cached):
            result = make_analysis_result(pricing, make_classification(score, label, intents))
            return AnalysisResponse.model_validate(
                {**result.model_dump(), "cached": cached, "balance_remaining": 1.0}
            )

        items = [
            response(0.9, "positive", ["feedback"], False),
            response(-0.6, "negative", ["complaint", "feedback"], True),
            response(0.0, "neutral", [], False),
            {"error": "Payment required", "details": "Insufficient balance"},
            {"error": "Analysis failed", "details": "Provider error"},
        ]

        summary = AnalysisOrchestrator.summarize(items)

        assert summary.successful == 3
        assert summary.failed == 2
        assert summary.cached == 1
        assert summary.fresh == 2
        assert summary.avg_sentiment_score == 0.1
        assert summary.sentiment_breakdown.positive == 1
        assert summary.sentiment_breakdown.negative == 1
        assert summary.sentiment_breakdown.neutral == 1
        assert summary.intents == {"feedback": 2, "complaint": 1}
        assert summary.errors.balance_errors == 1
        assert summary.errors.other_errors == 1
        assert summary.total_cost == pytest.approx(0.00036)
