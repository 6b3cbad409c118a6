"""
Integration Tests for the Analytics Recorder
============================================

Events are written through `SqlAnalyticsRecorder` into SQLite and read back
through its query methods.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from config.settings import DEFAULT_MODEL, AnalyticsSettings
from core.models import AnalyticsEvent, HostAnalytics
from infrastructure.database import DatabaseManager
from infrastructure.schema import analytics_requests_table
from services.analytics_service import (
    NullAnalyticsRecorder,
    SqlAnalyticsRecorder,
    create_analytics_recorder,
)

from conftest import make_analysis_result, make_classification

pytestmark = pytest.mark.integration

HOST = "a.com"
LONG_TEXT = "I love this product, it works exactly as advertised. " * 5


def make_event(pricing, cached=False, model=DEFAULT_MODEL, host=HOST, timestamp=None, **kwargs):
    result = make_analysis_result(pricing, make_classification(**kwargs), model=model, host=host)
    return AnalyticsEvent(
        host=host,
        text=LONG_TEXT,
        model=model,
        cached=cached,
        cost=result.cost,
        usage=result.usage,
        language=result.language,
        sentiment=result.sentiment,
        intents=result.intents,
        profanity=result.profanity,
        response_time_ms=25.0,
        timestamp=timestamp or datetime.now(timezone.utc),
    )


class TestRecording:
    async def test_hit_and_miss_summary(self, analytics_recorder, pricing):
        await analytics_recorder.record(make_event(pricing, cached=False))
        await analytics_recorder.record(make_event(pricing, cached=True))

        analytics = await analytics_recorder.get_host_analytics(HOST)
        summary = analytics.summary

        assert summary.total_requests == 2
        assert summary.cache_hits == 1
        assert summary.cache_misses == 1
        assert summary.cache_hit_rate == "50.00%"
        assert summary.total_cost == pytest.approx(0.00012)
        assert summary.cost_saved == pytest.approx(0.00012)
        assert summary.cost_savings_rate == "50.00%"
        assert summary.total_price == pytest.approx(0.00015)
        assert summary.price_saved == pytest.approx(0.00015)
        assert summary.input_tokens == 240
        assert summary.output_tokens == 80
        assert analytics.analytics_not_available is None

    async def test_series_labels(self, analytics_recorder, pricing):
        timestamp = datetime.now(timezone.utc)
        await analytics_recorder.record(make_event(pricing, timestamp=timestamp))

        analytics = await analytics_recorder.get_host_analytics(HOST)

        assert [point.hour for point in analytics.hourly_data] == [
            f"{timestamp:%d}-{timestamp.hour}h"
        ]
        assert [point.day for point in analytics.daily_data] == [f"{timestamp:%m}/{timestamp:%d}"]
        assert analytics.daily_data[0].requests == 1
        assert analytics.daily_data[0].cache_misses == 1
        assert analytics.daily_data[0].cost == pytest.approx(0.00012)

    async def test_model_usage_busiest_first(self, analytics_recorder, pricing):
        await analytics_recorder.record(make_event(pricing, model="gpt-4"))
        await analytics_recorder.record(make_event(pricing))
        await analytics_recorder.record(make_event(pricing, cached=True))

        analytics = await analytics_recorder.get_host_analytics(HOST)

        assert [(m.model, m.count) for m in analytics.model_usage] == [
            (DEFAULT_MODEL, 2),
            ("gpt-4", 1),
        ]

    async def test_raw_event_keeps_text_prefix(self, database, pricing):
        recorder = SqlAnalyticsRecorder(
            database, settings=AnalyticsSettings(ANALYTICS_TEXT_PREVIEW=20)
        )

        await recorder.record(make_event(pricing, intents=["feedback", "information"]))

        async with database.session() as session:
            row = (await session.execute(select(analytics_requests_table))).one()
        assert row.text == LONG_TEXT[:20]
        assert row.intents == ["feedback", "information"]
        assert row.sentiment_label == "positive"
        assert row.cached is False

    async def test_concurrent_events_are_all_counted(self, analytics_recorder, pricing):
        await asyncio.gather(*(analytics_recorder.record(make_event(pricing)) for _ in range(5)))

        analytics = await analytics_recorder.get_host_analytics(HOST)

        assert analytics.summary.total_requests == 5
        assert analytics.summary.cache_misses == 5

    async def test_event_without_host_is_skipped(self, analytics_recorder, pricing):
        await analytics_recorder.record(make_event(pricing, host=""))

        assert await analytics_recorder.get_all_hosts() == []

    async def test_write_failure_is_counted_not_raised(self, pricing, metrics):
        recorder = SqlAnalyticsRecorder(DatabaseManager(), metrics=metrics)

        await recorder.record(make_event(pricing))

        assert metrics.registry.get_sample_value("analytics_write_failures_total") == 1.0


class TestQueries:
    async def test_unknown_host_has_empty_analytics(self, analytics_recorder):
        analytics = await analytics_recorder.get_host_analytics("nobody.com")

        assert analytics == HostAnalytics()
        assert analytics.summary.cache_hit_rate == "0%"

    async def test_hosts_busiest_first(self, analytics_recorder, pricing):
        await analytics_recorder.record(make_event(pricing, host="quiet.com"))
        for _ in range(2):
            await analytics_recorder.record(make_event(pricing, host="busy.com"))

        hosts = await analytics_recorder.get_all_hosts()

        assert [(h.host, h.total_requests) for h in hosts] == [("busy.com", 2), ("quiet.com", 1)]
        assert hosts[0].total_price == pytest.approx(0.0003)
        assert hosts[0].last_updated.tzinfo is not None

    async def test_read_failure_yields_empty_analytics(self):
        recorder = SqlAnalyticsRecorder(DatabaseManager())

        assert await recorder.get_host_analytics(HOST) == HostAnalytics()
        assert await recorder.get_all_hosts() == []


class TestMaintenance:
    async def test_reset_removes_everything_for_host(self, analytics_recorder, pricing):
        await analytics_recorder.record(make_event(pricing))
        await analytics_recorder.record(make_event(pricing, host="other.com"))

        result = await analytics_recorder.reset_host_analytics(HOST)

        assert result.success
        assert result.message == f"Analytics data reset for host: {HOST}"
        assert await analytics_recorder.get_host_analytics(HOST) == HostAnalytics()
        assert [h.host for h in await analytics_recorder.get_all_hosts()] == ["other.com"]

    async def test_cleanup_drops_old_buckets_only(self, analytics_recorder, pricing):
        old = datetime.now(timezone.utc) - timedelta(days=40)
        await analytics_recorder.record(make_event(pricing, timestamp=old))
        await analytics_recorder.record(make_event(pricing))

        result = await analytics_recorder.cleanup_host_analytics(HOST, days_to_keep=30)

        assert result.success
        assert result.message == (
            f"Cleaned up analytics data older than 30 days for host: {HOST}"
        )
        # model, language, sentiment and one intent for the old day
        assert result.deleted == {"requests": 1, "hourly": 1, "daily": 1, "distribution": 4}

        analytics = await analytics_recorder.get_host_analytics(HOST)
        assert len(analytics.daily_data) == 1
        assert analytics.summary.total_requests == 2


class TestNullRecorder:
    async def test_reports_not_available(self, pricing):
        recorder = NullAnalyticsRecorder()

        await recorder.record(make_event(pricing))

        assert (await recorder.get_host_analytics(HOST)).analytics_not_available is True
        assert (await recorder.reset_host_analytics(HOST)).success is False
        cleanup = await recorder.cleanup_host_analytics(HOST)
        assert cleanup.message == "Analytics service not available"
        assert await recorder.get_all_hosts() == []

    async def test_factory_selects_by_setting(self, database):
        disabled = create_analytics_recorder(AnalyticsSettings(ANALYTICS_ENABLED=False), database)
        enabled = create_analytics_recorder(AnalyticsSettings(), database)

        assert isinstance(disabled, NullAnalyticsRecorder)
        assert isinstance(enabled, SqlAnalyticsRecorder)
