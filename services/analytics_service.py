"""
Analytics Service: Usage Aggregation
====================================

Best-effort usage analytics per host:
- Raw request log (text truncated to a bounded prefix)
- Hourly, daily and lifetime rollups updated with pure increments
  (`INSERT ... ON CONFLICT DO UPDATE SET c = c + excluded.c`), so concurrent
  writers never lose updates
- Distribution counters for model, language, sentiment label and intent

Recording never raises: failures are logged and counted, and callers submit
`record()` as a detached task so it cannot slow a response down.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from loguru import logger
from sqlalchemy import and_, delete, func, insert, or_, select
from sqlalchemy.exc import SQLAlchemyError

from config.settings import AnalyticsSettings
from core.enums import DistributionDimension
from core.exceptions import AnalyticsWriteError, GatewayException
from core.models import (
    AnalyticsEvent,
    AnalyticsMaintenanceResult,
    AnalyticsSummary,
    DailyUsage,
    HostAnalytics,
    HostUsage,
    HourlyUsage,
    ModelUsage,
)
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.schema import (
    USAGE_COUNTERS,
    analytics_daily_table,
    analytics_distribution_table,
    analytics_hosts_table,
    analytics_hourly_table,
    analytics_requests_table,
)

ROLLUP_TABLES = (
    analytics_requests_table,
    analytics_daily_table,
    analytics_hourly_table,
    analytics_hosts_table,
    analytics_distribution_table,
)


def _rate(part: float, whole: float) -> str:
    """Percentage string with two decimals, e.g. "12.50%"; "0%" when undefined."""
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.2f}%"


def _money(value: Optional[float]) -> float:
    return round(float(value or 0), 6)


@runtime_checkable
class AnalyticsRecorder(Protocol):
    """Capability interface shared by the store-backed and null recorders."""

    async def record(self, event: AnalyticsEvent) -> None: ...

    async def get_host_analytics(self, host: str) -> HostAnalytics: ...

    async def reset_host_analytics(self, host: str) -> AnalyticsMaintenanceResult: ...

    async def cleanup_host_analytics(
        self, host: str, days_to_keep: int = 30
    ) -> AnalyticsMaintenanceResult: ...

    async def get_all_hosts(self) -> List[HostUsage]: ...


class SqlAnalyticsRecorder:
    """Analytics persisted in the `analytics_*` tables."""

    def __init__(
        self,
        database_manager: DatabaseManager,
        settings: Optional[AnalyticsSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.database_manager = database_manager
        self.settings = settings or AnalyticsSettings()
        self._metrics = metrics
        logger.debug("SqlAnalyticsRecorder initialized")

    # =========================================================================
    # RECORDING
    # =========================================================================

    async def record(self, event: AnalyticsEvent) -> None:
        """Append the raw event and bump every rollup. Never raises."""
        if not event.host:
            logger.debug("Host not provided, skipping analytics")
            return

        try:
            await self._write(event)
        except (SQLAlchemyError, GatewayException, ValueError) as e:
            error = AnalyticsWriteError("Error recording analytics", host=event.host, cause=e)
            logger.error(f"{error} | cause={e}")
            if self._metrics:
                self._metrics.record_analytics_failure()

    @staticmethod
    def _increments(event: AnalyticsEvent) -> Dict[str, Any]:
        counters: Dict[str, Any] = {name: 0 for name in USAGE_COUNTERS}
        counters["requests"] = 1
        counters["input_tokens"] = event.usage.prompt_tokens
        counters["output_tokens"] = event.usage.completion_tokens
        counters["response_time_total"] = event.response_time_ms

        if event.cached:
            counters["cache_hits"] = 1
            counters["cost_saved"] = event.cost.total_cost
            counters["price_saved"] = event.cost.total_price
        else:
            counters["cache_misses"] = 1
            counters["cost"] = event.cost.total_cost
            counters["price"] = event.cost.total_price
        return counters

    @staticmethod
    def _distribution(event: AnalyticsEvent) -> List[Tuple[str, str]]:
        pairs = [(DistributionDimension.MODEL.value, event.model)]
        if event.language:
            pairs.append((DistributionDimension.LANGUAGE.value, event.language))
        if event.sentiment is not None:
            pairs.append((DistributionDimension.SENTIMENT.value, str(event.sentiment.sentiment)))
        for intent in dict.fromkeys(event.intents):
            pairs.append((DistributionDimension.INTENT.value, intent))
        return pairs

    def _increment_stmt(self, table, keys: Dict[str, Any], counters: Dict[str, Any], **extra):
        stmt = self.database_manager.upsert(table).values(**keys, **counters, **extra)
        set_ = {name: table.c[name] + stmt.excluded[name] for name in counters}
        if "last_request" in extra:
            set_["last_request"] = stmt.excluded.last_request
        return stmt.on_conflict_do_update(index_elements=list(keys), set_=set_)

    async def _write(self, event: AnalyticsEvent) -> None:
        timestamp = event.timestamp.astimezone(timezone.utc)
        date_str = timestamp.strftime("%Y-%m-%d")
        counters = self._increments(event)
        preview = event.text[: self.settings.text_preview_length] if event.text else None

        async with self.database_manager.transaction() as conn:
            await conn.execute(
                insert(analytics_requests_table).values(
                    host=event.host,
                    timestamp=timestamp,
                    text=preview,
                    model=event.model,
                    cached=event.cached,
                    language=event.language,
                    sentiment_score=event.sentiment.score if event.sentiment else None,
                    sentiment_label=str(event.sentiment.sentiment) if event.sentiment else None,
                    intents=list(event.intents),
                    profanity_score=event.profanity.score if event.profanity else None,
                    prompt_tokens=event.usage.prompt_tokens,
                    completion_tokens=event.usage.completion_tokens,
                    total_tokens=event.usage.total_tokens,
                    cost=event.cost.total_cost,
                    price=event.cost.total_price,
                    response_time_ms=event.response_time_ms,
                )
            )

            await conn.execute(
                self._increment_stmt(
                    analytics_daily_table, {"host": event.host, "date": date_str}, counters
                )
            )
            await conn.execute(
                self._increment_stmt(
                    analytics_hourly_table,
                    {"host": event.host, "date": date_str, "hour": timestamp.hour},
                    counters,
                )
            )
            await conn.execute(
                self._increment_stmt(
                    analytics_hosts_table,
                    {"host": event.host},
                    counters,
                    first_seen=timestamp,
                    last_request=timestamp,
                )
            )

            for dimension, value in self._distribution(event):
                await conn.execute(
                    self._increment_stmt(
                        analytics_distribution_table,
                        {
                            "host": event.host,
                            "date": date_str,
                            "dimension": dimension,
                            "value": value[:255],
                        },
                        {"count": 1},
                    )
                )

        logger.debug(
            f"Recorded analytics | host={event.host} | cached={event.cached} | model={event.model}"
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_host_analytics(self, host: str) -> HostAnalytics:
        """
        Summary, last-7-days hourly series, last-30-days daily series and model mix.

        Unknown hosts and read failures yield empty analytics.
        """
        now = datetime.now(timezone.utc)
        hourly_from = (now - timedelta(days=self.settings.hourly_window_days)).strftime("%Y-%m-%d")
        daily_from = (now - timedelta(days=self.settings.daily_window_days)).strftime("%Y-%m-%d")

        try:
            async with self.database_manager.session() as session:
                host_row = (
                    await session.execute(
                        select(analytics_hosts_table).where(analytics_hosts_table.c.host == host)
                    )
                ).first()
                if host_row is None:
                    return HostAnalytics()

                hourly_rows = (
                    await session.execute(
                        select(analytics_hourly_table)
                        .where(
                            analytics_hourly_table.c.host == host,
                            analytics_hourly_table.c.date >= hourly_from,
                        )
                        .order_by(analytics_hourly_table.c.date, analytics_hourly_table.c.hour)
                    )
                ).all()

                daily_rows = (
                    await session.execute(
                        select(analytics_daily_table)
                        .where(
                            analytics_daily_table.c.host == host,
                            analytics_daily_table.c.date >= daily_from,
                        )
                        .order_by(analytics_daily_table.c.date)
                    )
                ).all()

                dist = analytics_distribution_table
                model_rows = (
                    await session.execute(
                        select(dist.c.value, func.sum(dist.c.count).label("count"))
                        .where(
                            dist.c.host == host,
                            dist.c.dimension == DistributionDimension.MODEL.value,
                            dist.c.date >= daily_from,
                        )
                        .group_by(dist.c.value)
                        .order_by(func.sum(dist.c.count).desc())
                    )
                ).all()
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error fetching host analytics for {host}: {e}")
            return HostAnalytics()

        return HostAnalytics(
            summary=self._summary(host_row),
            hourly_data=[
                HourlyUsage(hour=f"{row.date[8:10]}-{row.hour}h", **self._point(row))
                for row in hourly_rows
            ],
            daily_data=[
                DailyUsage(day=f"{row.date[5:7]}/{row.date[8:10]}", **self._point(row))
                for row in daily_rows
            ],
            model_usage=[ModelUsage(model=row.value, count=int(row.count)) for row in model_rows],
        )

    @staticmethod
    def _point(row) -> Dict[str, Any]:
        return {
            "requests": row.requests,
            "cache_hits": row.cache_hits,
            "cache_misses": row.cache_misses,
            "cost": _money(row.cost),
            "cost_saved": _money(row.cost_saved),
            "price": _money(row.price),
            "price_saved": _money(row.price_saved),
        }

    @staticmethod
    def _summary(row) -> AnalyticsSummary:
        total_cost = _money(row.cost)
        cost_saved = _money(row.cost_saved)
        total_price = _money(row.price)
        price_saved = _money(row.price_saved)

        return AnalyticsSummary(
            total_requests=row.requests,
            cache_hits=row.cache_hits,
            cache_misses=row.cache_misses,
            cache_hit_rate=_rate(row.cache_hits, row.requests),
            total_cost=total_cost,
            cost_saved=cost_saved,
            cost_savings_rate=_rate(cost_saved, total_cost + cost_saved),
            total_price=total_price,
            price_saved=price_saved,
            price_savings_rate=_rate(price_saved, total_price + price_saved),
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
        )

    async def get_all_hosts(self) -> List[HostUsage]:
        """Hosts with analytics, busiest first."""
        try:
            async with self.database_manager.session() as session:
                rows = (
                    await session.execute(
                        select(analytics_hosts_table).order_by(
                            analytics_hosts_table.c.requests.desc()
                        )
                    )
                ).all()
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error fetching analytics hosts: {e}")
            return []

        return [
            HostUsage(
                host=row.host,
                total_requests=row.requests,
                cache_hits=row.cache_hits,
                cache_misses=row.cache_misses,
                total_cost=_money(row.cost),
                total_price=_money(row.price),
                last_updated=(
                    row.last_request.replace(tzinfo=timezone.utc)
                    if row.last_request and row.last_request.tzinfo is None
                    else row.last_request
                ),
            )
            for row in rows
        ]

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def reset_host_analytics(self, host: str) -> AnalyticsMaintenanceResult:
        """Delete every analytics row of a host."""
        try:
            async with self.database_manager.transaction() as conn:
                for table in ROLLUP_TABLES:
                    await conn.execute(delete(table).where(table.c.host == host))
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error resetting analytics for {host}: {e}")
            return AnalyticsMaintenanceResult(
                success=False, message=f"Error resetting analytics: {e}"
            )

        logger.info(f"Analytics data reset for host {host}")
        return AnalyticsMaintenanceResult(
            success=True, message=f"Analytics data reset for host: {host}"
        )

    async def cleanup_host_analytics(
        self, host: str, days_to_keep: int = 30
    ) -> AnalyticsMaintenanceResult:
        """Drop a host's analytics older than `days_to_keep` days."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
        cutoff_date = cutoff.strftime("%Y-%m-%d")
        hourly = analytics_hourly_table

        try:
            async with self.database_manager.transaction() as conn:
                requests_deleted = await conn.execute(
                    delete(analytics_requests_table).where(
                        analytics_requests_table.c.host == host,
                        analytics_requests_table.c.timestamp < cutoff,
                    )
                )
                hourly_deleted = await conn.execute(
                    delete(hourly).where(
                        hourly.c.host == host,
                        or_(
                            hourly.c.date < cutoff_date,
                            and_(hourly.c.date == cutoff_date, hourly.c.hour < cutoff.hour),
                        ),
                    )
                )
                daily_deleted = await conn.execute(
                    delete(analytics_daily_table).where(
                        analytics_daily_table.c.host == host,
                        analytics_daily_table.c.date < cutoff_date,
                    )
                )
                distribution_deleted = await conn.execute(
                    delete(analytics_distribution_table).where(
                        analytics_distribution_table.c.host == host,
                        analytics_distribution_table.c.date < cutoff_date,
                    )
                )
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error cleaning up analytics for {host}: {e}")
            return AnalyticsMaintenanceResult(
                success=False, message=f"Error cleaning up analytics: {e}"
            )

        deleted = {
            "requests": requests_deleted.rowcount,
            "hourly": hourly_deleted.rowcount,
            "daily": daily_deleted.rowcount,
            "distribution": distribution_deleted.rowcount,
        }
        logger.info(f"Cleaned up analytics older than {days_to_keep} days for {host}: {deleted}")
        return AnalyticsMaintenanceResult(
            success=True,
            message=f"Cleaned up analytics data older than {days_to_keep} days for host: {host}",
            deleted=deleted,
        )


class NullAnalyticsRecorder:
    """Recorder used when analytics are disabled. Records nothing."""

    NOT_AVAILABLE = "Analytics service not available"

    def __init__(self):
        logger.warning("Analytics disabled: usage events will not be recorded")

    async def record(self, event: AnalyticsEvent) -> None:
        logger.debug(f"Analytics disabled, dropping event for {event.host}")

    async def get_host_analytics(self, host: str) -> HostAnalytics:
        return HostAnalytics(analytics_not_available=True)

    async def reset_host_analytics(self, host: str) -> AnalyticsMaintenanceResult:
        return AnalyticsMaintenanceResult(success=False, message=self.NOT_AVAILABLE)

    async def cleanup_host_analytics(
        self, host: str, days_to_keep: int = 30
    ) -> AnalyticsMaintenanceResult:
        return AnalyticsMaintenanceResult(success=False, message=self.NOT_AVAILABLE)

    async def get_all_hosts(self) -> List[HostUsage]:
        return []


def create_analytics_recorder(
    settings: AnalyticsSettings,
    database_manager: DatabaseManager,
    metrics: Optional[MetricsCollector] = None,
) -> AnalyticsRecorder:
    """Select the recorder implementation once, at startup."""
    if settings.enabled:
        return SqlAnalyticsRecorder(database_manager, settings=settings, metrics=metrics)
    return NullAnalyticsRecorder()


__all__ = [
    "AnalyticsRecorder",
    "SqlAnalyticsRecorder",
    "NullAnalyticsRecorder",
    "create_analytics_recorder",
]
