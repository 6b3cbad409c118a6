"""
Monitoring Infrastructure: Structured Logging and Prometheus Metrics

structlog renders JSON events for the HTTP layer. `MetricsCollector` owns
every Prometheus series the gateway exports at `/metrics`.
"""

import logging
import sys
from typing import Optional

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


def configure_structlog(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structlog for the HTTP layer.

    JSON output in every environment except when `log_format` is "text",
    which switches to the console renderer for local work.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "text"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger bound with a name context."""
    return structlog.get_logger(name)


class MetricsCollector:
    """
    Prometheus metrics for the analysis gateway.

    Tracks:
    - Analysis requests by terminal outcome and latency
    - Result cache hits and misses
    - Upstream classifier calls, tokens and latency
    - Ledger operations and billed amounts
    - Analytics write failures and background task backlog
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        # Request metrics
        self.analysis_requests_total = Counter(
            "analysis_requests_total",
            "Analysis requests by terminal outcome",
            labelnames=["outcome", "model"],
            registry=self.registry,
        )

        self.analysis_duration_seconds = Histogram(
            "analysis_duration_seconds",
            "End-to-end analysis latency",
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            labelnames=["cached"],
            registry=self.registry,
        )

        self.batch_size = Histogram(
            "analysis_batch_size",
            "Number of texts per batch request",
            buckets=[1, 5, 10, 25, 50, 100],
            registry=self.registry,
        )

        # Cache metrics
        self.cache_hits_total = Counter(
            "cache_hits_total", "Result cache hits", labelnames=["model"], registry=self.registry
        )

        self.cache_misses_total = Counter(
            "cache_misses_total",
            "Result cache misses",
            labelnames=["model"],
            registry=self.registry,
        )

        # Upstream metrics
        self.upstream_requests_total = Counter(
            "upstream_requests_total",
            "Upstream classifier requests",
            labelnames=["model", "status"],
            registry=self.registry,
        )

        self.upstream_tokens_total = Counter(
            "upstream_tokens_total",
            "Tokens consumed upstream",
            labelnames=["model", "token_type"],
            registry=self.registry,
        )

        self.upstream_latency_seconds = Histogram(
            "upstream_latency_seconds",
            "Upstream classifier latency",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
            labelnames=["model"],
            registry=self.registry,
        )

        # Billing metrics
        self.ledger_operations_total = Counter(
            "ledger_operations_total",
            "Balance ledger operations",
            labelnames=["operation", "status"],
            registry=self.registry,
        )

        self.billed_amount_total = Counter(
            "billed_amount_usd_total",
            "Amount deducted from host balances",
            labelnames=["kind"],
            registry=self.registry,
        )

        # Analytics metrics
        self.analytics_write_failures_total = Counter(
            "analytics_write_failures_total",
            "Analytics events that could not be recorded",
            registry=self.registry,
        )

        self.background_tasks = Gauge(
            "background_tasks_pending",
            "Detached side-effect tasks still running",
            registry=self.registry,
        )

        log = get_logger(__name__)
        log.info("metrics_collector_initialized", metrics_type="prometheus")

    def record_analysis(
        self,
        outcome: str,
        model: str,
        duration_seconds: Optional[float] = None,
        cached: bool = False,
    ) -> None:
        self.analysis_requests_total.labels(outcome=outcome, model=model).inc()
        if duration_seconds is not None:
            self.analysis_duration_seconds.labels(cached=str(cached).lower()).observe(
                duration_seconds
            )

    def record_batch(self, size: int) -> None:
        self.batch_size.observe(size)

    def record_cache_hit(self, model: str) -> None:
        self.cache_hits_total.labels(model=model).inc()

    def record_cache_miss(self, model: str) -> None:
        self.cache_misses_total.labels(model=model).inc()

    def record_upstream_call(
        self,
        model: str,
        status: str,
        latency_seconds: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        """
        Record one classifier call.

        Args:
            model: Model identifier
            status: "success", "error", "timeout" or "parse_error"
            latency_seconds: Wall time of the call
            prompt_tokens: Input tokens reported upstream
            completion_tokens: Output tokens reported upstream
        """
        self.upstream_requests_total.labels(model=model, status=status).inc()
        self.upstream_latency_seconds.labels(model=model).observe(latency_seconds)
        if prompt_tokens:
            self.upstream_tokens_total.labels(model=model, token_type="prompt").inc(prompt_tokens)
        if completion_tokens:
            self.upstream_tokens_total.labels(model=model, token_type="completion").inc(
                completion_tokens
            )

    def record_ledger_operation(self, operation: str, success: bool, amount: float = 0.0) -> None:
        self.ledger_operations_total.labels(
            operation=operation, status="success" if success else "failure"
        ).inc()
        if success and amount > 0 and operation == "deduct":
            self.billed_amount_total.labels(kind=operation).inc(amount)

    def record_analytics_failure(self) -> None:
        self.analytics_write_failures_total.inc()

    def update_background_tasks(self, count: int) -> None:
        self.background_tasks.set(count)

    def export_metrics(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


__all__ = ["configure_structlog", "get_logger", "MetricsCollector"]
