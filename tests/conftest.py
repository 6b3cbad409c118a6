"""
Pytest Configuration and Fixture Library

Shared test infrastructure:
- In-memory Redis double behind the real `RedisClient`
- File-backed SQLite databases with the full schema, one per test
- Domain object factories (classifications, classifier replies)
- A fully wired gateway with the container overridden for HTTP tests

Design Pattern: Test Data Builder + Fixture Factory
"""

import fnmatch
import os
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from dependency_injector import providers
from prometheus_client import CollectorRegistry

# Set test environment variables before importing any modules
os.environ.update(
    {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_URL": "redis://localhost:6379/15",
        "UPSTREAM_API_KEY": "test-key",
        "MONITORING_LOG_FORMAT": "text",
    }
)

from config.settings import (  # noqa: E402
    DEFAULT_MODEL,
    AnalyticsSettings,
    ApiSettings,
    BillingSettings,
    DatabaseSettings,
    Settings,
)
from core.models import AnalysisResult, Classification, RequestDetails, TokenUsage  # noqa: E402
from core.pricing import PricingTable  # noqa: E402
from infrastructure.background import BackgroundTaskRunner  # noqa: E402
from infrastructure.classifier_client import ClassifierClient, ClassifierResponse  # noqa: E402
from infrastructure.database import DatabaseManager  # noqa: E402
from infrastructure.monitoring import MetricsCollector  # noqa: E402
from infrastructure.redis_client import RedisClient  # noqa: E402
from optimization.cache_manager import ResultCache  # noqa: E402
from optimization.ttl_policy import TTLPolicy  # noqa: E402
from orchestration.analysis_orchestrator import AnalysisOrchestrator  # noqa: E402
from services.analytics_service import SqlAnalyticsRecorder  # noqa: E402
from services.balance_ledger import SqlBalanceLedger  # noqa: E402

ADMIN_KEY = "test-admin-key"


# ============================================================================
# REDIS DOUBLE
# ============================================================================


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio command surface used by
    `RedisClient`. Set `fail_with` to an exception to simulate an outage.
    """

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.expirations: Dict[str, int] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = value
        if ex:
            self.expirations[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.expirations.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.store)

    async def ttl(self, key: str) -> int:
        self._check()
        if key not in self.store:
            return -2
        return self.expirations.get(key, -1)

    async def scan_iter(self, match: str = "*", count: Optional[int] = None):
        self._check()
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def info(self, section: Optional[str] = None) -> Dict[str, Any]:
        self._check()
        return {
            "used_memory_human": "1.50M",
            "used_memory_peak_human": "2.25M",
            "mem_fragmentation_ratio": 1.12,
        }

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis: FakeRedis) -> RedisClient:
    return RedisClient(client=fake_redis)


# ============================================================================
# CORE FIXTURES
# ============================================================================


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector on a private registry so tests never collide on metric names."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def pricing() -> PricingTable:
    return PricingTable(BillingSettings().model_pricing, DEFAULT_MODEL, markup=0.25)


@pytest.fixture
def result_cache(redis_client: RedisClient, metrics: MetricsCollector) -> ResultCache:
    return ResultCache(redis_client, namespace="analysis", default_ttl=86400, metrics=metrics)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """SQLite database file with every table created; disposed after the test."""
    manager = DatabaseManager(
        DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    )
    await manager.initialize(create_schema=True)
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def ledger(database: DatabaseManager, metrics: MetricsCollector) -> SqlBalanceLedger:
    return SqlBalanceLedger(database, metrics=metrics)


@pytest_asyncio.fixture
async def analytics_recorder(
    database: DatabaseManager, metrics: MetricsCollector
) -> SqlAnalyticsRecorder:
    return SqlAnalyticsRecorder(database, settings=AnalyticsSettings(), metrics=metrics)


# ============================================================================
# DOMAIN FACTORIES
# ============================================================================


def make_classification(
    score: float = 0.8,
    label: str = "positive",
    intents: Optional[List[str]] = None,
    language: str = "en",
    profanity_score: float = 0.0,
) -> Classification:
    return Classification(
        language=language,
        sentiment={"score": score, "sentiment": label},
        profanity={"score": profanity_score, "words": []},
        intents=intents if intents is not None else ["feedback"],
    )


def make_classifier_response(
    classification: Optional[Classification] = None,
    prompt_tokens: int = 120,
    completion_tokens: int = 40,
    model: str = DEFAULT_MODEL,
) -> ClassifierResponse:
    return ClassifierResponse(
        classification=classification or make_classification(),
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model=model,
        latency_ms=12.5,
    )


def make_analysis_result(
    pricing: PricingTable,
    classification: Optional[Classification] = None,
    prompt_tokens: int = 120,
    completion_tokens: int = 40,
    model: str = DEFAULT_MODEL,
    host: str = "a.com",
) -> AnalysisResult:
    usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return AnalysisResult(
        **(classification or make_classification()).model_dump(),
        usage=usage,
        cost=pricing.calculate_cost(usage, model),
        request_details=RequestDetails(model=model, host=host),
    )


@pytest.fixture
def classifier_double() -> Mock:
    """ClassifierClient double returning a positive classification by default."""
    client = Mock(spec=ClassifierClient)
    client.classify = AsyncMock(return_value=make_classifier_response())
    client.close = AsyncMock()
    return client


# ============================================================================
# WIRED GATEWAY
# ============================================================================


@pytest_asyncio.fixture
async def gateway(
    database: DatabaseManager,
    redis_client: RedisClient,
    fake_redis: FakeRedis,
    metrics: MetricsCollector,
    pricing: PricingTable,
    classifier_double: Mock,
):
    """
    Every container provider overridden with test components.

    The orchestrator runs against real SQLite ledger/analytics, the Redis
    double and a mocked upstream classifier.
    """
    from container import container

    settings = Settings(api=ApiSettings(ADMIN_API_KEY=ADMIN_KEY))
    ledger = SqlBalanceLedger(database, metrics=metrics)
    recorder = SqlAnalyticsRecorder(database, settings=settings.analytics, metrics=metrics)
    background = BackgroundTaskRunner(metrics=metrics)
    cache = ResultCache(redis_client, metrics=metrics)
    orchestrator = AnalysisOrchestrator(
        pricing=pricing,
        cache=cache,
        classifier=classifier_double,
        ledger=ledger,
        analytics=recorder,
        ttl_policy=TTLPolicy(),
        background=background,
        metrics=metrics,
    )

    overrides = {
        "config": settings,
        "database": database,
        "redis": redis_client,
        "metrics": metrics,
        "cache": cache,
        "ledger": ledger,
        "analytics": recorder,
        "background": background,
        "orchestrator": orchestrator,
    }
    for name, value in overrides.items():
        getattr(container, name).override(providers.Object(value))

    yield SimpleNamespace(
        settings=settings,
        database=database,
        fake_redis=fake_redis,
        cache=cache,
        ledger=ledger,
        analytics=recorder,
        background=background,
        classifier=classifier_double,
        orchestrator=orchestrator,
        metrics=metrics,
    )

    await background.drain(timeout=5)
    container.reset_override()


@pytest_asyncio.fixture
async def http_client(gateway):
    """Async HTTP client bound to the app on the test's event loop."""
    import httpx

    from api.main import app

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
