"""
Dependency Injection Container: Object Graph of the Gateway

Builds every long-lived component once at process start with
dependency-injector and hands them to the HTTP layer. Nothing in the request
path constructs its own clients; tests swap any provider with
`container.<name>.override(providers.Object(double))`.

Dependency Graph (DAG):
Settings -> Infrastructure -> Pricing/Cache/TTL -> Ledger/Analytics -> Orchestrator
"""

from typing import Optional

from dependency_injector import containers, providers
from loguru import logger

from config.settings import Settings, get_settings
from core.pricing import PricingTable
from infrastructure.background import BackgroundTaskRunner
from infrastructure.classifier_client import ClassifierClient
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient
from optimization.cache_manager import ResultCache
from optimization.ttl_policy import TTLPolicy
from orchestration.analysis_orchestrator import AnalysisOrchestrator
from services.analytics_service import create_analytics_recorder
from services.balance_ledger import create_balance_ledger

BACKGROUND_DRAIN_TIMEOUT = 5.0


class Container(containers.DeclarativeContainer):
    """
    Central dependency injection container.

    Every provider is a singleton: the gateway holds one database engine,
    one Redis pool, one upstream client and one implementation of each
    capability (ledger, analytics) chosen from configuration at startup.
    """

    config: providers.Singleton[Settings] = providers.Singleton(get_settings)

    # Infrastructure
    metrics: providers.Singleton[MetricsCollector] = providers.Singleton(MetricsCollector)

    database: providers.Singleton[DatabaseManager] = providers.Singleton(
        DatabaseManager,
        settings=config.provided.database,
    )

    redis: providers.Singleton[RedisClient] = providers.Singleton(
        RedisClient,
        settings=config.provided.redis,
    )

    background: providers.Singleton[BackgroundTaskRunner] = providers.Singleton(
        BackgroundTaskRunner,
        metrics=metrics,
    )

    classifier: providers.Singleton[ClassifierClient] = providers.Singleton(
        ClassifierClient,
        settings=config.provided.upstream,
        metrics=metrics,
    )

    # Pricing and caching
    pricing: providers.Singleton[PricingTable] = providers.Singleton(
        PricingTable,
        pricing=config.provided.billing.model_pricing,
        default_model=config.provided.upstream.default_model,
        markup=config.provided.billing.markup,
    )

    ttl_policy: providers.Singleton[TTLPolicy] = providers.Singleton(
        TTLPolicy,
        default_ttl=config.provided.redis.cache_ttl,
    )

    cache: providers.Singleton[ResultCache] = providers.Singleton(
        ResultCache,
        redis_client=redis,
        namespace=config.provided.redis.cache_namespace,
        default_ttl=config.provided.redis.cache_ttl,
        metrics=metrics,
    )

    # Capabilities with a store-backed and a null implementation
    ledger = providers.Singleton(
        create_balance_ledger,
        settings=config.provided.billing,
        database_manager=database,
        metrics=metrics,
    )

    analytics = providers.Singleton(
        create_analytics_recorder,
        settings=config.provided.analytics,
        database_manager=database,
        metrics=metrics,
    )

    # Orchestration
    orchestrator: providers.Singleton[AnalysisOrchestrator] = providers.Singleton(
        AnalysisOrchestrator,
        pricing=pricing,
        cache=cache,
        classifier=classifier,
        ledger=ledger,
        analytics=analytics,
        ttl_policy=ttl_policy,
        background=background,
        metrics=metrics,
        cache_hit_discount=config.provided.billing.cache_hit_discount,
        batch_size_limit=config.provided.api.batch_size_limit,
        default_model=config.provided.upstream.default_model,
    )


# Global container instance
container = Container()


class ContainerManager:
    """
    Container lifecycle manager.

    The database is critical: startup fails without it. Redis is not: the
    result cache degrades to misses and rate limiting is skipped.
    """

    def __init__(self, target: Optional[Container] = None) -> None:
        self._container = target or container
        self._initialized: bool = False
        self.redis_available: bool = False

    async def initialize(self) -> None:
        """
        Initialize database and Redis connections.

        Raises:
            RuntimeError: If the database cannot be initialized
        """
        if self._initialized:
            logger.warning("Container already initialized - skipping re-initialization")
            return

        logger.info("Initializing dependency injection container")

        try:
            await self._container.database().initialize(create_schema=True)
            logger.info("Database initialized successfully")
        except Exception as db_error:
            logger.error(f"Database initialization failed: {db_error}")
            raise RuntimeError(f"Database initialization failed: {db_error}") from db_error

        try:
            await self._container.redis().initialize()
            self.redis_available = True
            logger.info("Redis initialized successfully")
        except Exception as redis_error:
            logger.warning(
                f"Redis initialization failed: {redis_error} | "
                "continuing without result cache and rate limiting"
            )

        # Resolve the capability selection once, so a misconfiguration surfaces at startup
        self._container.orchestrator()
        self._initialized = True

    async def cleanup(self) -> None:
        """
        Drain background work, then close upstream, database and Redis clients.

        Safe to call more than once; one failing component does not stop the
        others from being closed.
        """
        if not self._initialized:
            logger.debug("Container not initialized - skipping cleanup")
            return

        logger.info("Cleaning up dependency injection container")

        await self._container.background().drain(timeout=BACKGROUND_DRAIN_TIMEOUT)

        for name in ("classifier", "database", "redis"):
            try:
                await getattr(self._container, name)().close()
                logger.info(f"{name} closed")
            except Exception as e:
                logger.error(f"{name} cleanup failed: {e}")

        self._initialized = False
        self.redis_available = False


# Global container manager instance
container_manager = ContainerManager()


__all__ = [
    "Container",
    "ContainerManager",
    "container",
    "container_manager",
]
