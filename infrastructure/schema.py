"""
Database Schema: SQLAlchemy Core Table Definitions

Balance ledger tables (`host_balances`, `balance_transactions`) and the
analytics rollups. Monetary columns are fixed-point with six decimals and
read back as floats.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    func,
)

# Metadata instance for all tables
metadata = MetaData()


def _money() -> Numeric:
    return Numeric(18, 6, asdecimal=False)


# =============================================================================
# BALANCE LEDGER
# =============================================================================

host_balances_table = Table(
    "host_balances",
    metadata,
    Column("host", String(255), primary_key=True),
    Column("balance", _money(), nullable=False, default=0),
    Column("total_credits_added", _money(), nullable=False, default=0),
    Column("total_credits_used", _money(), nullable=False, default=0),
    Column("active", Boolean, nullable=False, default=True),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), default=func.now()),
    Column("last_updated", DateTime(timezone=True), default=func.now(), index=True),
    CheckConstraint("balance >= 0", name="ck_host_balances_non_negative"),
)

balance_transactions_table = Table(
    "balance_transactions",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("host", String(255), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("amount", _money(), nullable=False),
    Column("type", String(16), nullable=False),
    Column("balance_after", _money(), nullable=False),
    Column("description", Text),
    Column("reference", String(255)),
    Column("performed_by", String(255)),
    # Newest-first history per host
    Index("idx_transactions_host_timestamp", "host", "timestamp"),
    Index("idx_transactions_reference", "reference"),
)

# A deduction can be refunded at most once
Index(
    "uq_transactions_refund_reference",
    balance_transactions_table.c.reference,
    unique=True,
    postgresql_where=balance_transactions_table.c.type == "refund",
    sqlite_where=balance_transactions_table.c.type == "refund",
)


# =============================================================================
# ANALYTICS
# =============================================================================


def _usage_counters() -> list[Column]:
    """Additive counters shared by every rollup table."""
    return [
        Column("requests", Integer, nullable=False, default=0),
        Column("cache_hits", Integer, nullable=False, default=0),
        Column("cache_misses", Integer, nullable=False, default=0),
        Column("input_tokens", Integer, nullable=False, default=0),
        Column("output_tokens", Integer, nullable=False, default=0),
        Column("cost", _money(), nullable=False, default=0),
        Column("cost_saved", _money(), nullable=False, default=0),
        Column("price", _money(), nullable=False, default=0),
        Column("price_saved", _money(), nullable=False, default=0),
        Column("response_time_total", Float, nullable=False, default=0),
    ]


USAGE_COUNTERS = tuple(column.name for column in _usage_counters())

analytics_requests_table = Table(
    "analytics_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("host", String(255), nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("text", Text),
    Column("model", String(100), nullable=False),
    Column("cached", Boolean, nullable=False),
    Column("language", String(50)),
    Column("sentiment_score", Float),
    Column("sentiment_label", String(16)),
    Column("intents", JSON),
    Column("profanity_score", Float),
    Column("prompt_tokens", Integer, default=0),
    Column("completion_tokens", Integer, default=0),
    Column("total_tokens", Integer, default=0),
    Column("cost", _money()),
    Column("price", _money()),
    Column("response_time_ms", Float),
    Index("idx_analytics_requests_host_timestamp", "host", "timestamp"),
)

analytics_daily_table = Table(
    "analytics_daily",
    metadata,
    Column("host", String(255), primary_key=True),
    Column("date", String(10), primary_key=True),  # YYYY-MM-DD, UTC
    *_usage_counters(),
)

analytics_hourly_table = Table(
    "analytics_hourly",
    metadata,
    Column("host", String(255), primary_key=True),
    Column("date", String(10), primary_key=True),
    Column("hour", Integer, primary_key=True),
    *_usage_counters(),
)

analytics_hosts_table = Table(
    "analytics_hosts",
    metadata,
    Column("host", String(255), primary_key=True),
    *_usage_counters(),
    Column("first_seen", DateTime(timezone=True)),
    Column("last_request", DateTime(timezone=True), index=True),
)

analytics_distribution_table = Table(
    "analytics_distribution",
    metadata,
    Column("host", String(255), primary_key=True),
    Column("date", String(10), primary_key=True),
    Column("dimension", String(16), primary_key=True),
    Column("value", String(255), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
)


__all__ = [
    "metadata",
    "USAGE_COUNTERS",
    "host_balances_table",
    "balance_transactions_table",
    "analytics_requests_table",
    "analytics_daily_table",
    "analytics_hourly_table",
    "analytics_hosts_table",
    "analytics_distribution_table",
]
