"""
Balance Ledger: Prepaid Host Balances
=====================================

Per-host prepaid balance with an append-only transaction log.

Consistency model:
- Every mutation runs in one database transaction together with the ledger
  row it appends, so a balance never changes without its transaction.
- Deduction is a single conditional UPDATE (`balance >= amount AND active`).
  The store serializes concurrent deductions per host, so two requests can
  never both spend the same remaining credit and the balance never goes
  negative.
- A deduction can be refunded at most once (pre-check plus a partial unique
  index on refund references).

Every public operation returns a structured result. Storage failures are
logged and reported as `success=False`; nothing raises past this module.
"""

import math
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import Numeric, cast, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config.settings import BillingSettings
from core.enums import TransactionType
from core.exceptions import GatewayException, LedgerWriteError
from core.models import (
    BalanceCheck,
    BalanceTransaction,
    CreditResult,
    DeductionResult,
    HostBalance,
    HostBalanceResult,
    HostList,
    HostStatusResult,
    Pagination,
    RefundResult,
    TransactionHistory,
)
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.schema import balance_transactions_table, host_balances_table

HOST_REQUIRED = "Host identifier required"
HOST_NOT_REGISTERED = "Host not registered in the system"
HOST_INACTIVE = "Host account is inactive"
INSUFFICIENT_BALANCE = "Insufficient balance"
INVALID_DEDUCTION = "Invalid deduction amount"
INVALID_CREDIT = "Invalid credit amount"
TRANSACTION_NOT_FOUND = "Transaction not found"
ONLY_DEDUCTIONS_REFUNDABLE = "Only deduction transactions can be refunded"
ALREADY_REFUNDED = "Transaction already refunded"

MAX_HISTORY_PAGE_SIZE = 500


def _amount(value: float) -> float:
    return round(float(value), 6)


def _valid_amount(value) -> bool:
    """Finite and still positive once rounded to the ledger's 6-place grid."""
    try:
        return math.isfinite(float(value)) and _amount(value) > 0
    except (TypeError, ValueError):
        return False


def _on_grid(expr):
    # Stored money stays on the 6-place grid that `check_balance` reads
    return func.round(cast(expr, Numeric(18, 6)), 6, type_=Numeric(18, 6, asdecimal=False))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@runtime_checkable
class BalanceLedger(Protocol):
    """Capability interface shared by the store-backed and unmetered ledgers."""

    async def check_balance(self, host: Optional[str], required_amount: float = 0.0) -> BalanceCheck: ...

    async def deduct_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "API usage",
        reference: Optional[str] = None,
    ) -> DeductionResult: ...

    async def add_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "Credit addition",
        reference: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> CreditResult: ...

    async def refund_transaction(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> RefundResult: ...

    async def get_host_balance(self, host: Optional[str]) -> HostBalanceResult: ...

    async def get_transaction_history(
        self, host: Optional[str], limit: int = 50, page: int = 1
    ) -> TransactionHistory: ...

    async def get_all_hosts(self) -> HostList: ...

    async def update_host_status(
        self, host: Optional[str], active: bool, notes: Optional[str] = None
    ) -> HostStatusResult: ...


# =============================================================================
# STORE-BACKED LEDGER
# =============================================================================


class SqlBalanceLedger:
    """
    Ledger persisted in `host_balances` / `balance_transactions`.

    Usage:
        ledger = SqlBalanceLedger(db_manager)
        check = await ledger.check_balance("a.com", 0.002)
        if check.sufficient:
            await ledger.deduct_credits("a.com", 0.0015, "Sentiment analysis", cache_key)
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.database_manager = database_manager
        self._metrics = metrics
        logger.debug("SqlBalanceLedger initialized")

    def _record(self, operation: str, success: bool, amount: float = 0.0) -> None:
        if self._metrics:
            self._metrics.record_ledger_operation(operation, success, amount)

    def _storage_failure(self, message: str, host: Optional[str], exc: Exception) -> str:
        error = LedgerWriteError(message, host=host, cause=exc)
        logger.error(f"{error} | cause={exc}")
        return error.message

    # =========================================================================
    # BALANCE CHECKS
    # =========================================================================

    async def check_balance(self, host: Optional[str], required_amount: float = 0.0) -> BalanceCheck:
        """
        Read-only sufficiency check.

        Unknown host -> `host_exists=False`; inactive host -> `active=False`;
        otherwise sufficient iff `balance >= required_amount`.
        """
        if not host:
            return BalanceCheck(sufficient=False, error=HOST_REQUIRED)

        try:
            async with self.database_manager.session() as session:
                row = (
                    await session.execute(
                        select(
                            host_balances_table.c.balance, host_balances_table.c.active
                        ).where(host_balances_table.c.host == host)
                    )
                ).first()
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error checking balance for {host}: {e}")
            return BalanceCheck(sufficient=False, error="Error checking balance")

        if row is None:
            logger.info(f"Host {host} not registered in the balance system")
            return BalanceCheck(sufficient=False, error=HOST_NOT_REGISTERED)

        balance = _amount(row.balance)
        if not row.active:
            logger.info(f"Host {host} is inactive")
            return BalanceCheck(
                sufficient=False,
                balance=balance,
                host_exists=True,
                active=False,
                error=HOST_INACTIVE,
            )

        sufficient = balance >= required_amount
        return BalanceCheck(
            sufficient=sufficient,
            balance=balance,
            host_exists=True,
            active=True,
            error=None if sufficient else INSUFFICIENT_BALANCE,
        )

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def deduct_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "API usage",
        reference: Optional[str] = None,
    ) -> DeductionResult:
        """
        Atomically deduct `amount` and append a `deduct` transaction.

        Sufficiency is re-validated by the UPDATE itself; an earlier
        `check_balance` result is never trusted.
        """
        if not host:
            return DeductionResult(success=False, error=HOST_REQUIRED)
        if not _valid_amount(amount):
            return DeductionResult(success=False, error=INVALID_DEDUCTION)

        amount = _amount(amount)
        now = datetime.now(timezone.utc)
        hb = host_balances_table

        try:
            async with self.database_manager.transaction() as conn:
                new_balance = (
                    await conn.execute(
                        update(hb)
                        .where(
                            hb.c.host == host,
                            hb.c.active.is_(True),
                            _on_grid(hb.c.balance) >= amount,
                        )
                        .values(
                            balance=_on_grid(hb.c.balance - amount),
                            total_credits_used=_on_grid(hb.c.total_credits_used + amount),
                            last_updated=now,
                        )
                        .returning(hb.c.balance)
                    )
                ).scalar_one_or_none()

                if new_balance is None:
                    current = (
                        await conn.execute(select(hb.c.active).where(hb.c.host == host))
                    ).first()
                    if current is None:
                        error = HOST_NOT_REGISTERED
                    elif not current.active:
                        error = HOST_INACTIVE
                    else:
                        error = INSUFFICIENT_BALANCE
                    self._record("deduct", False)
                    logger.warning(f"Deduction rejected for {host}: {error} (amount={amount})")
                    return DeductionResult(success=False, error=error)

                transaction_id = uuid4()
                await conn.execute(
                    insert(balance_transactions_table).values(
                        id=transaction_id,
                        host=host,
                        timestamp=now,
                        amount=-amount,
                        type=TransactionType.DEDUCT.value,
                        balance_after=new_balance,
                        description=description,
                        reference=reference,
                    )
                )
        except (SQLAlchemyError, GatewayException) as e:
            self._record("deduct", False)
            return DeductionResult(
                success=False,
                error=self._storage_failure("Error processing deduction", host, e),
            )

        self._record("deduct", True, amount)
        logger.debug(f"Deducted {amount:.6f} from {host}, balance {float(new_balance):.6f}")
        return DeductionResult(
            success=True,
            balance=_amount(new_balance),
            deducted=amount,
            transaction_id=str(transaction_id),
        )

    async def add_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "Credit addition",
        reference: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> CreditResult:
        """Credit a host, creating its balance record on first top-up."""
        if not host:
            return CreditResult(success=False, error=HOST_REQUIRED)
        if not _valid_amount(amount):
            return CreditResult(success=False, error=INVALID_CREDIT)

        amount = _amount(amount)
        now = datetime.now(timezone.utc)
        hb = host_balances_table

        try:
            async with self.database_manager.transaction() as conn:
                stmt = self.database_manager.upsert(hb).values(
                    host=host,
                    balance=amount,
                    total_credits_added=amount,
                    total_credits_used=0,
                    active=True,
                    created_at=now,
                    last_updated=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[hb.c.host],
                    set_={
                        "balance": _on_grid(hb.c.balance + amount),
                        "total_credits_added": _on_grid(hb.c.total_credits_added + amount),
                        "last_updated": now,
                    },
                ).returning(hb.c.balance)
                new_balance = (await conn.execute(stmt)).scalar_one()

                transaction_id = uuid4()
                await conn.execute(
                    insert(balance_transactions_table).values(
                        id=transaction_id,
                        host=host,
                        timestamp=now,
                        amount=amount,
                        type=TransactionType.ADD.value,
                        balance_after=new_balance,
                        description=description,
                        reference=reference,
                        performed_by=performed_by,
                    )
                )
        except (SQLAlchemyError, GatewayException) as e:
            self._record("add", False)
            return CreditResult(
                success=False,
                error=self._storage_failure("Error processing credit addition", host, e),
            )

        self._record("add", True, amount)
        logger.info(f"Added {amount:.6f} credits to {host} (by {performed_by or 'system'})")
        return CreditResult(
            success=True,
            balance=_amount(new_balance),
            added=amount,
            transaction_id=str(transaction_id),
        )

    async def refund_transaction(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> RefundResult:
        """
        Return the amount of a `deduct` transaction to its host.

        Rejects unknown ids, non-deduction transactions and deductions that
        were already refunded, without touching the balance.
        """
        try:
            original_id = UUID(str(transaction_id))
        except ValueError:
            return RefundResult(success=False, error=TRANSACTION_NOT_FOUND)

        bt = balance_transactions_table
        hb = host_balances_table
        now = datetime.now(timezone.utc)

        try:
            async with self.database_manager.transaction() as conn:
                original = (await conn.execute(select(bt).where(bt.c.id == original_id))).first()
                if original is None:
                    return RefundResult(success=False, error=TRANSACTION_NOT_FOUND)
                if original.type != TransactionType.DEDUCT.value:
                    return RefundResult(success=False, error=ONLY_DEDUCTIONS_REFUNDABLE)

                already = (
                    await conn.execute(
                        select(bt.c.id).where(
                            bt.c.type == TransactionType.REFUND.value,
                            bt.c.reference == str(original_id),
                        )
                    )
                ).first()
                if already is not None:
                    return RefundResult(success=False, error=ALREADY_REFUNDED)

                refund_amount = _amount(abs(original.amount))
                new_balance = (
                    await conn.execute(
                        update(hb)
                        .where(hb.c.host == original.host)
                        .values(
                            balance=_on_grid(hb.c.balance + refund_amount),
                            total_credits_used=_on_grid(hb.c.total_credits_used - refund_amount),
                            last_updated=now,
                        )
                        .returning(hb.c.balance)
                    )
                ).scalar_one_or_none()
                if new_balance is None:
                    return RefundResult(success=False, error="Host not found")

                refund_id = uuid4()
                await conn.execute(
                    insert(bt).values(
                        id=refund_id,
                        host=original.host,
                        timestamp=now,
                        amount=refund_amount,
                        type=TransactionType.REFUND.value,
                        balance_after=new_balance,
                        description=f"Refund: {reason or 'No reason provided'}",
                        reference=str(original_id),
                        performed_by=performed_by,
                    )
                )
        except IntegrityError:
            # Lost the race against a concurrent refund of the same deduction
            self._record("refund", False)
            return RefundResult(success=False, error=ALREADY_REFUNDED)
        except (SQLAlchemyError, GatewayException) as e:
            self._record("refund", False)
            return RefundResult(
                success=False,
                error=self._storage_failure("Error processing refund", None, e),
            )

        self._record("refund", True, refund_amount)
        logger.info(
            f"Refunded {refund_amount:.6f} to {original.host} for transaction {original_id}"
        )
        return RefundResult(
            success=True,
            balance=_amount(new_balance),
            refunded=refund_amount,
            transaction_id=str(refund_id),
        )

    async def update_host_status(
        self, host: Optional[str], active: bool, notes: Optional[str] = None
    ) -> HostStatusResult:
        if not host:
            return HostStatusResult(success=False, error=HOST_REQUIRED)

        values = {"active": bool(active), "last_updated": datetime.now(timezone.utc)}
        if notes is not None:
            values["notes"] = notes

        try:
            async with self.database_manager.transaction() as conn:
                updated = (
                    await conn.execute(
                        update(host_balances_table)
                        .where(host_balances_table.c.host == host)
                        .values(**values)
                        .returning(host_balances_table.c.host)
                    )
                ).scalar_one_or_none()
        except (SQLAlchemyError, GatewayException) as e:
            return HostStatusResult(
                success=False,
                error=self._storage_failure("Error updating host status", host, e),
            )

        if updated is None:
            return HostStatusResult(success=False, error=HOST_NOT_REGISTERED)

        logger.info(f"Host {host} marked {'active' if active else 'inactive'}")
        return HostStatusResult(success=True, active=bool(active), host=host)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_host_balance(self, host: Optional[str]) -> HostBalanceResult:
        if not host:
            return HostBalanceResult(success=False, error=HOST_REQUIRED)

        try:
            async with self.database_manager.session() as session:
                row = (
                    await session.execute(
                        select(host_balances_table).where(host_balances_table.c.host == host)
                    )
                ).first()
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error getting host balance for {host}: {e}")
            return HostBalanceResult(success=False, error="Error retrieving balance information")

        if row is None:
            return HostBalanceResult(success=False, error=HOST_NOT_REGISTERED, host_exists=False)

        return HostBalanceResult(
            success=True,
            host_exists=True,
            balance=_amount(row.balance),
            total_credits_added=_amount(row.total_credits_added),
            total_credits_used=_amount(row.total_credits_used),
            last_updated=_aware(row.last_updated),
            active=row.active,
            notes=row.notes,
        )

    async def get_transaction_history(
        self, host: Optional[str], limit: int = 50, page: int = 1
    ) -> TransactionHistory:
        """Page through a host's transactions, newest first."""
        if not host:
            return TransactionHistory(success=False, error=HOST_REQUIRED)

        limit = max(1, min(int(limit), MAX_HISTORY_PAGE_SIZE))
        page = max(1, int(page))
        bt = balance_transactions_table

        try:
            async with self.database_manager.session() as session:
                total = (
                    await session.execute(
                        select(func.count()).select_from(bt).where(bt.c.host == host)
                    )
                ).scalar_one()
                rows = (
                    await session.execute(
                        select(bt)
                        .where(bt.c.host == host)
                        .order_by(bt.c.timestamp.desc(), bt.c.id)
                        .offset((page - 1) * limit)
                        .limit(limit)
                    )
                ).all()
                host_exists = (
                    await session.execute(
                        select(host_balances_table.c.host).where(
                            host_balances_table.c.host == host
                        )
                    )
                ).first() is not None
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error getting transaction history for {host}: {e}")
            return TransactionHistory(success=False, error="Error retrieving transaction history")

        return TransactionHistory(
            success=True,
            transactions=[self._to_transaction(row) for row in rows],
            pagination=Pagination(
                total=total, page=page, limit=limit, pages=math.ceil(total / limit)
            ),
            host_exists=host_exists,
        )

    async def get_all_hosts(self) -> HostList:
        """All balance records, most recently updated first."""
        try:
            async with self.database_manager.session() as session:
                rows = (
                    await session.execute(
                        select(host_balances_table).order_by(
                            host_balances_table.c.last_updated.desc()
                        )
                    )
                ).all()
        except (SQLAlchemyError, GatewayException) as e:
            logger.error(f"Error getting all hosts: {e}")
            return HostList(success=False, error="Error retrieving host information")

        return HostList(
            success=True,
            hosts=[
                HostBalance(
                    host=row.host,
                    balance=_amount(row.balance),
                    total_credits_added=_amount(row.total_credits_added),
                    total_credits_used=_amount(row.total_credits_used),
                    active=row.active,
                    notes=row.notes,
                    last_updated=_aware(row.last_updated),
                )
                for row in rows
            ],
        )

    @staticmethod
    def _to_transaction(row) -> BalanceTransaction:
        return BalanceTransaction(
            id=str(row.id),
            host=row.host,
            timestamp=_aware(row.timestamp),
            amount=_amount(row.amount),
            type=row.type,
            balance_after=_amount(row.balance_after),
            description=row.description,
            reference=row.reference,
            performed_by=row.performed_by,
        )


# =============================================================================
# UNMETERED LEDGER
# =============================================================================


class NullBalanceLedger:
    """
    Ledger used when billing is disabled.

    Every host is active with a notional balance; nothing is persisted.
    """

    def __init__(self, unmetered_balance: float = 9999.0):
        self.unmetered_balance = unmetered_balance
        logger.warning(
            f"Billing disabled: serving all hosts unmetered (notional balance {unmetered_balance})"
        )

    async def check_balance(self, host: Optional[str], required_amount: float = 0.0) -> BalanceCheck:
        return BalanceCheck(
            sufficient=True, balance=self.unmetered_balance, host_exists=True, active=True
        )

    async def deduct_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "API usage",
        reference: Optional[str] = None,
    ) -> DeductionResult:
        return DeductionResult(success=True, balance=self.unmetered_balance, deducted=0.0)

    async def add_credits(
        self,
        host: Optional[str],
        amount: float,
        description: str = "Credit addition",
        reference: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> CreditResult:
        return CreditResult(success=True, balance=self.unmetered_balance, added=0.0)

    async def refund_transaction(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> RefundResult:
        return RefundResult(success=False, error=TRANSACTION_NOT_FOUND)

    async def get_host_balance(self, host: Optional[str]) -> HostBalanceResult:
        return HostBalanceResult(
            success=True, host_exists=True, balance=self.unmetered_balance, active=True
        )

    async def get_transaction_history(
        self, host: Optional[str], limit: int = 50, page: int = 1
    ) -> TransactionHistory:
        return TransactionHistory(
            success=True,
            transactions=[],
            pagination=Pagination(total=0, page=page, limit=limit, pages=0),
            host_exists=True,
        )

    async def get_all_hosts(self) -> HostList:
        return HostList(success=True, hosts=[])

    async def update_host_status(
        self, host: Optional[str], active: bool, notes: Optional[str] = None
    ) -> HostStatusResult:
        return HostStatusResult(success=True, active=bool(active), host=host)


def create_balance_ledger(
    settings: BillingSettings,
    database_manager: DatabaseManager,
    metrics: Optional[MetricsCollector] = None,
) -> BalanceLedger:
    """Select the ledger implementation once, at startup."""
    if settings.enabled:
        return SqlBalanceLedger(database_manager, metrics=metrics)
    return NullBalanceLedger(settings.unmetered_balance)


__all__ = [
    "BalanceLedger",
    "SqlBalanceLedger",
    "NullBalanceLedger",
    "create_balance_ledger",
    "HOST_REQUIRED",
    "HOST_NOT_REGISTERED",
    "HOST_INACTIVE",
    "INSUFFICIENT_BALANCE",
    "INVALID_DEDUCTION",
    "INVALID_CREDIT",
    "TRANSACTION_NOT_FOUND",
    "ONLY_DEDUCTIONS_REFUNDABLE",
    "ALREADY_REFUNDED",
]
