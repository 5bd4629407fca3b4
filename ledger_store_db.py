from contextlib import contextmanager
from typing import List, Optional

import psycopg
import structlog

from db.db import get_conn
from db.repositories import (
    apply_schema,
    decrement_pending_balance,
    get_commission_entries,
    get_or_create_balance,
    get_subscription_status,
    insert_commission_entry,
    insert_subscription_if_absent,
    insert_suppressed_event,
    settle_pending_entries,
    suppressed_event_exists,
    upsert_balance_delta,
    upsert_subscription_status,
)
from errors import LedgerUnavailableError
from ledger_store import LedgerStore, RecordResult, check_payout_amount
from models import AffiliateBalance, CommissionEntry, SubscriptionStatus

logger = structlog.get_logger(__name__)


class PostgresLedgerStore(LedgerStore):
    """
    DB-backed ledger.

    every public method is its own transaction, so each affiliate's entry
    commits independently of the rest of the chain. uniqueness and row locks
    come from Postgres (ON CONFLICT, upsert, SELECT ... FOR UPDATE).
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    @contextmanager
    def _transaction(self):
        try:
            with get_conn(self.dsn) as conn:
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except psycopg.OperationalError as e:
            logger.error("ledger_unavailable", error=str(e))
            raise LedgerUnavailableError(str(e)) from e

    def create_schema(self) -> None:
        with self._transaction() as conn:
            apply_schema(conn)

    # ---------
    # entries
    # ---------

    def record_entry(self, entry: CommissionEntry) -> RecordResult:
        with self._transaction() as conn:
            created = insert_commission_entry(conn, entry)
        return RecordResult.CREATED if created else RecordResult.DUPLICATE

    def commit_entry(self, entry: CommissionEntry) -> Optional[AffiliateBalance]:
        with self._transaction() as conn:
            if not insert_commission_entry(conn, entry):
                return None
            return upsert_balance_delta(conn, entry.affiliate_id, entry.amount)

    def list_entries(self, affiliate_id: str, limit: int = 50) -> List[CommissionEntry]:
        with self._transaction() as conn:
            return get_commission_entries(conn, affiliate_id, limit)

    # ---------
    # balances
    # ---------

    def increment_balance(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        with self._transaction() as conn:
            return upsert_balance_delta(conn, affiliate_id, amount)

    def get_balance(self, affiliate_id: str) -> AffiliateBalance:
        with self._transaction() as conn:
            return get_or_create_balance(conn, affiliate_id)

    def mark_paid_out(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        with self._transaction() as conn:
            # lock the balance row so two confirmations can't race
            current = get_or_create_balance(conn, affiliate_id, for_update=True)
            check_payout_amount(current, amount)

            updated = decrement_pending_balance(conn, affiliate_id, amount)
            settle_pending_entries(conn, affiliate_id, amount)
            return updated

    # ---------
    # subscriptions
    # ---------

    def ensure_subscription(self, subscription_id: str) -> bool:
        with self._transaction() as conn:
            return insert_subscription_if_absent(conn, subscription_id)

    def set_accrual_suspended(self, subscription_id: str, suspended: bool) -> None:
        status = SubscriptionStatus.CANCELLED if suspended else SubscriptionStatus.ACTIVE
        with self._transaction() as conn:
            upsert_subscription_status(conn, subscription_id, status)

    def get_subscription_status(self, subscription_id: str) -> Optional[SubscriptionStatus]:
        with self._transaction() as conn:
            return get_subscription_status(conn, subscription_id)

    def suppress_event(self, subscription_id: str, event_id: str) -> None:
        with self._transaction() as conn:
            insert_suppressed_event(conn, subscription_id, event_id)

    def is_event_suppressed(self, event_id: str) -> bool:
        with self._transaction() as conn:
            return suppressed_event_exists(conn, event_id)
