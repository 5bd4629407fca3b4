from pathlib import Path
from typing import Optional, List

from psycopg import Connection

from commission_schedule import MAX_DEPTH
from errors import ReferralError
from models import (
    AffiliateBalance,
    AffiliateRef,
    CommissionEntry,
    EntryKind,
    EntryStatus,
    SubscriptionStatus,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def apply_schema(conn: Connection) -> None:
    """create tables if they don't exist yet (idempotent)."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_PATH.read_text())


# ---------
# affiliates / hierarchy
# ---------

def ensure_affiliate_row(conn: Connection, affiliate_id: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO affiliates (affiliate_id)
            VALUES (%s)
            ON CONFLICT (affiliate_id) DO NOTHING
            """,
            (affiliate_id,),
        )


def get_affiliate_referrer_id(conn: Connection, affiliate_id: str) -> Optional[str]:
    """
    fetch referrer_id for an affiliate, or None if they have no referrer
    (or aren't known yet).
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referrer_id FROM affiliates WHERE affiliate_id = %s",
            (affiliate_id,),
        )
        row = cur.fetchone()
        return row[0] if row else None


def set_affiliate_referrer_id(conn: Connection, child_id: str, parent_id: str) -> None:
    """
    set referrer_id for child to parent. assumes all checks already done.
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE affiliates SET referrer_id = %s, updated_at = NOW() WHERE affiliate_id = %s",
            (parent_id, child_id),
        )
        if cur.rowcount != 1:
            raise ReferralError(f"Failed to update referrer for affiliate {child_id}")


def register_referral_db(conn: Connection, child_id: str, parent_id: str) -> None:
    """
    DB-backed version of referral_engine.register_referral.
    must run inside the caller's transaction.
    """
    if child_id == parent_id:
        raise ReferralError(f"Affiliate {child_id} cannot refer themselves.")

    ensure_affiliate_row(conn, parent_id)
    ensure_affiliate_row(conn, child_id)

    # lock the child row so two registrations can't both pass the check
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referrer_id FROM affiliates WHERE affiliate_id = %s FOR UPDATE",
            (child_id,),
        )
        existing = cur.fetchone()[0]
    if existing is not None:
        raise ReferralError(f"Affiliate {child_id} already has a referrer ({existing}).")

    # cycle check: walk up from parent; must never hit child
    current = parent_id
    while current is not None:
        if current == child_id:
            raise ReferralError(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        current = get_affiliate_referrer_id(conn, current)

    set_affiliate_referrer_id(conn, child_id, parent_id)


def get_ancestor_chain_db(
    conn: Connection,
    affiliate_id: str,
    max_levels: int = MAX_DEPTH,
) -> List[AffiliateRef]:
    """
    DB-backed ancestor lookup: affiliate_id at depth 1, then follow
    referrer_id up to max_levels. unknown affiliates resolve to [].
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE chain (affiliate_id, referrer_id, depth) AS (
                SELECT affiliate_id, referrer_id, 1
                FROM affiliates
                WHERE affiliate_id = %s
              UNION ALL
                SELECT a.affiliate_id, a.referrer_id, c.depth + 1
                FROM affiliates a
                JOIN chain c ON a.affiliate_id = c.referrer_id
                WHERE c.depth < %s
            )
            SELECT affiliate_id, depth FROM chain ORDER BY depth
            """,
            (affiliate_id, max_levels),
        )
        rows = cur.fetchall()

    return [AffiliateRef(affiliate_id=r[0], depth=r[1]) for r in rows]


# ---------
# commission entries
# ---------

def insert_commission_entry(conn: Connection, entry: CommissionEntry) -> bool:
    """
    conditional insert keyed on (event_id, affiliate_id).
    returns True if the row was created, False if it already existed.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO commission_entries
                (event_id, affiliate_id, subscription_id, depth, kind, amount,
                 base_amount, status, billing_period_start, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (event_id, affiliate_id) DO NOTHING
            RETURNING id
            """,
            (
                entry.event_id,
                entry.affiliate_id,
                entry.subscription_id,
                entry.depth,
                entry.kind.value,
                entry.amount,
                entry.base_amount,
                entry.status.value,
                entry.billing_period_start,
                entry.created_at,
            ),
        )
        return cur.fetchone() is not None


def _row_to_entry(r) -> CommissionEntry:
    return CommissionEntry(
        event_id=r[0],
        affiliate_id=r[1],
        subscription_id=r[2],
        depth=r[3],
        kind=EntryKind(r[4]),
        amount=r[5],
        base_amount=r[6],
        status=EntryStatus(r[7]),
        billing_period_start=r[8],
        created_at=r[9],
    )


def get_commission_entries(
    conn: Connection,
    affiliate_id: str,
    limit: int = 50,
) -> List[CommissionEntry]:
    """newest first."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT event_id, affiliate_id, subscription_id, depth, kind, amount,
                   base_amount, status, billing_period_start, created_at
            FROM commission_entries
            WHERE affiliate_id = %s
            ORDER BY id DESC
            LIMIT %s
            """,
            (affiliate_id, limit),
        )
        rows = cur.fetchall()

    return [_row_to_entry(r) for r in rows]


def settle_pending_entries(conn: Connection, affiliate_id: str, amount: int) -> int:
    """
    mark the oldest pending entries as paid while they fit inside `amount`.
    returns how many rows were flipped.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, amount
            FROM commission_entries
            WHERE affiliate_id = %s AND status = 'pending'
            ORDER BY id
            FOR UPDATE
            """,
            (affiliate_id,),
        )
        rows = cur.fetchall()

    paid_ids = []
    remaining = amount
    for entry_id, entry_amount in rows:
        if entry_amount > remaining:
            break
        paid_ids.append(entry_id)
        remaining -= entry_amount

    if not paid_ids:
        return 0

    with conn.cursor() as cur:
        cur.execute(
            "UPDATE commission_entries SET status = 'paid' WHERE id = ANY(%s)",
            (paid_ids,),
        )
    return len(paid_ids)


# ---------
# balances
# ---------

def _row_to_balance(affiliate_id: str, row) -> AffiliateBalance:
    return AffiliateBalance(
        affiliate_id=affiliate_id,
        pending_balance=row[0],
        lifetime_earned=row[1],
    )


def upsert_balance_delta(conn: Connection, affiliate_id: str, amount: int) -> AffiliateBalance:
    """
    credit amount to both pending_balance and lifetime_earned.
    creates the row if it doesn't exist. the upsert takes the row lock,
    so concurrent credits to one affiliate serialize here.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO affiliate_balances (affiliate_id, pending_balance, lifetime_earned)
            VALUES (%s, %s, %s)
            ON CONFLICT (affiliate_id)
            DO UPDATE SET
                pending_balance = affiliate_balances.pending_balance + EXCLUDED.pending_balance,
                lifetime_earned = affiliate_balances.lifetime_earned + EXCLUDED.lifetime_earned,
                updated_at = NOW()
            RETURNING pending_balance, lifetime_earned
            """,
            (affiliate_id, amount, amount),
        )
        return _row_to_balance(affiliate_id, cur.fetchone())


def get_or_create_balance(
    conn: Connection,
    affiliate_id: str,
    for_update: bool = False,
) -> AffiliateBalance:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO affiliate_balances (affiliate_id)
            VALUES (%s)
            ON CONFLICT (affiliate_id) DO NOTHING
            """,
            (affiliate_id,),
        )
        lock = " FOR UPDATE" if for_update else ""
        cur.execute(
            "SELECT pending_balance, lifetime_earned FROM affiliate_balances "
            "WHERE affiliate_id = %s" + lock,
            (affiliate_id,),
        )
        return _row_to_balance(affiliate_id, cur.fetchone())


def decrement_pending_balance(conn: Connection, affiliate_id: str, amount: int) -> AffiliateBalance:
    """caller must hold the row lock and have checked the amount."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE affiliate_balances
            SET pending_balance = pending_balance - %s,
                updated_at = NOW()
            WHERE affiliate_id = %s
            RETURNING pending_balance, lifetime_earned
            """,
            (amount, affiliate_id),
        )
        return _row_to_balance(affiliate_id, cur.fetchone())


# ---------
# subscriptions
# ---------

def insert_subscription_if_absent(conn: Connection, subscription_id: str) -> bool:
    """returns True if a new active subscription row was created."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscriptions (subscription_id, status)
            VALUES (%s, 'active')
            ON CONFLICT (subscription_id) DO NOTHING
            RETURNING subscription_id
            """,
            (subscription_id,),
        )
        return cur.fetchone() is not None


def upsert_subscription_status(
    conn: Connection,
    subscription_id: str,
    status: SubscriptionStatus,
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscriptions (subscription_id, status)
            VALUES (%s, %s)
            ON CONFLICT (subscription_id)
            DO UPDATE SET status = EXCLUDED.status, updated_at = NOW()
            """,
            (subscription_id, status.value),
        )


def get_subscription_status(conn: Connection, subscription_id: str) -> Optional[SubscriptionStatus]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT status FROM subscriptions WHERE subscription_id = %s",
            (subscription_id,),
        )
        row = cur.fetchone()
        return SubscriptionStatus(row[0]) if row else None


def insert_suppressed_event(conn: Connection, subscription_id: str, event_id: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO suppressed_events (event_id, subscription_id)
            VALUES (%s, %s)
            ON CONFLICT (event_id) DO NOTHING
            """,
            (event_id, subscription_id),
        )


def suppressed_event_exists(conn: Connection, event_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM suppressed_events WHERE event_id = %s",
            (event_id,),
        )
        return cur.fetchone() is not None
