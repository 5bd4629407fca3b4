from typing import List

import psycopg

from db.db import get_conn
from db.repositories import get_ancestor_chain_db, register_referral_db
from errors import LedgerUnavailableError
from models import AffiliateRef
from referral_engine import HierarchyResolver


class PostgresHierarchyResolver(HierarchyResolver):
    """
    resolves ancestor chains from the `affiliates` table
    (affiliate_id -> referrer_id).
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    def resolve(self, affiliate_id: str) -> List[AffiliateRef]:
        try:
            with get_conn(self.dsn) as conn:
                return get_ancestor_chain_db(conn, affiliate_id)
        except psycopg.OperationalError as e:
            raise LedgerUnavailableError(f"hierarchy lookup failed: {e}") from e

    def register(self, child_id: str, parent_id: str) -> None:
        """
        attach child under parent.
        rules match referral_engine.register_referral (single referrer, no cycles).
        """
        try:
            with get_conn(self.dsn) as conn:
                try:
                    register_referral_db(conn, child_id, parent_id)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except psycopg.OperationalError as e:
            raise LedgerUnavailableError(f"referral registration failed: {e}") from e
