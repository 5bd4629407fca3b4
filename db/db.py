import psycopg
from contextlib import contextmanager


@contextmanager
def get_conn(dsn: str):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn) as conn:
        conn.autocommit = False
        yield conn
