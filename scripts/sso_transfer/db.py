"""Database helpers: connection pool, query helpers, upserts."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.sso_transfer.config import DatabaseConfig

logger = logging.getLogger("sso_transfer.db")


class Database:
    """Thin wrapper around a ThreadedConnectionPool with query/upsert helpers.

    Callers run these methods from worker threads, so every call checks a
    connection out of the pool for its own duration.
    """

    def __init__(self, config: DatabaseConfig, name: str = "db") -> None:
        self.name = name
        self.max_connections = config.max_connections
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[tuple]:
        with self.transaction() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self.transaction() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def upsert_batch(
        self,
        cur,
        table: str,
        columns: list[str],
        rows: Sequence[tuple],
        conflict_columns: list[str],
        update_columns: list[str],
        touch_columns: Optional[list[str]] = None,
    ) -> int:
        """Bulk upsert using execute_values with ON CONFLICT DO UPDATE.

        Columns in ``touch_columns`` are set to NOW() on update.
        Returns the number of rows affected.
        """
        if not rows:
            return 0

        col_list = ", ".join(columns)
        conflict_list = ", ".join(conflict_columns)
        set_clauses = [f"{c} = EXCLUDED.{c}" for c in update_columns]
        set_clauses += [f"{c} = NOW()" for c in touch_columns or []]

        sql = (
            f"INSERT INTO {table} ({col_list}) VALUES %s "
            f"ON CONFLICT ({conflict_list}) DO UPDATE SET {', '.join(set_clauses)}"
        )

        psycopg2.extras.execute_values(cur, sql, rows, page_size=500)
        return cur.rowcount
