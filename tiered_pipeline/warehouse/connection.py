"""
Shared psycopg3 connection pool

Used by the Postgres watermark store (compare-and-set commits) and the
Postgres change source (windowed reads). Connection settings fall back to
the DB_* environment variables.
"""
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from psycopg import Connection, Cursor, OperationalError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tiered_pipeline.utils.retry import MaxRetriesExceeded, RetryPolicy, retry_with_backoff

Params = tuple | dict | None


class DatabaseConnectionPool:
    """
    Pool of dict-row connections to the pipeline database.

    Size ``max_size`` to at least the extraction worker count: every window
    worker of a Postgres-sourced run holds one connection while it reads.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        min_size: int = 1,
        max_size: int = 8,
        timeout: float = 30.0,
    ) -> None:
        """
        Args:
            host: Database host ($DB_HOST, default localhost)
            port: Database port ($DB_PORT, default 5432)
            database: Database name ($DB_NAME, default pipeline)
            user: Database user ($DB_USER, default pipeline)
            password: Database password ($DB_PASSWORD, required)
            min_size: Connections kept open
            max_size: Upper bound on concurrent connections
            timeout: Seconds to wait for a connection, also the connect timeout

        Raises:
            ValueError: If no password is given or configured
        """
        self.host = host or os.getenv("DB_HOST", "localhost")
        self.port = port or int(os.getenv("DB_PORT", "5432"))
        self.database = database or os.getenv("DB_NAME", "pipeline")
        self.user = user or os.getenv("DB_USER", "pipeline")
        self.password = password or os.getenv("DB_PASSWORD")
        if not self.password:
            raise ValueError("Database password missing: pass password= or set DB_PASSWORD")

        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout
        self.conninfo = " ".join([
            f"host={self.host}",
            f"port={self.port}",
            f"dbname={self.database}",
            f"user={self.user}",
            f"password={self.password}",
            f"connect_timeout={int(self.timeout)}",
        ])
        self._pool: ConnectionPool | None = None

    def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the pool, waiting for ``min_size`` connections. No-op when open.

        Raises:
            OperationalError: If the database is unreachable after all attempts
        """
        if self._pool is not None:
            return

        pool = ConnectionPool(
            conninfo=self.conninfo,
            min_size=self.min_size,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        try:
            retry_with_backoff(
                lambda: pool.open(wait=True, timeout=self.timeout),
                policy=RetryPolicy(max_attempts=max_retries, base_delay=retry_delay, max_delay=retry_delay * 4),
                retry_on=(OperationalError, TimeoutError),
            )
        except MaxRetriesExceeded as e:
            pool.close()
            raise OperationalError(
                f"Cannot reach {self.host}:{self.port}/{self.database} after {e.attempts} attempts: {e.last_error}"
            ) from e
        self._pool = pool

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def get_connection(self) -> Iterator[Connection]:
        """
        Borrow a connection; it is committed (or rolled back on error) and
        returned to the pool on exit.

        Raises:
            RuntimeError: If the pool is not open
        """
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")
        with self._pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[Cursor]:
        """Cursor whose statements commit together, or not at all."""
        with self.get_connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield cur

    def execute_query(self, query: Any, params: Params = None) -> list[dict]:
        """Run a query and return every row as a dict."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def stream_query(self, query: Any, params: Params = None, name: str = "stream", fetch_size: int = 5000) -> Iterator[dict]:
        """
        Yield rows from a server-side cursor, ``fetch_size`` rows per round trip.

        The connection stays borrowed until the generator is exhausted or closed.
        """
        with self.get_connection() as conn:
            with conn.cursor(name=name) as cur:
                cur.execute(query, params)
                while True:
                    rows = cur.fetchmany(fetch_size)
                    if not rows:
                        break
                    yield from rows

    def execute_command(self, command: Any, params: Params = None) -> int:
        """Run a DDL or DML statement and commit. Returns the affected row count."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(command, params)
                rowcount = cur.rowcount
            conn.commit()
            return rowcount

    def __enter__(self) -> "DatabaseConnectionPool":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
