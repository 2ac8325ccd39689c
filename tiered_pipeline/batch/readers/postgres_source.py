"""
PostgreSQL change source.

Reads a table's changed rows by comparing its change-timestamp column
against the window bounds. Table and column names come from configuration
and are validated before being composed into SQL.
"""

from collections.abc import Iterator
from datetime import datetime

from psycopg import OperationalError, sql

from tiered_pipeline.core.exceptions import SourceUnavailable
from tiered_pipeline.core.models import Record
from tiered_pipeline.utils.validation import sanitize_sql_identifier
from tiered_pipeline.warehouse.connection import DatabaseConnectionPool

from .base import ChangeSource, row_to_record


def _identifier(name: str) -> sql.Identifier:
    return sql.Identifier(*sanitize_sql_identifier(name).split("."))


class PostgresChangeSource(ChangeSource):
    """
    Change capture over a PostgreSQL table.
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        table: str,
        identifier_field: str = "id",
        timestamp_field: str = "updated_at",
        fetch_size: int = 5000,
    ):
        """
        Initialize the source.

        Args:
            pool: Open database connection pool
            table: Source table (optionally schema-qualified)
            identifier_field: Identifier column
            timestamp_field: Change timestamp column
            fetch_size: Rows fetched per round trip from the server-side cursor
        """
        self.pool = pool
        self.identifier_field = sanitize_sql_identifier(identifier_field)
        self.timestamp_field = sanitize_sql_identifier(timestamp_field)
        self.fetch_size = fetch_size

        self._where = sql.SQL("{ts} > %s AND {ts} <= %s").format(ts=_identifier(timestamp_field))
        self._select = sql.SQL("SELECT * FROM {table} WHERE {where} ORDER BY {ts}, {id}").format(
            table=_identifier(table),
            where=self._where,
            ts=_identifier(timestamp_field),
            id=_identifier(identifier_field),
        )
        self._count = sql.SQL("SELECT COUNT(*) AS n FROM {table} WHERE {where}").format(
            table=_identifier(table),
            where=self._where,
        )

    def fetch_changes(self, since: datetime, until: datetime) -> list[Record]:
        try:
            return list(self._iter_rows(since, until))
        except OperationalError as e:
            raise SourceUnavailable(f"PostgreSQL source unreachable: {e}") from e

    def _iter_rows(self, since: datetime, until: datetime) -> Iterator[Record]:
        rows = self.pool.stream_query(
            self._select, (since, until), name="tiered_pipeline_changes", fetch_size=self.fetch_size
        )
        for row in rows:
            yield row_to_record(row, self.identifier_field, self.timestamp_field)

    def count_changes(self, since: datetime, until: datetime) -> int:
        try:
            rows = self.pool.execute_query(self._count, (since, until))
        except OperationalError as e:
            raise SourceUnavailable(f"PostgreSQL source unreachable: {e}") from e
        return int(rows[0]["n"])
