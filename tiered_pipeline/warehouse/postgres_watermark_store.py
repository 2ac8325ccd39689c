"""
PostgreSQL-backed watermark store.

The compare-and-set is a single ``UPDATE ... WHERE version = %s``; the
commit history row is written in the same transaction.
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from tiered_pipeline.core.exceptions import WatermarkConflict, WatermarkNotFound
from tiered_pipeline.core.models import (
    QualityScore,
    Watermark,
    WatermarkCommit,
    WatermarkStatus,
)
from tiered_pipeline.observability.logger import get_logger
from tiered_pipeline.utils.timeutil import ensure_utc, utc_now
from tiered_pipeline.utils.validation import validate_limit, validate_source_id

from .connection import DatabaseConnectionPool
from .watermark_store import WatermarkStore

logger = get_logger(__name__)


SCHEMA_DDL = """
    CREATE TABLE IF NOT EXISTS pipeline_watermark (
        source_id TEXT PRIMARY KEY,
        last_extracted_at TIMESTAMPTZ NOT NULL,
        last_commit_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('PENDING', 'COMMITTED')),
        version INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS pipeline_watermark_history (
        commit_id BIGSERIAL PRIMARY KEY,
        source_id TEXT NOT NULL REFERENCES pipeline_watermark (source_id),
        run_id TEXT,
        version INTEGER NOT NULL,
        previous_extracted_at TIMESTAMPTZ NOT NULL,
        last_extracted_at TIMESTAMPTZ NOT NULL,
        committed_at TIMESTAMPTZ NOT NULL,
        quality_score JSONB
    );

    CREATE INDEX IF NOT EXISTS idx_watermark_history_source
        ON pipeline_watermark_history (source_id, version DESC);
"""


class PostgresWatermarkStore(WatermarkStore):
    """
    Watermark store on the shared connection pool.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize the store.

        Args:
            pool: Open database connection pool
        """
        self.pool = pool

    def ensure_schema(self) -> None:
        """Create the watermark tables if they do not exist."""
        self.pool.execute_command(SCHEMA_DDL)

    def get(self, source_id: str) -> Watermark:
        rows = self.pool.execute_query(
            """
            SELECT source_id, last_extracted_at, last_commit_at, status, version
            FROM pipeline_watermark
            WHERE source_id = %s
            """,
            (source_id,),
        )
        if not rows:
            raise WatermarkNotFound(source_id)
        return Watermark(**rows[0])

    def initialize(self, source_id: str, initial_timestamp: datetime) -> Watermark:
        source_id = validate_source_id(source_id)
        self.pool.execute_command(
            """
            INSERT INTO pipeline_watermark (source_id, last_extracted_at, last_commit_at, status, version)
            VALUES (%s, %s, %s, %s, 0)
            ON CONFLICT (source_id) DO NOTHING
            """,
            (source_id, ensure_utc(initial_timestamp), utc_now(), WatermarkStatus.PENDING.value),
        )
        return self.get(source_id)

    def commit(
        self,
        source_id: str,
        new_timestamp: datetime,
        expected: Watermark,
        *,
        run_id: str | None = None,
        quality_score: QualityScore | None = None,
    ) -> Watermark:
        new_timestamp = self._check_commit(source_id, new_timestamp, expected)
        committed_at = utc_now()

        with self.pool.transaction() as cur:
            cur.execute(
                """
                UPDATE pipeline_watermark
                SET last_extracted_at = %s,
                    last_commit_at = %s,
                    status = %s,
                    version = version + 1
                WHERE source_id = %s AND version = %s
                RETURNING source_id, last_extracted_at, last_commit_at, status, version
                """,
                (
                    new_timestamp,
                    committed_at,
                    WatermarkStatus.COMMITTED.value,
                    source_id,
                    expected.version,
                ),
            )
            row = cur.fetchone()

            if row is None:
                cur.execute(
                    "SELECT version FROM pipeline_watermark WHERE source_id = %s",
                    (source_id,),
                )
                current = cur.fetchone()
                if current is None:
                    raise WatermarkNotFound(source_id)
                raise WatermarkConflict(source_id, expected.version, current["version"])

            cur.execute(
                """
                INSERT INTO pipeline_watermark_history (
                    source_id, run_id, version, previous_extracted_at,
                    last_extracted_at, committed_at, quality_score
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    source_id,
                    run_id,
                    row["version"],
                    expected.last_extracted_at,
                    new_timestamp,
                    committed_at,
                    Jsonb(quality_score.model_dump()) if quality_score else None,
                ),
            )

        logger.info(
            f"Committed watermark for {source_id} at {new_timestamp.isoformat()}",
            extra={"source_id": source_id, "version": row["version"], "run_id": run_id},
        )
        return Watermark(**row)

    def history(self, source_id: str, limit: int = 100) -> list[WatermarkCommit]:
        validate_limit(limit)
        self.get(source_id)
        rows = self.pool.execute_query(
            """
            SELECT source_id, run_id, version, previous_extracted_at,
                   last_extracted_at, committed_at, quality_score
            FROM pipeline_watermark_history
            WHERE source_id = %s
            ORDER BY version DESC
            LIMIT %s
            """,
            (source_id, limit),
        )
        return [WatermarkCommit(**row) for row in rows]
