"""
Builds pipeline collaborators (sources, watermark store, sink) from
configuration and command-line arguments.
"""

import json
from contextlib import ExitStack
from pathlib import Path
from typing import Any

from tiered_pipeline.batch.readers import ChangeSource, InMemoryChangeSource, row_to_record
from tiered_pipeline.batch.writers import LocalFileObjectSink
from tiered_pipeline.core.models import SourceConfig
from tiered_pipeline.observability.logger import get_logger
from tiered_pipeline.warehouse import InMemoryWatermarkStore, WatermarkStore
from tiered_pipeline.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)

SOURCE_TYPES = ("jsonl", "postgres", "spark")


def create_spark_session(app_name: str = "TieredPipeline"):
    """
    Create a local Spark session for file sources.

    Args:
        app_name: Application name

    Returns:
        SparkSession
    """
    from pyspark.sql import SparkSession

    spark = SparkSession.builder \
        .appName(app_name) \
        .master("local[*]") \
        .config("spark.sql.session.timeZone", "UTC") \
        .config("spark.sql.adaptive.enabled", "true") \
        .getOrCreate()

    return spark


def load_jsonl_source(path: str | Path, config: SourceConfig) -> InMemoryChangeSource:
    """Read a JSON-lines change export into an in-memory source."""
    records = []
    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_number}: invalid JSON: {e}") from e
            records.append(row_to_record(row, config.identifier_field, config.timestamp_field))
    return InMemoryChangeSource(records)


class Resources:
    """
    Lazily opened shared resources (database pool, Spark session), closed
    together when the command finishes.
    """

    def __init__(self, db_args: dict[str, Any] | None = None):
        self.db_args = db_args or {}
        self._pool: DatabaseConnectionPool | None = None
        self._spark = None
        self._stack = ExitStack()

    @property
    def pool(self) -> DatabaseConnectionPool:
        if self._pool is None:
            pool = DatabaseConnectionPool(**self.db_args)
            pool.open()
            self._stack.callback(pool.close)
            self._pool = pool
        return self._pool

    @property
    def spark(self):
        if self._spark is None:
            spark = create_spark_session()
            self._stack.callback(spark.stop)
            self._spark = spark
        return self._spark

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> "Resources":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


def build_source(config: SourceConfig, resources: Resources) -> ChangeSource:
    """
    Build the change source described by ``config.connection``.

    Raises:
        ValueError: If the connection type is missing or unknown
    """
    connection = dict(config.connection)
    source_type = connection.pop("type", None)

    if source_type == "jsonl":
        return load_jsonl_source(connection["path"], config)

    if source_type == "postgres":
        from tiered_pipeline.batch.readers.postgres_source import PostgresChangeSource

        return PostgresChangeSource(
            resources.pool,
            table=connection.get("table", config.source_id),
            identifier_field=config.identifier_field,
            timestamp_field=config.timestamp_field,
            fetch_size=int(connection.get("fetch_size", 5000)),
        )

    if source_type == "spark":
        from tiered_pipeline.batch.readers.spark_source import SparkFileChangeSource

        return SparkFileChangeSource(
            resources.spark,
            path=connection["path"],
            file_format=connection.get("format", "csv"),
            identifier_field=config.identifier_field,
            timestamp_field=config.timestamp_field,
            **connection.get("options", {}),
        )

    raise ValueError(
        f"Source '{config.source_id}': connection type must be one of {SOURCE_TYPES}, got {source_type!r}"
    )


def build_watermark_store(kind: str, resources: Resources) -> WatermarkStore:
    if kind == "memory":
        return InMemoryWatermarkStore()
    if kind == "postgres":
        from tiered_pipeline.warehouse.postgres_watermark_store import PostgresWatermarkStore

        store = PostgresWatermarkStore(resources.pool)
        store.ensure_schema()
        return store
    raise ValueError(f"Unknown watermark store: {kind}")


def build_sink(sink_dir: str | Path) -> LocalFileObjectSink:
    return LocalFileObjectSink(sink_dir)
