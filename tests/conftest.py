"""
Pytest configuration and fixtures for tiered-pipeline tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
from collections.abc import Callable, Generator
from datetime import datetime, timedelta

import pytest
from pyspark.sql import SparkSession
from testcontainers.postgres import PostgresContainer

from tiered_pipeline.batch.readers import InMemoryChangeSource
from tiered_pipeline.batch.writers import InMemoryObjectSink
from tiered_pipeline.core.models import (
    AnomalySettings,
    ExtractorSettings,
    PipelineSettings,
    Record,
    SourceConfig,
    ValidationSettings,
    WriterSettings,
)
from tiered_pipeline.core.rules import RuleConfigBuilder
from tiered_pipeline.observability.metrics import InMemoryMetricsSink
from tiered_pipeline.observability.notifications import CollectingNotificationSink
from tiered_pipeline.warehouse import InMemoryWatermarkStore
from tiered_pipeline.warehouse.connection import DatabaseConnectionPool


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# SPARK FIXTURES
# =======================

@pytest.fixture(scope="session")
def spark_session() -> Generator[SparkSession, None, None]:
    """
    Create a Spark session for testing with local mode

    Yields:
        SparkSession configured for local testing
    """
    spark = (
        SparkSession.builder
        .appName("tiered-pipeline-test")
        .master("local[2]")
        .config("spark.sql.shuffle.partitions", "2")
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.driver.memory", "1g")
        .config("spark.ui.enabled", "false")  # Disable UI for tests
        .config("spark.sql.warehouse.dir", "/tmp/spark-warehouse")
        .getOrCreate()
    )

    # Set log level to WARN to reduce test output noise
    spark.sparkContext.setLogLevel("WARN")

    yield spark

    spark.stop()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_pipeline"
    ) as postgres:
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="function")
def db_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Open a connection pool against the test container

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_pipeline",
        user="test_pipeline",
        password="test_password",
        min_size=1,
        max_size=4,
    )
    pool.open()
    yield pool
    pool.close()


# =======================
# DOMAIN FIXTURES
# =======================

def _no_sleep(_seconds: float) -> None:
    pass


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """Sleep replacement so retry tests run instantly"""
    return _no_sleep


@pytest.fixture
def make_record() -> Callable[..., Record]:
    """
    Factory for order-like records

    Returns:
        make_record(record_id, event_time, **fields) with sensible field defaults
    """
    def _make(record_id: str, event_time: datetime, **fields) -> Record:
        values = {
            "customer_id": f"C{record_id}",
            "amount": 10.0,
            "channel": "web",
            "latency_ms": 120.0,
            "failed": False,
        }
        values.update(fields)
        return Record(record_id=record_id, event_time=event_time, fields=values)

    return _make


def _generate_orders(start: datetime, count: int, spacing: timedelta = timedelta(minutes=1), prefix: str = "o") -> list[Record]:
    channels = ["web", "mobile", "store"]
    return [
        Record(
            record_id=f"{prefix}{i:06d}",
            event_time=start + spacing * (i + 1),
            fields={
                "customer_id": f"C{i % 97}",
                "amount": float(10 + i % 50),
                "channel": channels[i % 3],
                "latency_ms": float(100 + i % 40),
                "failed": i % 25 == 0,
            },
        )
        for i in range(count)
    ]


@pytest.fixture
def make_orders() -> Callable[..., list[Record]]:
    """
    Factory for evenly spaced valid order records

    Returns:
        make_orders(start, count, spacing=1 minute, prefix="o"); the first
        record is one spacing after ``start``
    """
    return _generate_orders


@pytest.fixture
def orders_config() -> SourceConfig:
    """Declared schema and aggregation settings of the orders source"""
    return (
        RuleConfigBuilder("orders", identifier_field="order_id", timestamp_field="updated_at")
        .add_field("customer_id", "string")
        .add_field("amount", "float")
        .add_range("amount", min_value=0, max_value=10000)
        .add_allowed_values("channel", ["web", "mobile", "store"])
        .add_field("latency_ms", "float", required=False)
        .add_field("failed", "boolean", required=False)
        .group_by("channel", metric_fields=["latency_ms"], error_field="failed")
        .build()
    )


@pytest.fixture
def pipeline_settings(orders_config) -> PipelineSettings:
    """Settings with instant retries and short timeouts"""
    return PipelineSettings(
        max_workers=4,
        extractor=ExtractorSettings(
            window_size=timedelta(hours=1),
            safety_lag=timedelta(minutes=5),
            max_attempts=3,
            base_delay=0.0,
            max_delay=0.0,
            window_timeout=30.0,
        ),
        writer=WriterSettings(max_attempts=3, base_delay=0.0, max_delay=0.0),
        validation=ValidationSettings(rule_timeout=30.0, max_attempts=2, base_delay=0.0),
        anomaly=AnomalySettings(),
        sources={"orders": orders_config},
    )


@pytest.fixture
def watermark_store() -> InMemoryWatermarkStore:
    return InMemoryWatermarkStore()


@pytest.fixture
def object_sink() -> InMemoryObjectSink:
    return InMemoryObjectSink()


@pytest.fixture
def notifications() -> CollectingNotificationSink:
    return CollectingNotificationSink()


@pytest.fixture
def metrics_sink() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def orders_source() -> InMemoryChangeSource:
    return InMemoryChangeSource()
