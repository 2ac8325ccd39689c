"""
Spark deduplication for the cleaned tier.

Only the identity columns of each record travel to Spark; the survivors come
back as positions into the input list, so field values are never
round-tripped through Spark types.
"""

from collections.abc import Iterable

from pyspark.sql import DataFrame, SparkSession, Window
from pyspark.sql import functions as F
from pyspark.sql.types import LongType, StringType, StructField, StructType, TimestampType

from tiered_pipeline.core.models import Record

KEY_SCHEMA = StructType([
    StructField("ordinal", LongType(), False),
    StructField("record_id", StringType(), False),
    StructField("extracted_at", TimestampType(), True),
    StructField("event_time", TimestampType(), False),
])


def first_copies(keys: DataFrame) -> DataFrame:
    """
    Rank the copies of each ``record_id`` and keep rank 1.

    Order: earliest ``extracted_at`` (nulls last), then earliest
    ``event_time``, then input position.
    """
    ranking = Window.partitionBy("record_id").orderBy(
        F.col("extracted_at").asc_nulls_last(),
        F.col("event_time").asc(),
        F.col("ordinal").asc(),
    )
    return (
        keys.withColumn("copy_rank", F.row_number().over(ranking))
        .filter(F.col("copy_rank") == 1)
        .drop("copy_rank")
    )


def deduplicate_with_spark(spark: SparkSession, records: Iterable[Record]) -> tuple[list[Record], int]:
    """
    Keep one record per identifier, choosing survivors with a Spark window.

    Returns:
        Tuple of (unique records sorted by event time then identifier, duplicates removed)
    """
    records = list(records)
    if not records:
        return [], 0

    keys = spark.createDataFrame(
        [(i, r.record_id, r.extracted_at, r.event_time) for i, r in enumerate(records)],
        schema=KEY_SCHEMA,
    )
    survivors = first_copies(keys).select("ordinal").collect()

    unique = sorted((records[row.ordinal] for row in survivors), key=lambda r: (r.event_time, r.record_id))
    return unique, len(records) - len(unique)
