"""
Unit tests for the in-memory watermark store.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from tiered_pipeline.core.exceptions import WatermarkConflict, WatermarkNotFound
from tiered_pipeline.core.models import QualityScore, WatermarkStatus
from tiered_pipeline.utils.validation import InvalidInputError
from tiered_pipeline.warehouse import InMemoryWatermarkStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


class TestInMemoryWatermarkStore:
    """Tests for InMemoryWatermarkStore"""

    def test_get_unknown_source(self, watermark_store):
        with pytest.raises(WatermarkNotFound):
            watermark_store.get("orders")

    def test_initialize(self, watermark_store):
        watermark = watermark_store.initialize("orders", T0)

        assert watermark.last_extracted_at == T0
        assert watermark.status == WatermarkStatus.PENDING
        assert watermark.version == 0
        assert watermark_store.get("orders") == watermark

    def test_initialize_is_idempotent(self, watermark_store):
        """Test re-initializing never rewinds an existing watermark"""
        watermark_store.initialize("orders", T0)
        committed = watermark_store.commit("orders", T0 + HOUR, watermark_store.get("orders"))

        again = watermark_store.initialize("orders", T0 - HOUR)

        assert again.last_extracted_at == committed.last_extracted_at
        assert again.version == 1

    def test_invalid_source_id(self, watermark_store):
        with pytest.raises(InvalidInputError):
            watermark_store.initialize("orders; drop", T0)

    def test_commit_advances_version(self, watermark_store):
        before = watermark_store.initialize("orders", T0)

        after = watermark_store.commit("orders", T0 + HOUR, before, run_id="run-1")

        assert after.last_extracted_at == T0 + HOUR
        assert after.version == 1
        assert after.status == WatermarkStatus.COMMITTED
        assert watermark_store.get("orders") == after

    def test_stale_commit_conflicts(self, watermark_store):
        """Test only one of two runs that read the same watermark may commit"""
        stale = watermark_store.initialize("orders", T0)
        watermark_store.commit("orders", T0 + HOUR, stale)

        with pytest.raises(WatermarkConflict) as exc_info:
            watermark_store.commit("orders", T0 + 2 * HOUR, stale)

        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1
        assert watermark_store.get("orders").last_extracted_at == T0 + HOUR

    def test_cannot_move_backwards(self, watermark_store):
        current = watermark_store.initialize("orders", T0)

        with pytest.raises(ValueError, match="backwards"):
            watermark_store.commit("orders", T0 - HOUR, current)

    def test_commit_without_initialize(self, watermark_store):
        other = InMemoryWatermarkStore().initialize("orders", T0)

        with pytest.raises(WatermarkNotFound):
            watermark_store.commit("orders", T0 + HOUR, other)

    def test_history_newest_first(self, watermark_store):
        """Test every commit is recorded with its quality score"""
        watermark_store.initialize("orders", T0)
        score = QualityScore(completeness=99.0, accuracy=100.0, consistency=100.0, overall=99.6)
        for hour in (1, 2, 3):
            watermark_store.commit(
                "orders", T0 + hour * HOUR, watermark_store.get("orders"), run_id=f"run-{hour}", quality_score=score
            )

        history = watermark_store.history("orders", limit=2)

        assert [c.run_id for c in history] == ["run-3", "run-2"]
        assert history[0].previous_extracted_at == T0 + 2 * HOUR
        assert history[0].quality_score == score

    def test_history_unknown_source(self, watermark_store):
        with pytest.raises(WatermarkNotFound):
            watermark_store.history("orders")

    def test_concurrent_commits_single_winner(self, watermark_store):
        """Test concurrent commits from the same read: exactly one succeeds"""
        expected = watermark_store.initialize("orders", T0)

        def attempt(i):
            try:
                watermark_store.commit("orders", T0 + (i + 1) * HOUR, expected)
                return True
            except WatermarkConflict:
                return False

        with ThreadPoolExecutor(max_workers=8) as executor:
            outcomes = list(executor.map(attempt, range(8)))

        assert outcomes.count(True) == 1
        assert watermark_store.get("orders").version == 1
