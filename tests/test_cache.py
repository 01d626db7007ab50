"""
Tests for the durable cache store
TTL expiry, corrupt payloads, ordering of writes and full clears
"""

import json

import pytest

from mfgsync.aggregator import Aggregator
from mfgsync.cache import (
    ALL_KEYS,
    KEY_CACHE_TIMESTAMP,
    KEY_ETL_COMPLETED,
    KEY_LAST_UPDATED,
    KEY_SNAPSHOT,
    FileKeyValueStore,
    PipelineStateStore,
    SnapshotCache,
)
from mfgsync.controller import DisplayStatus, PipelineController
from mfgsync.models import DashboardSnapshot, JobRecord, LeadTimeRecord, PairItem, ParallelizationPair, PipelineState


def _snapshot(captured_at, code="A100"):
    return DashboardSnapshot(
        jobs=(JobRecord(item_code=code, stage="RFM", process="CUT", quantity=2.0, urgency="HIGH"),),
        lead_times=(LeadTimeRecord(item_code=code, serial_lead_time_days=10.0, parallelized_lead_time_days=7.0),),
        pairs=(
            ParallelizationPair(
                item_a=PairItem(item_code=code, urgency="HIGH"),
                item_b=PairItem(item_code="Z9", urgency="LOW"),
                sequential_time_days=8.0,
                parallel_time_days=5.0,
                can_run_parallel=True,
                machine_conflicts=("M1",),
            ),
        ),
        captured_at=captured_at,
    )


class TestSnapshotCache:
    """Snapshot persistence with TTL"""

    def test_round_trip_within_ttl(self, cache, clock):
        snap = _snapshot(clock())
        assert cache.put(snap) is True
        clock.advance(200_000)
        lookup = cache.get()
        assert lookup.hit
        assert lookup.age_ms == 200_000
        assert lookup.snapshot == snap

    def test_expired_entry_is_a_miss(self, cache, clock):
        cache.put(_snapshot(clock()))
        clock.advance(400_000)
        lookup = cache.get()
        assert not lookup.hit
        assert lookup.age_ms == 400_000
        # still available to a stale fallback
        assert cache.peek() is not None

    def test_explicit_max_age(self, cache, clock):
        cache.put(_snapshot(clock()))
        clock.advance(60_000)
        assert not cache.get(max_age_ms=30_000).hit
        assert cache.get(max_age_ms=90_000).hit

    def test_corrupt_payload_is_a_miss_and_removed(self, cache, store, clock):
        store.set(KEY_SNAPSHOT, "{not json")
        store.set(KEY_CACHE_TIMESTAMP, str(clock()))
        assert not cache.get().hit
        assert store.get(KEY_SNAPSHOT) is None
        assert store.get(KEY_CACHE_TIMESTAMP) is None

    def test_wrong_shape_payload_is_a_miss(self, cache, store, clock):
        store.set(KEY_SNAPSHOT, json.dumps({"jobs": "nope"}))
        store.set(KEY_CACHE_TIMESTAMP, str(clock()))
        assert cache.peek() is None

    def test_corrupt_timestamp_is_a_miss(self, cache, store, clock):
        cache.put(_snapshot(clock()))
        store.set(KEY_CACHE_TIMESTAMP, "yesterday")
        assert not cache.get().hit
        assert not cache.is_fresh()

    def test_older_capture_does_not_overwrite_newer(self, cache, clock):
        newer = _snapshot(clock(), code="NEW")
        older = _snapshot(clock() - 5_000, code="OLD")
        assert cache.put(newer) is True
        assert cache.put(older) is False
        assert cache.peek().jobs[0].item_code == "NEW"

    def test_clear_removes_all_four_keys(self, cache, store, clock):
        cache.put(_snapshot(clock()))
        PipelineStateStore(store).save(PipelineState(etl_completed=True, last_updated=clock()))
        assert set(store.data) == set(ALL_KEYS)
        cache.clear()
        assert store.data == {}


class TestPipelineStateStore:
    """Persisted pipeline flags"""

    def test_defaults_when_empty(self, store):
        state = PipelineStateStore(store).load()
        assert state.etl_completed is False
        assert state.last_updated is None

    def test_save_and_load(self, store):
        states = PipelineStateStore(store)
        states.save(PipelineState(etl_completed=True, last_updated=123))
        assert store.get(KEY_ETL_COMPLETED) == "true"
        assert store.get(KEY_LAST_UPDATED) == "123"
        assert states.load() == PipelineState(etl_completed=True, last_updated=123)

    def test_corrupt_last_updated_is_ignored(self, store):
        store.set(KEY_ETL_COMPLETED, "true")
        store.set(KEY_LAST_UPDATED, "soon")
        state = PipelineStateStore(store).load()
        assert state.etl_completed is True
        assert state.last_updated is None


class TestFileKeyValueStore:
    """On-disk key/value backend"""

    def test_set_get_delete(self, tmp_path):
        kv = FileKeyValueStore(tmp_path / "cache")
        assert kv.get("k") is None
        kv.set("k", "v1")
        kv.set("k", "v2")
        assert kv.get("k") == "v2"
        kv.delete("k")
        kv.delete("k")
        assert kv.get("k") is None

    def test_no_temp_files_left_behind(self, tmp_path):
        kv = FileKeyValueStore(tmp_path)
        kv.set(KEY_SNAPSHOT, "{}")
        assert [p.name for p in tmp_path.iterdir()] == [f"{KEY_SNAPSHOT}.json"]

    def test_undecodable_file_reads_as_missing(self, tmp_path):
        kv = FileKeyValueStore(tmp_path)
        (tmp_path / f"{KEY_SNAPSHOT}.json").write_bytes(b"\xff\xfe\x00garbage")
        assert kv.get(KEY_SNAPSHOT) is None


class TestUndecodableCacheOnStart:
    """A mangled cache file never fails startup"""

    @pytest.mark.asyncio
    async def test_start_falls_back_to_refresh(self, tmp_path, api, backend, clock):
        kv = FileKeyValueStore(tmp_path)
        cache = SnapshotCache(kv, ttl_ms=300_000, clock=clock)
        cache.put(_snapshot(clock()))
        PipelineStateStore(kv).save(PipelineState(etl_completed=True, last_updated=clock()))
        (tmp_path / f"{KEY_SNAPSHOT}.json").write_bytes(b"\xff\xfe\x00garbage")

        controller = PipelineController(Aggregator(api, clock=clock), cache, PipelineStateStore(kv), auto_refresh=False, clock=clock)
        status = await controller.start()
        assert status is DisplayStatus.READY
        assert [j.item_code for j in controller.snapshot.jobs] == ["A100", "B200", "C300"]
        assert "/analysis_status/" in backend.paths_called()
        # the refreshed snapshot replaced the mangled file
        assert cache.peek() == controller.snapshot
        await controller.close()
