"""Tests for the reducer-governed state store and branch working snapshots."""

import pytest

from graphflow.errors import ReduceError
from graphflow.runtime.state_store import (
    ReducerPolicy,
    StateStore,
    absorb,
    deep_merge,
)


class TestReducers:
    def test_replace_is_default(self):
        store = StateStore()
        store.reduce("verdict", "comment")
        store.reduce("verdict", "approve")
        assert store.snapshot()["verdict"] == "approve"

    def test_merge_unions_keys(self):
        store = StateStore(reducers={"meta": ReducerPolicy.MERGE})
        store.reduce("meta", {"a": 1})
        store.reduce("meta", {"b": 2})
        assert store.snapshot()["meta"] == {"a": 1, "b": 2}

    def test_merge_conflict_last_writer_wins(self):
        store = StateStore(reducers={"meta": ReducerPolicy.MERGE})
        store.reduce("meta", {"a": 1})
        store.reduce("meta", {"a": 2})
        assert store.snapshot()["meta"] == {"a": 2}

    def test_merge_is_recursive(self):
        merged = deep_merge({"x": {"y": 1, "z": 1}}, {"x": {"z": 2}})
        assert merged == {"x": {"y": 1, "z": 2}}

    def test_append_preserves_order(self):
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        store.reduce("findings", ["B1"])
        store.reduce("findings", ["B2", "B3"])
        assert store.snapshot()["findings"] == ["B1", "B2", "B3"]

    def test_sum_accumulates(self):
        store = StateStore(reducers={"cost": ReducerPolicy.SUM})
        store.reduce("cost", 2)
        store.reduce("cost", 3.5)
        assert store.snapshot()["cost"] == 5.5

    def test_append_rejects_scalar(self):
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        with pytest.raises(ReduceError) as exc_info:
            store.reduce("findings", "not a list")
        assert exc_info.value.key == "findings"

    def test_merge_rejects_non_mapping(self):
        store = StateStore(reducers={"meta": ReducerPolicy.MERGE})
        with pytest.raises(ReduceError):
            store.reduce("meta", [1, 2])

    def test_failed_delta_applies_nothing(self):
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        with pytest.raises(ReduceError):
            store.apply({"verdict": "approve", "findings": 42})
        assert "verdict" not in store.snapshot()
        assert store.version == 0


class TestSnapshots:
    def test_snapshot_is_read_only(self):
        store = StateStore(initial={"a": 1})
        snapshot = store.snapshot()
        with pytest.raises(TypeError):
            snapshot["a"] = 2  # type: ignore[index]

    def test_snapshot_is_isolated_from_later_writes(self):
        store = StateStore(initial={"meta": {"a": 1}})
        snapshot = store.snapshot()
        store.reduce("meta", {"a": 2})
        assert snapshot["meta"] == {"a": 1}

    def test_history_records_origin(self):
        store = StateStore()
        store.reduce("verdict", "comment", origin="main/review[0]")
        change = store.history[-1]
        assert change.key == "verdict"
        assert change.origin == "main/review[0]"
        assert change.version == store.version


class TestWorkingSnapshots:
    @pytest.mark.asyncio
    async def test_branch_reads_own_writes_without_touching_parent(self):
        store = StateStore(initial={"count": 1})
        branch = store.fork("main/split[0]")
        await branch.commit({"count": 2})
        assert branch.snapshot()["count"] == 2
        assert store.snapshot()["count"] == 1

    @pytest.mark.asyncio
    async def test_absorb_in_registration_order(self):
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        first = store.fork("b0")
        second = store.fork("b1")
        # second branch finishes writing first
        await second.commit({"findings": ["B2"]})
        await first.commit({"findings": ["B1"]})

        await absorb(store, first)
        await absorb(store, second)
        assert store.snapshot()["findings"] == ["B1", "B2"]

    @pytest.mark.asyncio
    async def test_absorb_replays_raw_deltas(self):
        store = StateStore(reducers={"cost": ReducerPolicy.SUM}, initial={"cost": 10})
        branch = store.fork("b0")
        await branch.commit({"cost": 1})
        await branch.commit({"cost": 2})
        assert branch.snapshot()["cost"] == 13

        await absorb(store, branch)
        assert store.snapshot()["cost"] == 13

    @pytest.mark.asyncio
    async def test_discarded_branch_contributes_nothing(self):
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        branch = store.fork("b0")
        await branch.commit({"findings": ["partial"]})
        branch.discard()

        await absorb(store, branch)
        assert "findings" not in store.snapshot()
