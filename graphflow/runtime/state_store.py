"""
State Store - Versioned execution state governed by per-key reducers.

Every state key has a ReducerPolicy fixed for the lifetime of one execution:
- REPLACE: last write wins
- MERGE: recursive union of mappings; leaves are last-writer-wins
- APPEND: concatenation of sequences, in reduction order
- SUM: numeric accumulation

The shared StateStore is owned by the scheduler. Node executors only ever see
read-only snapshots and hand back deltas. Concurrent branches work on a
WorkingSnapshot: a private copy whose reads include the branch's own writes,
and whose raw deltas are journaled in arrival order so they can be reduced
into the parent later, one branch at a time, in registration order.
"""

import asyncio
import copy
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from graphflow.errors import ReduceError

logger = logging.getLogger(__name__)

_MISSING = object()


class ReducerPolicy(StrEnum):
    """How writes to one state key combine."""

    REPLACE = "replace"
    MERGE = "merge"
    APPEND = "append"
    SUM = "sum"


@dataclass
class StateChange:
    """Record of a reduction applied to the store."""

    key: str
    policy: ReducerPolicy
    old_value: Any
    new_value: Any
    origin: str
    version: int
    timestamp: float = field(default_factory=time.time)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def deep_merge(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Merge `incoming` into a copy of `existing`. Nested mappings merge, other leaves are replaced."""
    result = copy.deepcopy(dict(existing))
    for key, value in incoming.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def reduce_value(policy: ReducerPolicy, key: str, current: Any, incoming: Any) -> Any:
    """
    Combine the current value of `key` with an incoming write.

    `current` is `_MISSING` when the key has never been written.

    Raises:
        ReduceError: when a value does not fit the key's policy
    """
    if policy == ReducerPolicy.REPLACE:
        return copy.deepcopy(incoming)

    if policy == ReducerPolicy.MERGE:
        if not isinstance(incoming, Mapping):
            raise ReduceError(
                f"Key '{key}' uses the merge reducer but received {type(incoming).__name__}",
                key=key,
            )
        if current is _MISSING or current is None:
            return copy.deepcopy(dict(incoming))
        if not isinstance(current, Mapping):
            raise ReduceError(
                f"Key '{key}' uses the merge reducer but holds {type(current).__name__}", key=key
            )
        return deep_merge(current, incoming)

    if policy == ReducerPolicy.APPEND:
        if not _is_sequence(incoming):
            raise ReduceError(
                f"Key '{key}' uses the append reducer but received {type(incoming).__name__}",
                key=key,
            )
        if current is _MISSING or current is None:
            return copy.deepcopy(list(incoming))
        if not _is_sequence(current):
            raise ReduceError(
                f"Key '{key}' uses the append reducer but holds {type(current).__name__}", key=key
            )
        return [*copy.deepcopy(list(current)), *copy.deepcopy(list(incoming))]

    if policy == ReducerPolicy.SUM:
        if not _is_number(incoming):
            raise ReduceError(
                f"Key '{key}' uses the sum reducer but received {type(incoming).__name__}",
                key=key,
            )
        if current is _MISSING or current is None:
            return incoming
        if not _is_number(current):
            raise ReduceError(
                f"Key '{key}' uses the sum reducer but holds {type(current).__name__}", key=key
            )
        return current + incoming

    raise ReduceError(f"Unknown reducer policy {policy!r} for key '{key}'", key=key)


class StateStore:
    """
    Shared execution state.

    Example:
        store = StateStore(reducers={"findings": ReducerPolicy.APPEND})
        store.reduce("findings", ["typo in README"])
        await store.commit({"findings": ["unused import"], "verdict": "comment"})
        store.snapshot()["findings"]  # ['typo in README', 'unused import']
    """

    def __init__(
        self,
        reducers: Mapping[str, ReducerPolicy] | None = None,
        initial: Mapping[str, Any] | None = None,
        max_history: int = 1000,
    ):
        self._reducers = MappingProxyType(
            {key: ReducerPolicy(policy) for key, policy in (reducers or {}).items()}
        )
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._history: list[StateChange] = []
        self._max_history = max_history
        self._version = 0

        if initial:
            self.apply(initial, origin="input")

    @property
    def reducers(self) -> Mapping[str, ReducerPolicy]:
        return self._reducers

    @property
    def version(self) -> int:
        return self._version

    @property
    def history(self) -> list[StateChange]:
        return list(self._history)

    def policy_for(self, key: str) -> ReducerPolicy:
        return self._reducers.get(key, ReducerPolicy.REPLACE)

    def reduce(self, key: str, value: Any, origin: str = "main") -> Any:
        """Reduce one incoming value into `key` and return the new value."""
        self.apply({key: value}, origin=origin)
        return copy.deepcopy(self._data[key])

    def apply(self, delta: Mapping[str, Any], origin: str = "main") -> None:
        """
        Reduce every key of `delta`. Either all keys are applied or none:
        new values are computed before any of them is stored.
        """
        staged: dict[str, Any] = {}
        for key, value in delta.items():
            current = staged.get(key, self._data.get(key, _MISSING))
            staged[key] = reduce_value(self.policy_for(key), key, current, value)

        for key, new_value in staged.items():
            self._version += 1
            self._record(
                StateChange(
                    key=key,
                    policy=self.policy_for(key),
                    old_value=self._data.get(key),
                    new_value=new_value,
                    origin=origin,
                    version=self._version,
                )
            )
            self._data[key] = new_value

    async def commit(self, delta: Mapping[str, Any], origin: str = "main") -> None:
        """Apply a delta as one serialized reduction."""
        async with self._lock:
            self.apply(delta, origin=origin)
        logger.debug(f"Reduced keys {sorted(delta)} from {origin} (version {self._version})")

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only copy of the current state."""
        return MappingProxyType(copy.deepcopy(self._data))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def fork(self, origin: str) -> "WorkingSnapshot":
        """Start a branch-private working snapshot seeded from the current state."""
        return WorkingSnapshot(self._reducers, self._data, origin=origin)

    def _record(self, change: StateChange) -> None:
        self._history.append(change)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]


class WorkingSnapshot:
    """
    Branch-private state.

    Reads see the seed state plus the branch's own writes. Each write is also
    journaled verbatim, so absorbing a branch into its parent replays the
    branch's raw deltas (not its locally reduced values) in arrival order.
    """

    def __init__(self, reducers: Mapping[str, ReducerPolicy], seed: Mapping[str, Any], origin: str):
        self.origin = origin
        self._local = StateStore(reducers)
        self._local._data = copy.deepcopy(dict(seed))
        self._journal: list[dict[str, Any]] = []
        self.discarded = False

    @property
    def journal(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(delta) for delta in self._journal]

    def snapshot(self) -> Mapping[str, Any]:
        return self._local.snapshot()

    def apply(self, delta: Mapping[str, Any], origin: str | None = None) -> None:
        self._local.apply(delta, origin=origin or self.origin)
        self._journal.append(copy.deepcopy(dict(delta)))

    async def commit(self, delta: Mapping[str, Any], origin: str | None = None) -> None:
        self.apply(delta, origin=origin)

    def fork(self, origin: str) -> "WorkingSnapshot":
        return WorkingSnapshot(self._local.reducers, self._local._data, origin=origin)

    def discard(self) -> None:
        """Drop unreduced writes of a cancelled or ignored branch."""
        self._journal.clear()
        self.discarded = True


async def absorb(target: StateStore | WorkingSnapshot, branch: WorkingSnapshot) -> None:
    """Reduce a finished branch's journal into `target`, preserving arrival order."""
    for delta in branch.journal:
        await target.commit(delta, origin=branch.origin)
