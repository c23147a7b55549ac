"""Branch - one line of traversal through the workflow graph."""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from graphflow.errors import ErrorInfo, WorkflowError
from graphflow.graph.node import TerminalStatus
from graphflow.runtime.state_store import StateStore, WorkingSnapshot


class BranchStatus(StrEnum):
    READY = "ready"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DETACHED = "detached"  # still running, results ignored


ACTIVE_STATUSES = frozenset({BranchStatus.READY, BranchStatus.RUNNING, BranchStatus.SUSPENDED})


@dataclass(frozen=True)
class BranchRecord:
    """Immutable summary of a branch, reported on the ExecutionResult."""

    branch_id: str
    parent_id: str | None
    entry_node: str
    status: BranchStatus
    path: tuple[str, ...]
    terminal_node: str | None = None
    error: ErrorInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_id": self.branch_id,
            "parent_id": self.parent_id,
            "entry_node": self.entry_node,
            "status": self.status.value,
            "path": list(self.path),
            "terminal_node": self.terminal_node,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class Branch:
    """
    Mutable traversal state of one branch.

    The main branch writes straight to the shared StateStore. Branches spawned
    by a parallel node write to their own WorkingSnapshot, which the join
    reduces into the parent once the branch is kept.
    """

    branch_id: str
    entry_node: str
    state: StateStore | WorkingSnapshot
    index: int = 0  # registration order within its split
    parent_id: str | None = None
    status: BranchStatus = BranchStatus.READY
    current_node: str | None = None
    path: list[str] = field(default_factory=list)
    steps: int = 0
    terminal_node: str | None = None
    verdict: TerminalStatus | None = None
    error: WorkflowError | None = None
    task: asyncio.Task | None = field(default=None, repr=False, compare=False)

    def mark(self, status: BranchStatus) -> None:
        """Move to `status` unless a join has already detached the branch."""
        if self.status != BranchStatus.DETACHED:
            self.status = status

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def discard(self) -> None:
        """Drop the branch's unreduced writes."""
        if isinstance(self.state, WorkingSnapshot):
            self.state.discard()

    def to_record(self) -> BranchRecord:
        return BranchRecord(
            branch_id=self.branch_id,
            parent_id=self.parent_id,
            entry_node=self.entry_node,
            status=self.status,
            path=tuple(self.path),
            terminal_node=self.terminal_node,
            error=self.error.to_info() if self.error else None,
        )
