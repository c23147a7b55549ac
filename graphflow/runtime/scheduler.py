"""
Workflow Scheduler - drives a workflow definition from its entry node to a verdict.

The scheduler owns the shared StateStore and the set of branches of a run.
Each branch walks the graph one node at a time:

1. Dispatch the node to its executor with a read-only snapshot
2. Reduce the returned delta into the branch's state
3. Follow the route the node chose, or evaluate its outgoing edges

A parallel node spawns one child branch per entry as its own asyncio task
and waits on them through its join. A failure that survives the Retry/Timeout
Supervisor reroutes the branch to its error handler, or fails the branch.
A failure on the main branch fails the run.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from graphflow.config import EngineConfig
from graphflow.errors import (
    ErrorInfo,
    ErrorKind,
    MaxStepsExceeded,
    RunCancelled,
    WorkflowError,
)
from graphflow.graph.edge import WorkflowDefinition
from graphflow.graph.node import (
    ApprovalNode,
    ErrorHandlerNode,
    JoinNode,
    ParallelNode,
    RouterNode,
    StepNode,
    TerminalNode,
    TerminalStatus,
)
from graphflow.graph.validator import validate_workflow
from graphflow.observability import set_trace_context
from graphflow.runtime.agent import AgentInvoker
from graphflow.runtime.approvals import ApprovalBroker, ApprovalRequest
from graphflow.runtime.branch import Branch, BranchRecord, BranchStatus
from graphflow.runtime.executors import (
    ApprovalExecutor,
    ErrorHandlerExecutor,
    ExecutionContext,
    JoinExecutor,
    NodeOutcome,
    StepExecutor,
    error_record,
    select_route,
)
from graphflow.runtime.retry import RetrySupervisor
from graphflow.runtime.state_store import StateStore, absorb


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_VERDICT_STATUS = {
    TerminalStatus.COMPLETED: RunStatus.COMPLETED,
    TerminalStatus.FAILED: RunStatus.FAILED,
    TerminalStatus.CANCELLED: RunStatus.CANCELLED,
}


@dataclass(frozen=True)
class ExecutionResult:
    """Result of executing a workflow."""

    run_id: str
    workflow_id: str
    status: RunStatus
    state: Mapping[str, Any]
    verdict: TerminalStatus | None = None
    terminal_node: str | None = None
    error: ErrorInfo | None = None
    path: tuple[str, ...] = ()  # Node IDs traversed by the main branch
    branches: tuple[BranchRecord, ...] = ()
    steps_executed: int = 0
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "state": dict(self.state),
            "verdict": self.verdict.value if self.verdict else None,
            "terminal_node": self.terminal_node,
            "error": self.error.to_dict() if self.error else None,
            "path": list(self.path),
            "branches": [b.to_dict() for b in self.branches],
            "steps_executed": self.steps_executed,
            "duration_ms": self.duration_ms,
        }


class WorkflowRun:
    """
    Handle on one execution started by WorkflowScheduler.start().

    Example:
        run = scheduler.start(definition, {"pr": 42})
        request = await run.approvals.next_request()
        run.approve(request.id, approver="alice")
        result = await run.result()
    """

    def __init__(self, run_id: str, definition: WorkflowDefinition, approvals: ApprovalBroker):
        self.run_id = run_id
        self.definition = definition
        self.approvals = approvals
        self.status = RunStatus.PENDING
        self.store: StateStore | None = None
        self.branches: list[Branch] = []
        self.cancel_requested = False
        self.cancel_reason = ""
        self._task: asyncio.Task | None = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.pending(self.run_id)

    def approve(self, request_id: str, approver: str | None = None, comment: str | None = None) -> bool:
        return self.approvals.approve(request_id, approver, comment)

    def deny(self, request_id: str, approver: str | None = None, comment: str | None = None) -> bool:
        return self.approvals.deny(request_id, approver, comment)

    def cancel(self, reason: str = "Run cancelled") -> bool:
        """Request cancellation. Returns False if the run already finished."""
        if self._task is None or self._task.done():
            return False
        self.cancel_requested = True
        self.cancel_reason = reason
        self._task.cancel()
        return True

    async def result(self) -> ExecutionResult:
        """Wait for the run to finish. Cancelling the waiter does not cancel the run."""
        if self._task is None:
            raise RuntimeError(f"Run {self.run_id} was never started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # Cancelled before the run took its first step
            if self.cancel_requested and self._task.cancelled():
                return self._cancelled_before_start()
            raise

    def _cancelled_before_start(self) -> ExecutionResult:
        self.status = RunStatus.CANCELLED
        return ExecutionResult(
            run_id=self.run_id,
            workflow_id=self.definition.id,
            status=RunStatus.CANCELLED,
            state=MappingProxyType({}),
            error=RunCancelled(self.cancel_reason).to_info(),
        )


class WorkflowScheduler:
    """
    Executes workflow definitions.

    Example:
        scheduler = WorkflowScheduler(agent=my_agent)
        result = await scheduler.execute(definition, input_data={"pr": 42})
        if result.success:
            print(result.state["verdict"])
    """

    def __init__(
        self,
        agent: AgentInvoker | None = None,
        config: EngineConfig | None = None,
        approvals: ApprovalBroker | None = None,
        supervisor: RetrySupervisor | None = None,
    ):
        self.config = config or EngineConfig()
        self.approvals = approvals or ApprovalBroker()
        self.supervisor = supervisor or RetrySupervisor(default_policy=self.config.default_retry)
        self.steps = StepExecutor(agent, self.supervisor, self.config.default_step_timeout)
        self.error_handlers = ErrorHandlerExecutor(self.steps)
        self.approval_gates = ApprovalExecutor(self.approvals, self.config.default_approval_timeout)
        self.joins = JoinExecutor()
        self.logger = logging.getLogger(__name__)

    def start(
        self,
        definition: WorkflowDefinition,
        input_data: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> WorkflowRun:
        """Start a run in the background and return its handle. Needs a running event loop."""
        run = WorkflowRun(run_id or uuid.uuid4().hex, definition, self.approvals)
        run._task = asyncio.create_task(
            self._run(run, dict(input_data or {})),
            name=f"workflow:{definition.id}:{run.run_id[:8]}",
        )
        return run

    async def execute(
        self,
        definition: WorkflowDefinition,
        input_data: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """Run a workflow to completion."""
        run = self.start(definition, input_data, run_id)
        try:
            return await run.result()
        except asyncio.CancelledError:
            run.cancel()
            raise

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _run(self, run: WorkflowRun, input_data: dict[str, Any]) -> ExecutionResult:
        definition = run.definition
        started = time.monotonic()
        set_trace_context(run_id=run.run_id, workflow_id=definition.id, branch_id="main")
        self.logger.info(f"🚀 Starting workflow: {definition.id} (run {run.run_id[:8]})")

        main: Branch | None = None
        error: WorkflowError | None = None
        try:
            validate_workflow(definition)
            run.store = StateStore(definition.reducers, initial=input_data)
            main = Branch(branch_id="main", entry_node=definition.entry_node, state=run.store)
            run.branches.append(main)
            run.status = RunStatus.RUNNING
            await self._advance(run, main)
        except WorkflowError as e:
            error = e
        except asyncio.CancelledError:
            if not run.cancel_requested:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            error = RunCancelled(run.cancel_reason, node_id=main.current_node if main else None)
        finally:
            await self._reap(run)

        return self._finish(run, main, error, started)

    async def _reap(self, run: WorkflowRun) -> None:
        """Cancel detached and orphaned branches and discard their writes."""
        tasks = [b.task for b in run.branches if b.task is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for branch in run.branches:
            if branch.active:
                branch.status = BranchStatus.CANCELLED
            if branch.status in (BranchStatus.CANCELLED, BranchStatus.DETACHED):
                branch.discard()

    def _finish(
        self,
        run: WorkflowRun,
        main: Branch | None,
        error: WorkflowError | None,
        started: float,
    ) -> ExecutionResult:
        verdict = terminal = None
        if error is not None:
            status = RunStatus.CANCELLED if error.kind == ErrorKind.CANCELLED else RunStatus.FAILED
            self.logger.error(f"✗ Workflow {run.definition.id} {status.value}: {error}")
        else:
            verdict = main.verdict
            terminal = main.terminal_node
            status = _VERDICT_STATUS[verdict]
            self.logger.info(
                f"✓ Workflow {run.definition.id} finished at '{terminal}' ({verdict.value})"
            )

        run.status = status
        state = run.store.snapshot() if run.store is not None else MappingProxyType({})
        return ExecutionResult(
            run_id=run.run_id,
            workflow_id=run.definition.id,
            status=status,
            state=state,
            verdict=verdict,
            terminal_node=terminal,
            error=error.to_info() if error is not None else None,
            path=tuple(main.path) if main else (),
            branches=tuple(b.to_record() for b in run.branches),
            steps_executed=sum(b.steps for b in run.branches),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _advance(self, run: WorkflowRun, branch: Branch, stop_at: str | None = None) -> Branch:
        """
        Walk `branch` until it reaches a terminal node, or `stop_at` (its join).

        Raises:
            WorkflowError: an unrecovered failure; the branch is marked FAILED
        """
        definition = run.definition
        max_steps = definition.max_steps or self.config.max_steps_per_branch
        set_trace_context(branch_id=branch.branch_id)
        branch.mark(BranchStatus.RUNNING)
        branch.current_node = branch.current_node or branch.entry_node

        while True:
            node_id = branch.current_node
            if stop_at is not None and node_id == stop_at:
                branch.mark(BranchStatus.COMPLETED)
                return branch

            if branch.steps >= max_steps:
                error = MaxStepsExceeded(
                    f"Branch '{branch.branch_id}' exceeded {max_steps} steps", node_id=node_id
                )
                self._fail(branch, error)
                raise error

            node = definition.get_node(node_id)
            branch.steps += 1
            branch.path.append(node_id)
            set_trace_context(node_id=node_id)
            self.logger.info(f"▶ Step {branch.steps}: {node.display_name} ({node.kind})")

            try:
                next_id = await self._dispatch(run, branch, node)
            except WorkflowError as e:
                if e.node_id is None:
                    e.node_id = node_id
                handler_id = self._handler_for(definition, node, e)
                if handler_id is None:
                    self._fail(branch, e)
                    raise
                self.logger.warning(
                    f"   ↪ '{node_id}' failed ({e.kind.value}), routing to error handler '{handler_id}'"
                )
                handler = definition.get_node(handler_id)
                await branch.state.commit({handler.error_key: error_record(e)}, origin=branch.branch_id)
                branch.current_node = handler_id
                continue

            if next_id is None:
                branch.terminal_node = node_id
                branch.verdict = (
                    node.status if isinstance(node, TerminalNode) else TerminalStatus.COMPLETED
                )
                branch.mark(BranchStatus.COMPLETED)
                self.logger.info(f"   ✓ Branch '{branch.branch_id}' reached terminal '{node_id}'")
                return branch

            self.logger.info(f"   → {next_id}")
            branch.current_node = next_id

    async def _dispatch(self, run: WorkflowRun, branch: Branch, node: Any) -> str | None:
        """Execute one node. Returns the next node id, or None at a terminal."""
        definition = run.definition
        ctx = ExecutionContext(
            run_id=run.run_id,
            definition=definition,
            branch_id=branch.branch_id,
            snapshot=branch.state.snapshot(),
        )

        if isinstance(node, TerminalNode):
            return None

        if isinstance(node, ParallelNode):
            await self._fan_out(run, branch, node)
            return node.join

        if isinstance(node, ApprovalNode):
            branch.mark(BranchStatus.SUSPENDED)
            try:
                outcome = await self.approval_gates.execute(node, ctx)
            finally:
                branch.mark(BranchStatus.RUNNING)
            await self._commit(branch, outcome)
            return outcome.next_node

        if isinstance(node, ErrorHandlerNode):
            outcome = await self.error_handlers.execute(node, ctx)
        elif isinstance(node, StepNode):
            outcome = await self.steps.execute(node, ctx)
        elif isinstance(node, RouterNode | JoinNode):
            outcome = NodeOutcome()
        else:
            raise TypeError(f"Unsupported node type: {type(node).__name__}")

        await self._commit(branch, outcome)
        return select_route(definition, node.id, branch.state.snapshot())

    async def _commit(self, branch: Branch, outcome: NodeOutcome) -> None:
        if outcome.delta:
            await branch.state.commit(outcome.delta, origin=branch.branch_id)

    async def _fan_out(self, run: WorkflowRun, parent: Branch, node: ParallelNode) -> None:
        """Spawn one branch per entry, wait on the join, reduce kept branches in registration order."""
        join = run.definition.get_node(node.join)
        children: list[Branch] = []
        for index, entry in enumerate(node.branches):
            branch_id = f"{parent.branch_id}/{node.id}[{index}]"
            child = Branch(
                branch_id=branch_id,
                entry_node=entry,
                state=parent.state.fork(origin=branch_id),
                index=index,
                parent_id=parent.branch_id,
            )
            children.append(child)
            run.branches.append(child)

        self.logger.info(
            f"   ⑂ Fan-out: {len(children)} branches, joining at '{join.id}' "
            f"({join.spec.strategy.value})"
        )
        for child in children:
            child.task = asyncio.create_task(
                self._advance(run, child, stop_at=join.id), name=child.branch_id
            )

        outcome = await self.joins.wait(join, children)

        for child in sorted(outcome.kept, key=lambda b: b.index):
            await absorb(parent.state, child.state)

        self.logger.info(
            f"   ⑃ Join '{join.id}': kept {len(outcome.kept)}/{len(children)} branches"
            + (f", cancelled {len(outcome.cancelled)}" if outcome.cancelled else "")
            + (f", detached {len(outcome.detached)}" if outcome.detached else "")
        )

    def _handler_for(self, definition: WorkflowDefinition, node: Any, error: WorkflowError) -> str | None:
        if error.fatal or isinstance(node, ErrorHandlerNode):
            return None
        return node.error_handler or definition.error_handler

    def _fail(self, branch: Branch, error: WorkflowError) -> None:
        branch.mark(BranchStatus.FAILED)
        branch.error = error
        self.logger.error(f"   ✗ Branch '{branch.branch_id}' failed: {error}")
