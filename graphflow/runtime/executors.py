"""
Node executors - one executor per node kind.

Executors never touch the shared StateStore. They receive a read-only
snapshot through an ExecutionContext and return a NodeOutcome: the delta to
reduce into state, plus the next node when the node routes itself (approval
gates). Step-like nodes leave routing to the scheduler, which evaluates the
outgoing edges against the snapshot taken after their delta was reduced.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from graphflow.errors import (
    AgentInvocationError,
    ApprovalTimeout,
    EvalError,
    JoinTimeout,
    NoMatchingRoute,
    RunCancelled,
    WorkflowError,
)
from graphflow.graph.edge import WorkflowDefinition
from graphflow.graph.expression import evaluate_condition
from graphflow.graph.node import (
    ApprovalNode,
    ApprovalTimeoutAction,
    ErrorHandlerNode,
    JoinNode,
    RemainingBranchPolicy,
    StepNode,
)
from graphflow.runtime.agent import AgentInstruction, AgentInvoker, CancellationToken
from graphflow.runtime.approvals import (
    ApprovalBroker,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
)
from graphflow.runtime.branch import Branch, BranchStatus
from graphflow.runtime.retry import RetrySupervisor

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """What an executor may see of the run it executes in."""

    run_id: str
    definition: WorkflowDefinition
    branch_id: str
    snapshot: Mapping[str, Any]


@dataclass
class NodeOutcome:
    """Result of executing one node."""

    delta: dict[str, Any] = field(default_factory=dict)
    next_node: str | None = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def select_route(
    definition: WorkflowDefinition, node_id: str, snapshot: Mapping[str, Any]
) -> str | None:
    """
    Pick the edge to follow out of `node_id`.

    Edges are tried in priority order; the first whose condition holds wins.
    The default edge is only taken when nothing else matched.

    Returns:
        The target node id, or None when the node has no outgoing edges

    Raises:
        NoMatchingRoute: edges exist but none matched and there is no default
        EvalError: a condition failed to evaluate
    """
    edges = definition.get_outgoing_edges(node_id)
    if not edges:
        return None

    fallback = None
    for edge in edges:
        if edge.default:
            fallback = fallback or edge
            continue
        if edge.condition is None:
            return edge.target
        try:
            matched = evaluate_condition(edge.condition, snapshot)
        except EvalError as e:
            e.node_id = e.node_id or node_id
            raise
        if matched:
            logger.debug(f"Edge '{edge.label}' matched: {edge.condition}")
            return edge.target

    if fallback is not None:
        logger.debug(f"No condition matched at '{node_id}', taking default edge '{fallback.label}'")
        return fallback.target

    raise NoMatchingRoute(
        f"None of {len(edges)} outgoing edge(s) matched and no default edge exists",
        node_id=node_id,
    )


# ---------------------------------------------------------------------------
# Step / error handler
# ---------------------------------------------------------------------------


class StepExecutor:
    """Invokes the agent collaborator under the Retry/Timeout Supervisor."""

    def __init__(
        self,
        agent: AgentInvoker | None,
        supervisor: RetrySupervisor,
        default_timeout: float | None = None,
    ):
        self.agent = agent
        self.supervisor = supervisor
        self.default_timeout = default_timeout

    async def execute(self, node: StepNode | ErrorHandlerNode, ctx: ExecutionContext) -> NodeOutcome:
        if self.agent is None:
            raise AgentInvocationError("No agent configured for step execution", node_id=node.id)

        policy = self.supervisor.resolve_policy(node.retry, ctx.definition.default_retry)
        timeout = node.timeout if node.timeout is not None else self.default_timeout
        payload = dict(node.instruction or {})

        async def attempt_call(attempt: int) -> Mapping[str, Any]:
            instruction = AgentInstruction(
                node_id=node.id,
                payload=payload,
                agent=node.agent,
                attempt=attempt,
                branch_id=ctx.branch_id,
            )
            token = CancellationToken()
            try:
                result = await self.agent.invoke(instruction, ctx.snapshot, token)
            except asyncio.CancelledError:
                token.cancel("step cancelled")
                raise
            except WorkflowError:
                raise
            except Exception as e:
                raise AgentInvocationError(
                    f"Agent raised {type(e).__name__}: {e}", transient=False, node_id=node.id
                ) from e
            return result

        started = time.monotonic()
        result = await self.supervisor.run(node.id, policy, attempt_call, timeout=timeout)
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"   ✓ '{node.id}' returned in {latency_ms}ms",
            extra={"event": "step_completed", "latency_ms": latency_ms},
        )

        if node.output_key:
            return NodeOutcome(delta={node.output_key: result})
        if result is None:
            return NodeOutcome()
        if not isinstance(result, Mapping):
            raise AgentInvocationError(
                f"Agent returned {type(result).__name__}, expected a mapping of state updates",
                node_id=node.id,
            )
        return NodeOutcome(delta=dict(result))


class ErrorHandlerExecutor:
    """
    Runs an error-handler node. The failure record is already in state under
    the node's `error_key`; with an instruction the handler is a regular
    agent step, without one it only routes.
    """

    def __init__(self, steps: StepExecutor):
        self.steps = steps

    async def execute(self, node: ErrorHandlerNode, ctx: ExecutionContext) -> NodeOutcome:
        error = ctx.snapshot.get(node.error_key)
        logger.info(
            f"   ⚠ Handling error at '{node.id}': "
            f"{error.get('kind') if isinstance(error, Mapping) else error}"
        )
        if node.instruction is None:
            return NodeOutcome()
        return await self.steps.execute(node, ctx)


def error_record(error: WorkflowError) -> dict[str, Any]:
    """State value written for an error handler to inspect."""
    return {**error.to_info().to_dict(), "attempts": error.attempts}


# ---------------------------------------------------------------------------
# Approval gate
# ---------------------------------------------------------------------------


class ApprovalExecutor:
    """Suspends a branch until an approve/deny signal arrives or the gate times out."""

    def __init__(self, broker: ApprovalBroker, default_timeout: float | None = 3600.0):
        self.broker = broker
        self.default_timeout = default_timeout

    async def execute(self, node: ApprovalNode, ctx: ExecutionContext) -> NodeOutcome:
        if node.auto_approve and evaluate_condition(node.auto_approve, ctx.snapshot):
            logger.info(f"   ✓ Approval '{node.id}' auto-approved: {node.auto_approve}")
            return self._outcome(
                node, ApprovalStatus.APPROVED, node.on_approve, approver="auto", request_id=None
            )

        timeout = node.timeout if node.timeout is not None else self.default_timeout
        request = ApprovalRequest(
            run_id=ctx.run_id,
            node_id=node.id,
            branch_id=ctx.branch_id,
            message=node.message,
            approvers=list(node.approvers),
            context={"workflow_id": ctx.definition.id, "node": node.display_name},
            timeout_seconds=timeout,
        )
        future = self.broker.open(request)
        try:
            result = await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            self.broker.expire(request.id)
            return self._on_timeout(node, request, timeout)
        finally:
            self.broker.close(request.id)

        if result.decision == ApprovalDecision.APPROVE:
            status, target = ApprovalStatus.APPROVED, node.on_approve
        else:
            status, target = ApprovalStatus.DENIED, node.on_deny
        return self._outcome(
            node,
            status,
            target,
            approver=result.approver,
            comment=result.comment,
            request_id=request.id,
        )

    def _on_timeout(self, node: ApprovalNode, request: ApprovalRequest, timeout: float | None) -> NodeOutcome:
        action = node.on_timeout
        if action == ApprovalTimeoutAction.FAIL:
            raise ApprovalTimeout(f"No approval decision within {timeout:g}s", node_id=node.id)
        if action == ApprovalTimeoutAction.APPROVE:
            target = node.on_approve
        elif action == ApprovalTimeoutAction.ESCALATE:
            target = node.on_escalate
        else:
            target = node.on_deny
        logger.info(f"   ⌛ Approval '{node.id}' timed out, applying '{action.value}'")
        return self._outcome(
            node, ApprovalStatus.EXPIRED, target, request_id=request.id, timeout_action=action.value
        )

    def _outcome(
        self,
        node: ApprovalNode,
        status: ApprovalStatus,
        target: str | None,
        approver: str | None = None,
        comment: str | None = None,
        request_id: str | None = None,
        timeout_action: str | None = None,
    ) -> NodeOutcome:
        record = {
            "status": status.value,
            "approved": status == ApprovalStatus.APPROVED
            or timeout_action == ApprovalTimeoutAction.APPROVE,
            "approver": approver,
            "comment": comment,
            "request_id": request_id,
        }
        if timeout_action is not None:
            record["timeout_action"] = timeout_action
        return NodeOutcome(delta={node.result_key: record}, next_node=target)


# ---------------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------------


@dataclass
class JoinOutcome:
    """Which branches a satisfied join keeps, and what happened to the rest."""

    kept: list[Branch] = field(default_factory=list)
    failed: list[Branch] = field(default_factory=list)
    cancelled: list[Branch] = field(default_factory=list)
    detached: list[Branch] = field(default_factory=list)
    ignored: list[Branch] = field(default_factory=list)
    timed_out: bool = False


class JoinExecutor:
    """
    Waits on the branches of a parallel block according to the join's spec.

    Branches are kept in completion order; branches that complete in the same
    scheduling round are ordered by registration. Once enough branches are
    kept, the still-running ones are cancelled or detached, and completed
    branches beyond the requirement are ignored.
    """

    async def wait(self, join: JoinNode, branches: list[Branch]) -> JoinOutcome:
        spec = join.spec
        required = spec.required(len(branches))
        pending: dict[asyncio.Task, Branch] = {b.task: b for b in branches if b.task is not None}
        outcome = JoinOutcome()
        completed: list[Branch] = []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + spec.timeout if spec.timeout is not None else None

        try:
            while pending and len(completed) < required:
                remaining = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    pending.keys(), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    outcome.timed_out = True
                    break

                for task in sorted(done, key=lambda t: pending[t].index):
                    branch = pending.pop(task)
                    if task.cancelled():
                        branch.status = BranchStatus.CANCELLED
                        outcome.failed.append(branch)
                    elif task.exception() is not None:
                        branch.status = BranchStatus.FAILED
                        outcome.failed.append(branch)
                    else:
                        completed.append(branch)

                if len(completed) + len(pending) < required:
                    await self._cancel(list(pending.values()))
                    outcome.cancelled.extend(pending.values())
                    self._raise_failure(join, outcome.failed)
        except asyncio.CancelledError:
            await self._cancel(list(pending.values()))
            raise

        if len(completed) < required:
            if not completed:
                await self._cancel(list(pending.values()))
                raise JoinTimeout(
                    f"No branch completed within {spec.timeout:g}s "
                    f"({len(branches)} spawned, {required} required)",
                    node_id=join.id,
                )
            logger.warning(
                f"   ⌛ Join '{join.id}' timed out with {len(completed)}/{required} branches, "
                f"proceeding with the completed ones"
            )

        outcome.kept = completed[:required]
        outcome.ignored = completed[required:]
        for branch in outcome.ignored:
            branch.discard()

        leftovers = list(pending.values())
        # A timed-out join cancels its stragglers whatever the policy
        if spec.remaining == RemainingBranchPolicy.DETACH and not outcome.timed_out:
            for branch in leftovers:
                branch.status = BranchStatus.DETACHED
                branch.discard()
            outcome.detached = leftovers
        else:
            await self._cancel(leftovers)
            outcome.cancelled.extend(leftovers)

        for branch in outcome.failed:
            branch.discard()
        return outcome

    async def _cancel(self, branches: list[Branch]) -> None:
        tasks = [b.task for b in branches if b.task is not None and not b.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for branch in branches:
            if branch.active:
                branch.status = BranchStatus.CANCELLED
            branch.discard()

    def _raise_failure(self, join: JoinNode, failed: list[Branch]) -> None:
        for branch in failed:
            task = branch.task
            if task is None or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                raise error
        raise RunCancelled(f"Branches of join '{join.id}' were cancelled", node_id=join.id)
