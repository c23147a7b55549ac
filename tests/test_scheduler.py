"""
Tests for WorkflowScheduler end-to-end execution.

Covers:
- Step execution and delta reduction
- Retries with increasing backoff, then rerouting to the error handler
- Workflow-level error handler, fatal errors, step guard
- Validation failures and cancellation reported on the ExecutionResult
"""

import asyncio
from collections.abc import Mapping
from typing import Any
from unittest.mock import AsyncMock

import pytest

from graphflow.config import EngineConfig
from graphflow.errors import AgentInvocationError, ErrorKind
from graphflow.graph.edge import EdgeSpec, WorkflowDefinition
from graphflow.graph.node import (
    ErrorHandlerNode,
    RetryPolicy,
    RouterNode,
    StepNode,
    TerminalNode,
)
from graphflow.runtime.agent import (
    AgentInstruction,
    AgentInvoker,
    CancellationToken,
    FunctionAgent,
)
from graphflow.runtime.branch import BranchStatus
from graphflow.runtime.scheduler import RunStatus, WorkflowScheduler


class ScriptedAgent(AgentInvoker):
    """Returns a fixed delta per node; nodes in `transient` fail that many times first."""

    def __init__(
        self,
        outputs: dict[str, Any] | None = None,
        transient: dict[str, int] | None = None,
        permanent: tuple[str, ...] = (),
    ):
        self.outputs = outputs or {}
        self.transient = dict(transient or {})
        self.permanent = permanent
        self.calls: list[tuple[str, int]] = []
        self.instructions: list[AgentInstruction] = []

    async def invoke(
        self,
        instruction: AgentInstruction,
        snapshot: Mapping[str, Any],
        cancel_token: CancellationToken,
    ) -> Mapping[str, Any]:
        node_id = instruction.node_id
        self.calls.append((node_id, instruction.attempt))
        self.instructions.append(instruction)
        if node_id in self.permanent:
            raise AgentInvocationError(f"{node_id} rejected the request")
        if self.transient.get(node_id, 0) > 0:
            self.transient[node_id] -= 1
            raise AgentInvocationError(f"{node_id} is overloaded", transient=True)
        return self.outputs.get(node_id, {})


@pytest.fixture
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


def review_workflow(workflow_handler: str | None = None, **review_kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="pr-review",
        error_handler=workflow_handler,
        entry_node="fetch",
        nodes=[
            StepNode(id="fetch", instruction={"task": "fetch diff"}),
            StepNode(id="review", instruction={"task": "review"}, **review_kwargs),
            TerminalNode(id="done"),
            ErrorHandlerNode(id="recover", error_key="failure"),
            TerminalNode(id="failed", status="failed"),
        ],
        edges=[
            EdgeSpec(source="fetch", target="review"),
            EdgeSpec(source="review", target="done"),
            EdgeSpec(source="recover", target="failed"),
        ],
        reducers={"findings": "append"},
    )


@pytest.mark.asyncio
async def test_steps_reduce_deltas_in_order():
    agent = ScriptedAgent(
        outputs={
            "fetch": {"diff": "+1 -1", "findings": ["fetched"]},
            "review": {"findings": ["typo"], "verdict": "comment"},
        }
    )
    result = await WorkflowScheduler(agent=agent).execute(review_workflow(), input_data={"pr": 1})

    assert result.success
    assert result.verdict == "completed"
    assert result.terminal_node == "done"
    assert result.path == ("fetch", "review", "done")
    assert result.state["findings"] == ["fetched", "typo"]
    assert result.state["pr"] == 1
    assert agent.instructions[0].payload == {"task": "fetch diff"}
    assert agent.instructions[0].branch_id == "main"


@pytest.mark.asyncio
async def test_output_key_wraps_result():
    agent = ScriptedAgent(outputs={"review": {"critical": 0}})
    result = await WorkflowScheduler(agent=agent).execute(review_workflow(output_key="review"))

    assert result.state["review"] == {"critical": 0}
    assert "critical" not in result.state


@pytest.mark.asyncio
async def test_transient_failures_retry_then_route_to_error_handler(fast_sleep):
    agent = ScriptedAgent(transient={"review": 10})
    policy = RetryPolicy(max_attempts=3, initial_delay=1.0, jitter=0.0)
    result = await WorkflowScheduler(agent=agent).execute(
        review_workflow(retry=policy, error_handler="recover")
    )

    assert [c for c in agent.calls if c[0] == "review"] == [("review", 1), ("review", 2), ("review", 3)]
    delays = [c.args[0] for c in fast_sleep.await_args_list]
    assert delays == [1.0, 2.0]

    assert result.terminal_node == "failed"
    assert result.status == RunStatus.FAILED
    assert result.error is None
    assert result.path == ("fetch", "review", "recover", "failed")
    assert result.state["failure"] == {
        "kind": "agent_transient",
        "message": "review is overloaded",
        "node_id": "review",
        "attempts": 3,
    }


@pytest.mark.asyncio
async def test_transient_failure_recovers_within_budget(fast_sleep):
    agent = ScriptedAgent(transient={"review": 1}, outputs={"review": {"verdict": "approve"}})
    result = await WorkflowScheduler(agent=agent).execute(
        review_workflow(retry=RetryPolicy(max_attempts=2, jitter=0.0), error_handler="recover")
    )

    assert result.success
    assert result.state["verdict"] == "approve"
    assert fast_sleep.await_count == 1


@pytest.mark.asyncio
async def test_unhandled_failure_fails_run_with_node_id():
    agent = ScriptedAgent(permanent=("review",))
    result = await WorkflowScheduler(agent=agent).execute(review_workflow())

    assert result.status == RunStatus.FAILED
    assert result.error.kind == ErrorKind.AGENT_PERMANENT
    assert result.error.node_id == "review"
    assert result.branches[0].status == BranchStatus.FAILED


@pytest.mark.asyncio
async def test_workflow_level_error_handler():
    agent = ScriptedAgent(permanent=("review",))
    result = await WorkflowScheduler(agent=agent).execute(review_workflow(workflow_handler="recover"))

    assert result.terminal_node == "failed"
    assert result.state["failure"]["kind"] == "agent_permanent"


@pytest.mark.asyncio
async def test_error_handler_with_instruction_calls_agent():
    definition = WorkflowDefinition(
        id="wf",
        entry_node="work",
        nodes=[
            StepNode(id="work", error_handler="recover"),
            ErrorHandlerNode(id="recover", instruction={"task": "explain failure"}),
            TerminalNode(id="done"),
        ],
        edges=[EdgeSpec(source="work", target="done"), EdgeSpec(source="recover", target="done")],
    )
    seen: dict[str, Any] = {}

    async def agent(instruction, snapshot, cancel_token):
        if instruction.node_id == "work":
            raise RuntimeError("disk full")
        seen.update(snapshot)
        return {"explanation": "out of space"}

    result = await WorkflowScheduler(agent=FunctionAgent(agent)).execute(definition)

    assert result.success
    assert seen["error"]["kind"] == "agent_permanent"
    assert "disk full" in seen["error"]["message"]
    assert result.state["explanation"] == "out of space"


@pytest.mark.asyncio
async def test_reduce_error_is_fatal_even_with_handler():
    agent = ScriptedAgent(outputs={"review": {"findings": "not a list"}})
    result = await WorkflowScheduler(agent=agent).execute(review_workflow(error_handler="recover"))

    assert result.status == RunStatus.FAILED
    assert result.error.kind == ErrorKind.REDUCE
    assert result.error.node_id == "review"
    assert "failure" not in result.state


@pytest.mark.asyncio
async def test_eval_error_routes_to_error_handler():
    definition = WorkflowDefinition(
        id="wf",
        entry_node="route",
        nodes=[
            RouterNode(id="route", error_handler="recover"),
            TerminalNode(id="done"),
            ErrorHandlerNode(id="recover"),
        ],
        edges=[EdgeSpec(source="route", target="done", condition="count > 'three'")],
    )
    result = await WorkflowScheduler().execute(definition, input_data={"count": 3})

    assert result.terminal_node == "recover"
    assert result.state["error"]["kind"] == "eval_error"


@pytest.mark.asyncio
async def test_step_guard_stops_router_loop():
    definition = WorkflowDefinition(
        id="loop",
        entry_node="spin",
        nodes=[RouterNode(id="spin"), TerminalNode(id="done")],
        edges=[
            EdgeSpec(source="spin", target="spin", condition="true"),
            EdgeSpec(source="spin", target="done", default=True),
        ],
        max_steps=5,
    )
    result = await WorkflowScheduler().execute(definition)

    assert result.status == RunStatus.FAILED
    assert result.error.kind == ErrorKind.MAX_STEPS
    assert len(result.path) == 5


@pytest.mark.asyncio
async def test_engine_config_step_guard_applies_without_definition_limit():
    definition = WorkflowDefinition(
        id="loop",
        entry_node="spin",
        nodes=[RouterNode(id="spin"), TerminalNode(id="done")],
        edges=[
            EdgeSpec(source="spin", target="spin", condition="true"),
            EdgeSpec(source="spin", target="done", default=True),
        ],
    )
    result = await WorkflowScheduler(config=EngineConfig(max_steps_per_branch=3)).execute(definition)

    assert result.error.kind == ErrorKind.MAX_STEPS
    assert result.steps_executed == 3


@pytest.mark.asyncio
async def test_invalid_definition_reported_as_validation_error():
    definition = WorkflowDefinition(
        id="broken",
        entry_node="missing",
        nodes=[TerminalNode(id="done")],
    )
    agent = ScriptedAgent()
    result = await WorkflowScheduler(agent=agent).execute(definition)

    assert result.status == RunStatus.FAILED
    assert result.error.kind == ErrorKind.VALIDATION
    assert "Entry node 'missing' not found" in result.error.message
    assert agent.calls == []


@pytest.mark.asyncio
async def test_step_timeout_from_node():
    never = asyncio.Event()

    async def agent(instruction, snapshot, cancel_token):
        if instruction.node_id == "review":
            await never.wait()
        return {}

    definition = review_workflow(timeout="20ms")
    result = await WorkflowScheduler(agent=FunctionAgent(agent)).execute(definition)

    assert result.error.kind == ErrorKind.STEP_TIMEOUT
    assert result.error.node_id == "review"
    assert result.path == ("fetch", "review")


@pytest.mark.asyncio
async def test_cancel_during_step_discards_partial_result():
    started = asyncio.Event()
    tokens: list[CancellationToken] = []

    async def agent(instruction, snapshot, cancel_token):
        if instruction.node_id == "fetch":
            return {"diff": "+1"}
        tokens.append(cancel_token)
        started.set()
        await asyncio.Event().wait()
        return {"verdict": "never"}

    run = WorkflowScheduler(agent=FunctionAgent(agent)).start(review_workflow())
    await asyncio.wait_for(started.wait(), timeout=2.0)
    run.cancel()
    result = await run.result()

    assert result.status == RunStatus.CANCELLED
    assert result.error.node_id == "review"
    assert dict(result.state) == {"diff": "+1"}
    assert tokens[0].cancelled


@pytest.mark.asyncio
async def test_missing_agent_is_a_permanent_failure():
    result = await WorkflowScheduler().execute(review_workflow())

    assert result.error.kind == ErrorKind.AGENT_PERMANENT
    assert result.error.node_id == "fetch"


@pytest.mark.asyncio
async def test_result_to_dict_is_serializable():
    agent = ScriptedAgent(outputs={"review": {"verdict": "comment"}})
    result = await WorkflowScheduler(agent=agent).execute(review_workflow())

    data = result.to_dict()
    assert data["status"] == "completed"
    assert data["state"]["verdict"] == "comment"
    assert data["branches"][0]["branch_id"] == "main"


@pytest.mark.asyncio
async def test_cancel_before_first_step_still_returns_result():
    agent = ScriptedAgent()
    run = WorkflowScheduler(agent=agent).start(review_workflow())
    assert run.cancel("changed my mind") is True

    result = await run.result()

    assert result.status == RunStatus.CANCELLED
    assert result.error.kind == ErrorKind.CANCELLED
    assert result.error.message == "changed my mind"
    assert dict(result.state) == {}
    assert result.path == ()
    assert agent.calls == []
    assert run.cancel() is False
