"""
graphflow - declarative workflow orchestration for agent pipelines.

A workflow is a graph of typed nodes (steps, parallel splits, joins, routers,
approval gates, error handlers, terminals) connected by conditional edges.
The scheduler walks the graph, calls out to an agent collaborator for step
nodes, and reduces every result into a shared state governed by per-key
reducers.

Usage:
    from graphflow import WorkflowDefinition, WorkflowScheduler, FunctionAgent

    definition = WorkflowDefinition.from_json(document)
    scheduler = WorkflowScheduler(agent=FunctionAgent(call_my_agent))
    result = await scheduler.execute(definition, input_data={"pr": 42})
"""

from graphflow.errors import (
    AgentInvocationError,
    ApprovalTimeout,
    ErrorInfo,
    ErrorKind,
    EvalError,
    GraphValidationError,
    JoinTimeout,
    MaxStepsExceeded,
    NoMatchingRoute,
    ReduceError,
    RunCancelled,
    StepTimeout,
    WorkflowError,
)
from graphflow.graph import (
    ApprovalNode,
    ApprovalTimeoutAction,
    BackoffStrategy,
    EdgeSpec,
    ErrorHandlerNode,
    JoinNode,
    JoinSpec,
    JoinStrategy,
    ParallelNode,
    RemainingBranchPolicy,
    RetryPolicy,
    RouterNode,
    StepNode,
    TerminalNode,
    TerminalStatus,
    ValidationResult,
    WorkflowDefinition,
    WorkflowValidator,
    evaluate,
    evaluate_condition,
    validate_workflow,
)
from graphflow.config import EngineConfig, get_graphflow_config
from graphflow.observability import configure_logging
from graphflow.runtime.agent import (
    AgentInstruction,
    AgentInvoker,
    CancellationToken,
    FunctionAgent,
)
from graphflow.runtime.approvals import (
    ApprovalBroker,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResult,
    ApprovalStatus,
)
from graphflow.runtime.branch import BranchRecord, BranchStatus
from graphflow.runtime.retry import RetrySupervisor
from graphflow.runtime.scheduler import (
    ExecutionResult,
    RunStatus,
    WorkflowRun,
    WorkflowScheduler,
)
from graphflow.runtime.state_store import ReducerPolicy, StateStore

__version__ = "0.1.0"

__all__ = [
    # Definition
    "WorkflowDefinition",
    "EdgeSpec",
    "StepNode",
    "ParallelNode",
    "JoinNode",
    "RouterNode",
    "ApprovalNode",
    "ErrorHandlerNode",
    "TerminalNode",
    "RetryPolicy",
    "BackoffStrategy",
    "JoinSpec",
    "JoinStrategy",
    "RemainingBranchPolicy",
    "ApprovalTimeoutAction",
    "TerminalStatus",
    "ReducerPolicy",
    # Validation and expressions
    "WorkflowValidator",
    "ValidationResult",
    "validate_workflow",
    "evaluate",
    "evaluate_condition",
    # Execution
    "WorkflowScheduler",
    "WorkflowRun",
    "ExecutionResult",
    "RunStatus",
    "BranchRecord",
    "BranchStatus",
    "StateStore",
    "RetrySupervisor",
    # Agent boundary
    "AgentInvoker",
    "AgentInstruction",
    "FunctionAgent",
    "CancellationToken",
    # Approvals
    "ApprovalBroker",
    "ApprovalRequest",
    "ApprovalResult",
    "ApprovalDecision",
    "ApprovalStatus",
    # Config and logging
    "EngineConfig",
    "get_graphflow_config",
    "configure_logging",
    # Errors
    "WorkflowError",
    "ErrorKind",
    "ErrorInfo",
    "GraphValidationError",
    "EvalError",
    "AgentInvocationError",
    "StepTimeout",
    "JoinTimeout",
    "ApprovalTimeout",
    "NoMatchingRoute",
    "ReduceError",
    "MaxStepsExceeded",
    "RunCancelled",
]
