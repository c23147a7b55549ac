"""Graph structures: Nodes, Edges, Expressions and Validation."""

from graphflow.graph.edge import EdgeSpec, WorkflowDefinition
from graphflow.graph.expression import (
    UNDEFINED,
    ExpressionEvaluator,
    compile_expression,
    evaluate,
    evaluate_condition,
)
from graphflow.graph.node import (
    ApprovalNode,
    ApprovalTimeoutAction,
    BackoffStrategy,
    ErrorHandlerNode,
    JoinNode,
    JoinSpec,
    JoinStrategy,
    Node,
    ParallelNode,
    RemainingBranchPolicy,
    RetryPolicy,
    RouterNode,
    StepNode,
    TerminalNode,
    TerminalStatus,
    parse_duration,
)
from graphflow.graph.validator import ValidationResult, WorkflowValidator, validate_workflow

__all__ = [
    # Definition
    "EdgeSpec",
    "WorkflowDefinition",
    # Nodes
    "Node",
    "StepNode",
    "ParallelNode",
    "JoinNode",
    "RouterNode",
    "ApprovalNode",
    "ErrorHandlerNode",
    "TerminalNode",
    # Policies
    "RetryPolicy",
    "BackoffStrategy",
    "JoinSpec",
    "JoinStrategy",
    "RemainingBranchPolicy",
    "ApprovalTimeoutAction",
    "TerminalStatus",
    "parse_duration",
    # Expressions
    "UNDEFINED",
    "ExpressionEvaluator",
    "compile_expression",
    "evaluate",
    "evaluate_condition",
    # Validation
    "ValidationResult",
    "WorkflowValidator",
    "validate_workflow",
]
