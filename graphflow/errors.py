"""
Error taxonomy for workflow execution.

Every failure the engine surfaces is a WorkflowError subclass carrying an
ErrorKind, the id of the node where it happened, and whether the Retry/Timeout
Supervisor may retry it. Runs that end abnormally report the error through an
immutable ErrorInfo record on the ExecutionResult.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of a workflow failure."""

    VALIDATION = "validation_error"
    EVAL = "eval_error"
    AGENT_TRANSIENT = "agent_transient"
    AGENT_PERMANENT = "agent_permanent"
    STEP_TIMEOUT = "step_timeout"
    JOIN_TIMEOUT = "join_timeout"
    APPROVAL_TIMEOUT = "approval_timeout"
    NO_MATCHING_ROUTE = "no_matching_route"
    REDUCE = "reduce_error"
    MAX_STEPS = "max_steps_exceeded"
    CANCELLED = "cancelled"


# Never rerouted to an error-handler node
FATAL_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.REDUCE, ErrorKind.CANCELLED})


@dataclass(frozen=True)
class ErrorInfo:
    """User-visible classification of a failed run."""

    kind: ErrorKind
    message: str
    node_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "node_id": self.node_id}


class WorkflowError(Exception):
    """Base class for all classified engine errors."""

    kind: ErrorKind = ErrorKind.AGENT_PERMANENT
    retryable: bool = False

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.attempts = 1

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_KINDS

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, message=self.message, node_id=self.node_id)

    def __str__(self) -> str:
        if self.node_id:
            return f"[{self.kind.value}] {self.message} (node '{self.node_id}')"
        return f"[{self.kind.value}] {self.message}"


class GraphValidationError(WorkflowError):
    """The workflow definition is malformed. Lists every violation found."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors)
        super().__init__(f"Invalid workflow ({len(self.errors)} problem(s)): {summary}")


class EvalError(WorkflowError):
    """An expression could not be parsed or compared operands of mismatched types."""

    kind = ErrorKind.EVAL

    def __init__(self, message: str, expression: str | None = None, node_id: str | None = None):
        self.expression = expression
        if expression is not None:
            message = f"{message} in expression {expression!r}"
        super().__init__(message, node_id=node_id)


class AgentInvocationError(WorkflowError):
    """The agent collaborator failed. Transient failures are retryable."""

    def __init__(self, message: str, transient: bool = False, node_id: str | None = None):
        super().__init__(message, node_id=node_id)
        self.transient = transient

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return ErrorKind.AGENT_TRANSIENT if self.transient else ErrorKind.AGENT_PERMANENT

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class StepTimeout(WorkflowError):
    """A single step's external call exceeded its node-level deadline."""

    kind = ErrorKind.STEP_TIMEOUT
    retryable = True


class JoinTimeout(WorkflowError):
    """A join's timeout elapsed before any branch completed."""

    kind = ErrorKind.JOIN_TIMEOUT


class ApprovalTimeout(WorkflowError):
    """An approval gate configured to fail on expiry received no signal in time."""

    kind = ErrorKind.APPROVAL_TIMEOUT


class NoMatchingRoute(WorkflowError):
    """No outgoing edge condition matched and no default edge exists."""

    kind = ErrorKind.NO_MATCHING_ROUTE


class ReduceError(WorkflowError):
    """A value did not fit the reducer policy declared for its key."""

    kind = ErrorKind.REDUCE

    def __init__(self, message: str, key: str | None = None, node_id: str | None = None):
        super().__init__(message, node_id=node_id)
        self.key = key


class MaxStepsExceeded(WorkflowError):
    """A branch executed more nodes than the configured step guard allows."""

    kind = ErrorKind.MAX_STEPS


class RunCancelled(WorkflowError):
    """The run, or the branch, was cancelled."""

    kind = ErrorKind.CANCELLED
