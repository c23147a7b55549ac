"""
Node Protocol - The typed steps a workflow graph is built from.

Every node kind is its own pydantic model, and `Node` is the closed,
discriminated union of all of them (tagged by `kind`). The scheduler matches
on the concrete class, so adding a kind means adding a model here and a
branch in the scheduler's dispatch.

Node kinds:
- step: invoke the external agent with an instruction payload
- parallel: fan out into one branch per entry node
- join: wait for the branches of its split according to a JoinSpec
- router: follow the first outgoing edge whose condition holds
- approval: suspend until a human approves/denies, or the timeout fires
- error_handler: where a failed branch is rerouted after its retries run out
- terminal: end the run with an explicit verdict
"""

import random
import re
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, Field, model_validator

from graphflow.errors import ErrorKind, WorkflowError

# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> Any:
    """
    Convert "500ms", "30s", "5m", "2h" or a number of seconds to float seconds.

    Anything else is returned unchanged so pydantic reports the type error.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        return float(amount) * _UNIT_SECONDS[unit or "s"]
    return value


Duration = Annotated[float, BeforeValidator(parse_duration), Field(ge=0)]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class BackoffStrategy(StrEnum):
    """Shape of the delay between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """
    Retry budget for a node.

    Attempts are counted from 1. With jitter at most 1.0, exponential delays
    stay strictly increasing until they reach max_delay.
    """

    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: Duration = 1.0
    max_delay: Duration = 30.0
    jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Proportional jitter bound")
    retry_on: tuple[ErrorKind, ...] = (ErrorKind.AGENT_TRANSIENT, ErrorKind.STEP_TIMEOUT)

    model_config = {"frozen": True}

    def should_retry(self, error: WorkflowError, attempt: int) -> bool:
        """Whether another attempt may follow failed attempt number `attempt`."""
        return attempt < self.max_attempts and error.retryable and error.kind in self.retry_on

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after failed attempt number `attempt`."""
        if self.backoff == BackoffStrategy.FIXED:
            base = self.initial_delay
        elif self.backoff == BackoffStrategy.LINEAR:
            base = self.initial_delay * attempt
        else:
            base = self.initial_delay * (2 ** (attempt - 1))

        if self.jitter:
            base += base * (rng or random).uniform(0.0, self.jitter)
        return min(base, self.max_delay)


class JoinStrategy(StrEnum):
    """How many spawned branches a join waits for."""

    ALL = "all"
    ANY = "any"
    N_OF_M = "n_of_m"
    MAJORITY = "majority"


class RemainingBranchPolicy(StrEnum):
    """What happens to branches still running once a join is satisfied."""

    CANCEL = "cancel"
    DETACH = "detach"  # keep running, results ignored


class JoinSpec(BaseModel):
    """Completion rule attached to a join node."""

    strategy: JoinStrategy = JoinStrategy.ALL
    n: int | None = Field(default=None, ge=1, description="Required branches for n_of_m")
    timeout: Duration | None = None
    remaining: RemainingBranchPolicy = RemainingBranchPolicy.CANCEL

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_n(self) -> "JoinSpec":
        if self.strategy == JoinStrategy.N_OF_M and self.n is None:
            raise ValueError("n_of_m join requires 'n'")
        return self

    def required(self, spawned: int) -> int:
        """Number of completed branches that satisfies the join."""
        if self.strategy == JoinStrategy.ALL:
            return spawned
        if self.strategy == JoinStrategy.ANY:
            return min(1, spawned)
        if self.strategy == JoinStrategy.MAJORITY:
            return spawned // 2 + 1
        return min(self.n or spawned, spawned)


class ApprovalTimeoutAction(StrEnum):
    """Outcome applied when an approval gate expires."""

    APPROVE = "approve"
    DENY = "deny"
    ESCALATE = "escalate"
    FAIL = "fail"


class TerminalStatus(StrEnum):
    """Verdict recorded by a terminal node."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Node variants
# ---------------------------------------------------------------------------


class BaseNode(BaseModel):
    """Fields shared by every node kind."""

    id: str
    name: str = ""
    description: str = ""
    error_handler: str | None = Field(
        default=None, description="Node to reroute to once retries are exhausted"
    )
    retry: RetryPolicy | None = None

    model_config = {"extra": "allow", "frozen": True}

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def references(self) -> list[tuple[str, str]]:
        """(field, node_id) pairs this node's configuration points at."""
        if self.error_handler:
            return [("error_handler", self.error_handler)]
        return []


class StepNode(BaseNode):
    """Invoke the agent collaborator with `instruction` and reduce the returned delta."""

    kind: Literal["step"] = "step"
    agent: str | None = None
    instruction: dict[str, Any] = Field(default_factory=dict)
    timeout: Duration | None = Field(default=None, description="Deadline for one agent call")
    output_key: str | None = Field(
        default=None, description="Write the agent result under this key instead of merging"
    )


class ParallelNode(BaseNode):
    """Spawn one branch per entry node, in registration order."""

    kind: Literal["parallel"] = "parallel"
    branches: tuple[str, ...] = Field(min_length=1)
    join: str

    def references(self) -> list[tuple[str, str]]:
        refs = super().references()
        refs.extend(("branches", entry) for entry in self.branches)
        refs.append(("join", self.join))
        return refs


class JoinNode(BaseNode):
    """Convergence point for the branches spawned by `split`."""

    kind: Literal["join"] = "join"
    split: str
    spec: JoinSpec = Field(default_factory=JoinSpec)

    def references(self) -> list[tuple[str, str]]:
        return [*super().references(), ("split", self.split)]


class RouterNode(BaseNode):
    """Pure routing: evaluates outgoing edge conditions in priority order."""

    kind: Literal["router"] = "router"


class ApprovalNode(BaseNode):
    """Human approval gate."""

    kind: Literal["approval"] = "approval"
    message: str = ""
    approvers: tuple[str, ...] = Field(
        default=(), description="Eligible approver identities; empty means anyone"
    )
    timeout: Duration | None = None
    on_timeout: ApprovalTimeoutAction = ApprovalTimeoutAction.DENY
    auto_approve: str | None = Field(
        default=None, description="Expression that approves on entry without suspending"
    )
    on_approve: str
    on_deny: str
    on_escalate: str | None = None
    output_key: str | None = None

    @model_validator(mode="after")
    def _check_escalation(self) -> "ApprovalNode":
        if self.on_timeout == ApprovalTimeoutAction.ESCALATE and not self.on_escalate:
            raise ValueError(f"Approval node '{self.id}' escalates on timeout but has no on_escalate")
        return self

    @property
    def result_key(self) -> str:
        return self.output_key or self.id

    def references(self) -> list[tuple[str, str]]:
        refs = super().references()
        refs.append(("on_approve", self.on_approve))
        refs.append(("on_deny", self.on_deny))
        if self.on_escalate:
            refs.append(("on_escalate", self.on_escalate))
        return refs


class ErrorHandlerNode(BaseNode):
    """
    Receives the failed branch. The originating error is written to
    `error_key` before the handler runs; `instruction`, if present, is sent to
    the agent like a step.
    """

    kind: Literal["error_handler"] = "error_handler"
    agent: str | None = None
    instruction: dict[str, Any] | None = None
    timeout: Duration | None = None
    error_key: str = "error"
    output_key: str | None = None


class TerminalNode(BaseNode):
    """Ends the traversal with an explicit verdict."""

    kind: Literal["terminal"] = "terminal"
    status: TerminalStatus = TerminalStatus.COMPLETED


Node = Annotated[
    StepNode | ParallelNode | JoinNode | RouterNode | ApprovalNode | ErrorHandlerNode | TerminalNode,
    Field(discriminator="kind"),
]
