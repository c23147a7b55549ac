"""Agent Invocation interface - the engine's boundary to the agent collaborator."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any


class CancellationToken:
    """
    Cooperative cancellation signal handed to the agent collaborator.

    The engine also cancels the awaiting task, so collaborators only need
    the token to stop work they run outside the event loop.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class AgentInstruction:
    """What a step node asks the agent to do."""

    node_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    agent: str | None = None
    attempt: int = 1
    branch_id: str = "main"


class AgentInvoker(ABC):
    """
    Abstract agent collaborator - plug in any agent backend.

    Implementations return a state delta (mapping of state key to value).
    Failures must be raised as AgentInvocationError with `transient` set
    when a retry may succeed; any other exception is treated as permanent.
    """

    @abstractmethod
    async def invoke(
        self,
        instruction: AgentInstruction,
        snapshot: Mapping[str, Any],
        cancel_token: CancellationToken,
    ) -> Mapping[str, Any]:
        """Run one agent call against a read-only state snapshot."""
        raise NotImplementedError


class FunctionAgent(AgentInvoker):
    """Adapts a plain async callable `(instruction, snapshot, token) -> delta` into an invoker."""

    def __init__(
        self,
        func: Callable[[AgentInstruction, Mapping[str, Any], CancellationToken], Awaitable[Mapping[str, Any]]],
    ):
        self._func = func

    async def invoke(
        self,
        instruction: AgentInstruction,
        snapshot: Mapping[str, Any],
        cancel_token: CancellationToken,
    ) -> Mapping[str, Any]:
        return await self._func(instruction, snapshot, cancel_token)
