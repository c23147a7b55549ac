"""
Retry/Timeout Supervisor - wraps node executor calls with deadlines and backoff.

Each attempt runs under the node-level deadline, if one is set. A retryable
failure (per the node's RetryPolicy) sleeps for the policy's backoff delay and
tries again; anything else, or the last allowed attempt, propagates to the
scheduler, which reroutes the branch to its error handler or fails the run.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from graphflow.errors import StepTimeout, WorkflowError
from graphflow.graph.node import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Used when neither the node nor the workflow declares a policy
NO_RETRY = RetryPolicy(max_attempts=1)


async def with_deadline(
    call: Callable[[], Awaitable[T]],
    timeout: float | None,
    node_id: str | None = None,
) -> T:
    """Run `call()` and convert an expired deadline into a StepTimeout."""
    if timeout is None:
        return await call()
    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except TimeoutError as e:
        raise StepTimeout(f"Call exceeded its {timeout:g}s deadline", node_id=node_id) from e


class RetrySupervisor:
    """
    Runs a node call with retries.

    Example:
        supervisor = RetrySupervisor()
        delta = await supervisor.run(
            node_id="review",
            policy=RetryPolicy(max_attempts=4, initial_delay=0.5),
            call=lambda attempt: invoke_agent(attempt),
            timeout=30,
        )
    """

    def __init__(self, default_policy: RetryPolicy | None = None, rng: random.Random | None = None):
        self.default_policy = default_policy or NO_RETRY
        self._rng = rng or random.Random()

    def resolve_policy(self, *candidates: RetryPolicy | None) -> RetryPolicy:
        """First declared policy among node, workflow, engine default."""
        for policy in candidates:
            if policy is not None:
                return policy
        return self.default_policy

    async def run(
        self,
        node_id: str,
        policy: RetryPolicy,
        call: Callable[[int], Awaitable[T]],
        timeout: float | None = None,
        on_retry: Callable[[WorkflowError, int, float], Any] | None = None,
    ) -> T:
        """
        Call `call(attempt)` until it succeeds or the policy gives up.

        Raises:
            WorkflowError: the last failure, with `attempts` set
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await with_deadline(lambda: call(attempt), timeout, node_id=node_id)
            except WorkflowError as e:
                if e.node_id is None:
                    e.node_id = node_id
                e.attempts = attempt
                if not policy.should_retry(e, attempt):
                    if attempt > 1:
                        logger.error(
                            f"   ✗ '{node_id}' failed after {attempt} attempts: {e.message}",
                            extra={"event": "retry_exhausted", "node_id": node_id},
                        )
                    raise

                delay = policy.delay_for(attempt, self._rng)
                logger.warning(
                    f"   ↻ '{node_id}' attempt {attempt}/{policy.max_attempts} failed "
                    f"({e.kind.value}): retrying in {delay:.2f}s",
                    extra={"event": "retry", "node_id": node_id, "attempt": attempt},
                )
                if on_retry is not None:
                    on_retry(e, attempt, delay)
                await asyncio.sleep(delay)
