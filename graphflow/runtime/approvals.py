"""
Approval signals for human-in-the-loop gates.

An approval gate opens an ApprovalRequest on the broker and suspends its
branch on the returned future. The outside world lists pending requests and
delivers approve/deny signals through `submit()`; the first resolution wins
and every later signal is a no-op.

Usage:

1. Gate entered: broker.open(request) -> future, branch suspends
2. Reviewer UI: broker.pending() / await broker.next_request()
3. Reviewer: broker.submit(request.id, ApprovalDecision.APPROVE, approver="alice")
4. Gate resumes with the ApprovalResult, or expires after its timeout
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ApprovalDecision(StrEnum):
    """Human decision on an approval gate."""

    APPROVE = "approve"
    DENY = "deny"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class ApprovalRequest(BaseModel):
    """Request for a human decision, created when a gate is entered."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str
    node_id: str
    branch_id: str = "main"
    message: str = ""
    approvers: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resolved_at: datetime | None = None

    model_config = {"extra": "allow"}

    def is_eligible(self, approver: str | None) -> bool:
        """Empty approver list means anyone may decide."""
        if not self.approvers:
            return True
        return approver is not None and approver in self.approvers


class ApprovalResult(BaseModel):
    """Result of a human approval decision."""

    request_id: str
    decision: ApprovalDecision
    approver: str | None = None
    comment: str | None = None

    model_config = {"extra": "allow"}


class ApprovalBroker:
    """
    Routes approval signals to suspended gates.

    One broker may serve many runs; request ids are unique.
    """

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}
        self._waiters: dict[str, asyncio.Future[ApprovalResult]] = {}
        # Ids of open requests not yet handed out by next_request()
        self._unseen: deque[str] = deque()
        self._arrived = asyncio.Event()

    def open(self, request: ApprovalRequest) -> asyncio.Future[ApprovalResult]:
        """Register a pending request and return the future its gate waits on."""
        future: asyncio.Future[ApprovalResult] = asyncio.get_running_loop().create_future()
        self._requests[request.id] = request
        self._waiters[request.id] = future
        self._unseen.append(request.id)
        self._arrived.set()
        logger.info(
            f"   ⏸ Approval requested at '{request.node_id}' (request {request.id[:8]})",
            extra={"event": "approval_requested", "node_id": request.node_id},
        )
        return future

    def get(self, request_id: str) -> ApprovalRequest | None:
        return self._requests.get(request_id)

    def pending(self, run_id: str | None = None) -> list[ApprovalRequest]:
        return [
            r
            for r in self._requests.values()
            if r.status == ApprovalStatus.PENDING and (run_id is None or r.run_id == run_id)
        ]

    async def next_request(self) -> ApprovalRequest:
        """Wait for the next request that is opened and still pending."""
        while True:
            while self._unseen:
                request = self._requests.get(self._unseen.popleft())
                if request is not None and request.status == ApprovalStatus.PENDING:
                    return request
            self._arrived.clear()
            await self._arrived.wait()

    def submit(
        self,
        request_id: str,
        decision: ApprovalDecision | str,
        approver: str | None = None,
        comment: str | None = None,
    ) -> bool:
        """
        Deliver a decision.

        Returns:
            True if this signal resolved the request; False if the request is
            unknown, already resolved or expired, or the approver is not eligible
        """
        request = self._requests.get(request_id)
        future = self._waiters.get(request_id)
        if request is None or future is None or request.status != ApprovalStatus.PENDING:
            logger.info(f"Ignoring approval signal for resolved or unknown request {request_id}")
            return False
        if future.done():
            return False
        if not request.is_eligible(approver):
            logger.warning(
                f"Approver {approver!r} is not eligible for request {request_id} "
                f"(eligible: {request.approvers})"
            )
            return False

        decision = ApprovalDecision(decision)
        request.status = (
            ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVE else ApprovalStatus.DENIED
        )
        request.resolved_at = datetime.now(UTC)
        future.set_result(
            ApprovalResult(request_id=request_id, decision=decision, approver=approver, comment=comment)
        )
        logger.info(
            f"   ▶ Approval {request_id[:8]} resolved: {request.status.value}"
            + (f" by {approver}" if approver else ""),
            extra={"event": "approval_resolved", "node_id": request.node_id},
        )
        return True

    def approve(self, request_id: str, approver: str | None = None, comment: str | None = None) -> bool:
        return self.submit(request_id, ApprovalDecision.APPROVE, approver, comment)

    def deny(self, request_id: str, approver: str | None = None, comment: str | None = None) -> bool:
        return self.submit(request_id, ApprovalDecision.DENY, approver, comment)

    def expire(self, request_id: str) -> bool:
        """Mark a still-pending request as expired. Returns False if it was already resolved."""
        request = self._requests.get(request_id)
        if request is None or request.status != ApprovalStatus.PENDING:
            return False
        request.status = ApprovalStatus.EXPIRED
        request.resolved_at = datetime.now(UTC)
        logger.warning(
            f"   ⌛ Approval {request_id[:8]} at '{request.node_id}' expired",
            extra={"event": "approval_expired", "node_id": request.node_id},
        )
        return True

    def close(self, request_id: str) -> None:
        """Forget a request once its gate has resumed or been cancelled."""
        future = self._waiters.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()
        self._requests.pop(request_id, None)
        if request_id in self._unseen:
            self._unseen.remove(request_id)

    def __len__(self) -> int:
        return len(self._requests)
