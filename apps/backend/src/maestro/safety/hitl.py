"""Human-in-the-loop approval gate for critical or unclear step actions."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from ..errors import ApprovalTimeoutError, NotFoundError
from ..log import get_logger
from ..orchestration.schema import (
    ApprovalAction,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    EstimatedImpact,
)
from ..orchestration.state import ApprovalStore

logger = get_logger(__name__)

CRITICAL_ACTION_MARKERS = ("DELETE", "BULK_SEND", "PAYMENT", "PUBLISH", "DEPLOY")


def is_critical(action: ApprovalAction) -> bool:
    action_type = action.type.upper()
    return any(marker in action_type for marker in CRITICAL_ACTION_MARKERS)


class HITLGate:
    """Creates approval requests and waits for a human decision on them.

    Waiting polls the persisted status, so a decision recorded by another
    process (or another API worker) is picked up.
    """

    def __init__(
        self,
        store: ApprovalStore,
        poll_interval: float = 2.0,
        timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def is_critical(self, action: ApprovalAction) -> bool:
        return is_critical(action)

    def is_ambiguous(self, action: ApprovalAction) -> bool:
        # Hook for ambiguity detection; nothing is treated as ambiguous yet.
        return False

    def should_ask_user(self, action: ApprovalAction) -> bool:
        return self.is_critical(action) or self.is_ambiguous(action)

    def create_approval_request(
        self,
        execution_id: str,
        step_id: str,
        action: ApprovalAction,
        reason: str,
        estimated_impact: Optional[EstimatedImpact] = None,
        approval_type: Optional[ApprovalType] = None,
    ) -> ApprovalRequest:
        if approval_type is None:
            approval_type = (
                ApprovalType.CRITICAL_ACTION if self.is_critical(action) else ApprovalType.MANUAL_REVIEW
            )
        approval = ApprovalRequest(
            execution_id=execution_id,
            step_id=step_id,
            type=approval_type,
            action=action,
            reason=reason,
            estimated_impact=estimated_impact,
        )
        self.store.insert(approval)
        logger.info(
            "Approval %s requested for step %s (%s): %s",
            approval.id, step_id, approval_type.value, reason,
        )
        return approval

    async def wait_for_approval(self, approval_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the request is resolved. True when approved."""
        timeout = self.timeout if timeout is None else timeout
        deadline = self._clock() + timeout

        while True:
            approval = self.store.get(approval_id)
            if approval is None:
                raise NotFoundError(f"Approval {approval_id} not found")
            if approval.status == ApprovalStatus.APPROVED:
                return True
            if approval.status == ApprovalStatus.REJECTED:
                return False
            if self._clock() >= deadline:
                raise ApprovalTimeoutError(approval_id, timeout)
            await self._sleep(self.poll_interval)

    def approve(self, approval_id: str, user_id: str) -> ApprovalRequest:
        approval = self.store.resolve(approval_id, ApprovalStatus.APPROVED, user_id)
        logger.info("Approval %s approved by %s", approval_id, user_id)
        return approval

    def reject(self, approval_id: str, user_id: str) -> ApprovalRequest:
        approval = self.store.resolve(approval_id, ApprovalStatus.REJECTED, user_id)
        logger.info("Approval %s rejected by %s", approval_id, user_id)
        return approval

    def get_approval(self, approval_id: str) -> ApprovalRequest:
        approval = self.store.get(approval_id)
        if approval is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        return approval

    def latest_for_step(self, execution_id: str, step_id: str) -> Optional[ApprovalRequest]:
        return self.store.latest_for_step(execution_id, step_id)

    def get_pending_approvals(self, execution_id: Optional[str] = None) -> list[ApprovalRequest]:
        return self.store.list_pending(execution_id)
