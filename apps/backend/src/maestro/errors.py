"""Exception hierarchy for the orchestration core."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for all orchestration faults."""

    error_type: str = "orchestration_error"

    def __init__(self, message: str, error_type: str | None = None):
        if error_type is not None:
            self.error_type = error_type
        super().__init__(message)


class NotFoundError(OrchestrationError):
    """Raised when an execution, checkpoint or approval does not exist."""

    error_type = "not_found"


class InvalidStateTransitionError(OrchestrationError):
    """Raised when pause/resume/cancel is called from an illegal status."""

    error_type = "invalid_state"

    def __init__(self, execution_id: str, current: str, operation: str):
        self.execution_id = execution_id
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} execution {execution_id} in status {current}")


class PlanningError(OrchestrationError):
    """The planner produced no usable plan."""

    error_type = "planning_failed"


class CircularDependencyError(PlanningError):
    """The step graph contains a cycle; no batches can be derived."""

    error_type = "circular_dependency"

    def __init__(self, remaining: list[str]):
        self.remaining = remaining
        super().__init__(
            f"Circular dependency detected in execution plan involving steps: {', '.join(remaining)}"
        )


class StepExecutionError(OrchestrationError):
    """One agent invocation failed."""

    error_type = "agent_error"


class QualityGateRejection(OrchestrationError):
    """A step output failed validation or evaluation."""

    error_type = "quality_rejected"


class ApprovalRejectedError(OrchestrationError):
    """A human rejected the gated action."""

    error_type = "approval_rejected"


class ApprovalTimeoutError(OrchestrationError):
    """No decision arrived before the approval timeout elapsed.

    Distinct from rejection: the action was neither approved nor denied.
    """

    error_type = "approval_timeout"

    def __init__(self, approval_id: str, timeout_seconds: float):
        self.approval_id = approval_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Approval {approval_id} timed out after {timeout_seconds:g}s")


class AlreadyResolvedError(OrchestrationError):
    """approve/reject called on a request that is no longer pending."""

    error_type = "already_resolved"


class RateLimitExceededError(OrchestrationError):
    """An integration call budget is exhausted."""

    error_type = "rate_limited"

    def __init__(self, integration: str, operation: str, retry_after: int | None = None):
        self.integration = integration
        self.operation = operation
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {integration}:{operation}")



class RecoveryError(OrchestrationError):
    """A RUNNING execution left by a previous process could not be resumed."""

    error_type = "recovery_failed"
