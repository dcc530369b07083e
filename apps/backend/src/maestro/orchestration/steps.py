"""Per-step pipeline: preconditions, approval, agent call, quality gate."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional

from ..errors import ApprovalRejectedError, ApprovalTimeoutError, QualityGateRejection
from ..log import get_logger
from .context import ExecutionContext, step_output_key
from .events import InMemoryEventBus
from .schema import (
    ApprovalAction,
    ApprovalStatus,
    ApprovalType,
    EstimatedImpact,
    Execution,
    ExecutionStep,
    StepExecutionResult,
    StepOutput,
    StepStatus,
)

if TYPE_CHECKING:
    from ..agents.registry import AgentRegistry, BaseAgent
    from ..quality.gate import QualityGate
    from ..safety.hitl import HITLGate
    from ..safety.rate_limiter import RateLimiter

logger = get_logger(__name__)


class StepRunner:
    """Executes one step and reports the outcome as a StepExecutionResult.

    Never raises for step-local faults; those become failed results.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        hitl: HITLGate,
        quality_gate: QualityGate,
        rate_limiter: RateLimiter,
        events: InMemoryEventBus,
        max_fix_attempts: int = 2,
        max_rate_limit_retries: int = 5,
    ) -> None:
        self.registry = registry
        self.hitl = hitl
        self.quality_gate = quality_gate
        self.rate_limiter = rate_limiter
        self.events = events
        self.max_fix_attempts = max_fix_attempts
        self.max_rate_limit_retries = max_rate_limit_retries

    async def run(
        self, execution: Execution, step: ExecutionStep, context: ExecutionContext
    ) -> StepExecutionResult:
        started = time.monotonic()
        await self.events.emit(
            "step.started", execution.id, step_id=step.id, step_number=step.step_number
        )
        result = await self._run(execution, step, context)
        result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.success:
            await self.events.emit(
                "step.completed", execution.id, step_id=step.id, attempts=result.attempts
            )
        else:
            logger.warning(
                "Step %d (%s) failed [%s]: %s",
                step.step_number, step.agent_id, result.error_type, result.error,
            )
            await self.events.emit(
                "step.failed",
                execution.id,
                step_id=step.id,
                error=result.error,
                error_type=result.error_type,
            )
        return result

    async def _run(
        self, execution: Execution, step: ExecutionStep, context: ExecutionContext
    ) -> StepExecutionResult:
        missing = self._unmet_dependencies(execution, step, context)
        if missing:
            return StepExecutionResult(
                step_id=step.id,
                success=False,
                error=f"Dependencies not satisfied: {', '.join(missing)}",
                error_type="precondition_failed",
            )

        agent = self.registry.get(step.agent_id)
        if agent is None:
            return StepExecutionResult(
                step_id=step.id,
                success=False,
                error=f"Unknown agent: {step.agent_id}",
                error_type="agent_error",
            )

        if step.action is not None and self.hitl.should_ask_user(step.action):
            denied = await self._await_approval(execution, step)
            if denied is not None:
                return denied

        return await self._execute_with_quality_gate(execution, step, agent, context)

    def _unmet_dependencies(
        self, execution: Execution, step: ExecutionStep, context: ExecutionContext
    ) -> list[str]:
        missing = []
        for dep_id in step.dependencies:
            dep = execution.plan.step(dep_id)
            if dep.status != StepStatus.COMPLETED or not context.has(step_output_key(dep_id)):
                missing.append(dep_id)
        return missing

    async def _await_approval(
        self, execution: Execution, step: ExecutionStep
    ) -> Optional[StepExecutionResult]:
        """Returns a failed result when the action may not proceed, else None."""
        approval = self.hitl.latest_for_step(execution.id, step.id)
        if approval is None or approval.status == ApprovalStatus.REJECTED:
            approval = self.hitl.create_approval_request(
                execution_id=execution.id,
                step_id=step.id,
                action=step.action,
                reason=f"Step {step.step_number} ({step.agent_name}) will {step.action.description}",
                estimated_impact=EstimatedImpact(
                    risk_level="low" if step.action.reversible else "high",
                    description=step.description,
                ),
            )
            await self.events.emit(
                "approval.required",
                execution.id,
                approval_id=approval.id,
                step_id=step.id,
                type=approval.type.value,
            )
        elif approval.status == ApprovalStatus.APPROVED:
            return None

        try:
            approved = await self.hitl.wait_for_approval(approval.id)
        except ApprovalTimeoutError as e:
            return StepExecutionResult(
                step_id=step.id,
                success=False,
                error=str(e),
                error_type=ApprovalTimeoutError.error_type,
            )

        await self.events.emit(
            "approval.resolved", execution.id, approval_id=approval.id, approved=approved
        )
        if not approved:
            return StepExecutionResult(
                step_id=step.id,
                success=False,
                error=f"Action rejected: {step.action.description}",
                error_type=ApprovalRejectedError.error_type,
            )
        return None

    async def _execute_with_quality_gate(
        self,
        execution: Execution,
        step: ExecutionStep,
        agent: BaseAgent,
        context: ExecutionContext,
    ) -> StepExecutionResult:
        attempts = 0
        tokens = 0
        feedback: Optional[str] = None

        while True:
            attempts += 1
            attempt_step = step if feedback is None else with_feedback(step, feedback)

            async def call_agent(s: ExecutionStep = attempt_step) -> StepOutput:
                return await agent.execute(s, context)

            try:
                output = await self.rate_limiter.retry_with_backoff(
                    call_agent, max_retries=self.max_rate_limit_retries
                )
            except Exception as e:
                return StepExecutionResult(
                    step_id=step.id,
                    success=False,
                    error=str(e) or type(e).__name__,
                    error_type="agent_error",
                    attempts=attempts,
                    tokens_used=tokens,
                )
            tokens += output.tokens_used

            if not output.success:
                return StepExecutionResult(
                    step_id=step.id,
                    success=False,
                    output=output,
                    error=output.summary or "Agent reported failure",
                    error_type="agent_error",
                    attempts=attempts,
                    tokens_used=tokens,
                )

            gate = await self.quality_gate.run(step, output, execution.request)
            if gate.passed:
                return StepExecutionResult(
                    step_id=step.id,
                    success=True,
                    output=output,
                    attempts=attempts,
                    tokens_used=tokens,
                )

            feedback = gate.validation_result.feedback or "Improve the answer"
            if attempts > self.max_fix_attempts:
                return await self._escalate(execution, step, output, feedback, attempts, tokens)
            logger.info(
                "Step %d rejected by quality gate (attempt %d), retrying: %s",
                step.step_number, attempts, feedback,
            )

    async def _escalate(
        self,
        execution: Execution,
        step: ExecutionStep,
        output: StepOutput,
        feedback: str,
        attempts: int,
        tokens: int,
    ) -> StepExecutionResult:
        """Fail the step and file a MANUAL_REVIEW request for the record.

        The request is informational. Nothing waits on it, so it stays PENDING
        until a reviewer approves or rejects it, and either verdict leaves the
        execution as it is.
        """
        approval = self.hitl.create_approval_request(
            execution_id=execution.id,
            step_id=step.id,
            action=ApprovalAction(
                type="REVIEW_OUTPUT",
                description=f"review the output of step {step.step_number}",
                parameters={"summary": output.summary, "feedback": feedback},
            ),
            reason=(
                f"Output still rejected after {attempts} attempts: {feedback}. "
                "Informational only; the execution does not wait on this review."
            ),
            approval_type=ApprovalType.MANUAL_REVIEW,
        )
        await self.events.emit(
            "approval.required",
            execution.id,
            approval_id=approval.id,
            step_id=step.id,
            type=approval.type.value,
        )
        return StepExecutionResult(
            step_id=step.id,
            success=False,
            output=output,
            error=f"Quality gate rejected output after {attempts} attempts: {feedback}",
            error_type=QualityGateRejection.error_type,
            attempts=attempts,
            tokens_used=tokens,
            needs_review=True,
        )


def with_feedback(step: ExecutionStep, feedback: str) -> ExecutionStep:
    """Copy of ``step`` whose input carries reviewer feedback for a retry."""
    retry = step.model_copy(deep=True)
    retry.input.context["quality_feedback"] = feedback
    return retry
