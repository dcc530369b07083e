"""Master orchestrator: the execution lifecycle state machine.

PLANNING -> RUNNING -> (PAUSED <-> RUNNING) -> COMPLETED | FAILED | CANCELLED

Durable state lives in the StateManager. The in-process active set only holds
ExecutionContexts for executions this process is currently driving.
"""

from __future__ import annotations

from typing import Any, Optional

from ..errors import (
    InvalidStateTransitionError,
    NotFoundError,
    OrchestrationError,
    PlanningError,
    RecoveryError,
)
from ..log import get_logger
from .context import ExecutionContext, step_output_key
from .coordinator import ParallelCoordinator
from .events import InMemoryEventBus
from .planner import Planner, create_execution_batches, validate_plan
from .schema import (
    ExecutionBatch,
    ExecutionCheckpoint,
    Execution,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStep,
    StepExecutionResult,
    StepStatus,
    StepSummary,
    utc_now,
)
from .state import StateManager
from .steps import StepRunner
from .tasks import BackgroundRunner

logger = get_logger(__name__)

RECOVERY_NO_CHECKPOINT = "Recovery failed: no checkpoint found"


class MasterOrchestrator:
    def __init__(
        self,
        state: StateManager,
        planner: Planner,
        coordinator: ParallelCoordinator,
        step_runner: StepRunner,
        events: InMemoryEventBus,
        runner: Optional[BackgroundRunner] = None,
    ) -> None:
        self.state = state
        self.planner = planner
        self.coordinator = coordinator
        self.step_runner = step_runner
        self.events = events
        self.runner = runner or BackgroundRunner()
        self.runner.set_error_handler(self._on_loop_error)
        self._active: dict[str, ExecutionContext] = {}

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def start(
        self, request: str, user_id: str, options: Optional[dict[str, Any]] = None
    ) -> Execution:
        """Plan the request and launch it in the background.

        Returns as soon as the plan is stored and the execution is RUNNING.
        Planning failures mark the execution FAILED and are re-raised.
        """
        options = options or {}
        execution = Execution(
            user_id=user_id,
            workspace_id=options.get("workspace_id"),
            request=request,
        )
        self.state.save_execution(execution)
        self._active[execution.id] = ExecutionContext(
            execution_id=execution.id,
            user_id=user_id,
            workspace_id=execution.workspace_id,
        )
        logger.info("Execution %s created for user %s", execution.id, user_id)

        try:
            plan = await self.planner.create_plan(
                request, user_id, execution.id, options.get("context") or {}
            )
            validate_plan(plan)
        except Exception as e:
            execution.transition(ExecutionStatus.FAILED, error=f"Planning failed: {e}")
            self.state.save_execution(execution)
            self._active.pop(execution.id, None)
            logger.error("Planning failed for execution %s: %s", execution.id, e)
            await self.events.emit("execution.failed", execution.id, error=execution.error)
            if isinstance(e, PlanningError):
                raise
            raise PlanningError(f"Planning failed: {e}") from e

        persisted = self._require(execution.id)
        if persisted.status == ExecutionStatus.CANCELLED:
            logger.info("Execution %s was cancelled during planning", execution.id)
            return persisted

        execution.plan = plan
        execution.total_steps = len(plan.steps)
        execution.transition(ExecutionStatus.RUNNING)
        self.state.save_execution(execution)
        await self.events.emit(
            "execution.started",
            execution.id,
            total_steps=execution.total_steps,
            estimated_duration_ms=plan.estimated_duration_ms,
        )

        self.runner.spawn(execution.id, self._execute(execution.id))
        return execution.model_copy(deep=True)

    async def pause(self, execution_id: str) -> Execution:
        execution = self._require(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise InvalidStateTransitionError(execution_id, execution.status.value, "pause")

        self.state.create_checkpoint(execution, self._active.get(execution_id))
        execution.transition(ExecutionStatus.PAUSED)
        self.state.save_execution(execution)
        self._active.pop(execution_id, None)
        logger.info("Execution %s paused", execution_id)
        await self.events.emit("execution.paused", execution_id)
        return execution

    async def resume(self, execution_id: str) -> Execution:
        execution = self._require(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise InvalidStateTransitionError(execution_id, execution.status.value, "resume")

        # A loop paused mid-batch finishes that batch and checkpoints it first.
        await self.runner.join(execution_id)
        execution = self._require(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise InvalidStateTransitionError(execution_id, execution.status.value, "resume")

        checkpoint = self.state.get_latest_checkpoint(execution_id)
        if checkpoint is None:
            raise NotFoundError(f"No checkpoint found for execution {execution_id}")

        context = ExecutionContext.from_checkpoint(
            checkpoint, execution.user_id, execution.workspace_id
        )
        restore_from_checkpoint(execution.plan, checkpoint, context)

        execution.transition(ExecutionStatus.RUNNING)
        self.state.save_execution(execution)
        self._active[execution_id] = context
        logger.info(
            "Execution %s resumed from checkpoint %d",
            execution_id, checkpoint.checkpoint_number,
        )
        await self.events.emit(
            "execution.resumed", execution_id, checkpoint_number=checkpoint.checkpoint_number
        )

        self.runner.spawn(execution_id, self._execute(execution_id))
        return execution

    async def cancel(self, execution_id: str) -> Execution:
        execution = self._require(execution_id)
        if execution.status == ExecutionStatus.CANCELLED:
            return execution
        if execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            raise InvalidStateTransitionError(execution_id, execution.status.value, "cancel")

        execution.transition(ExecutionStatus.CANCELLED)
        self.state.save_execution(execution)
        self._active.pop(execution_id, None)
        logger.info("Execution %s cancelled", execution_id)
        await self.events.emit("execution.cancelled", execution_id)
        return execution

    async def recover_running_executions(self) -> list[str]:
        """Resume every execution left RUNNING by a previous process."""
        recovered = []
        for execution in self.state.get_running_executions():
            if self.runner.is_running(execution.id):
                continue

            execution.transition(ExecutionStatus.PAUSED)
            self.state.save_execution(execution)
            try:
                await self._recover(execution.id)
            except RecoveryError as e:
                logger.error("Could not recover execution %s: %s", execution.id, e)
                await self._fail_recovery(execution.id, str(e))
                continue
            except Exception as e:
                logger.exception("Recovery of execution %s crashed", execution.id)
                await self._fail_recovery(execution.id, f"Recovery failed: {e}")
                continue
            recovered.append(execution.id)

        if recovered:
            logger.info("Recovered %d execution(s)", len(recovered))
        return recovered

    async def _recover(self, execution_id: str) -> None:
        try:
            await self.resume(execution_id)
        except NotFoundError as e:
            raise RecoveryError(RECOVERY_NO_CHECKPOINT) from e
        except OrchestrationError as e:
            raise RecoveryError(f"Recovery failed: {e}") from e

    async def _fail_recovery(self, execution_id: str, error: str) -> None:
        self._active.pop(execution_id, None)
        failed = self._require(execution_id)
        failed.transition(ExecutionStatus.FAILED, error=error)
        self.state.save_execution(failed)
        await self.events.emit(
            "execution.failed", execution_id, error=error, error_type=RecoveryError.error_type
        )

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def get_execution(self, execution_id: str) -> Execution:
        return self._require(execution_id)

    def get_context(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._active.get(execution_id)

    def active_count(self) -> int:
        return len(self._active)

    def cleanup(self) -> int:
        """Drop active entries whose persisted status is terminal. Returns how many."""
        removed = 0
        for execution_id in list(self._active):
            execution = self.state.get_execution(execution_id)
            if execution is None or execution.status.is_terminal:
                self._active.pop(execution_id, None)
                removed += 1
        return removed

    async def wait(self, execution_id: str) -> Execution:
        """Wait for the background loop of an execution, then return its state."""
        await self.runner.join(execution_id)
        return self._require(execution_id)

    async def shutdown(self) -> None:
        await self.runner.shutdown()

    # ------------------------------------------------------------------
    # Execute loop
    # ------------------------------------------------------------------

    async def _execute(self, execution_id: str) -> None:
        execution = self.state.get_execution(execution_id)
        context = self._active.get(execution_id)
        if execution is None or context is None or execution.plan is None:
            logger.warning("Execution %s has nothing to run", execution_id)
            return

        plan = execution.plan
        for batch in create_execution_batches(plan.steps):
            persisted = self.state.get_execution(execution_id)
            if persisted is None or persisted.status != ExecutionStatus.RUNNING:
                logger.info("Execution %s is no longer running, stopping", execution_id)
                return

            runnable = self._runnable_steps(plan, batch)
            if not runnable:
                self._save_progress(execution)
                continue

            now = utc_now()
            for step in runnable:
                step.status = StepStatus.RUNNING
                step.started_at = now
                step.error = None
            execution.current_step = max(step.step_number for step in runnable)
            self._save_progress(execution)

            run_batch = ExecutionBatch(batch_number=batch.batch_number, steps=runnable)
            await self.events.emit(
                "batch.started",
                execution_id,
                batch_number=batch.batch_number,
                step_ids=[s.id for s in runnable],
            )

            async def run_step(step: ExecutionStep) -> StepExecutionResult:
                return await self.step_runner.run(execution, step, context)

            results = await self.coordinator.execute_batch(run_batch, run_step)
            timed_out = apply_results(plan, results, context)
            await self.events.emit(
                "batch.completed",
                execution_id,
                batch_number=batch.batch_number,
                status=run_batch.status.value,
            )

            self._save_progress(execution)
            if execution.status != ExecutionStatus.CANCELLED:
                self.state.create_checkpoint(execution, context)
            if execution.status != ExecutionStatus.RUNNING:
                logger.info(
                    "Execution %s became %s during batch %d",
                    execution_id, execution.status.value, batch.batch_number,
                )
                return

            if timed_out:
                await self._pause_for_approval(execution, timed_out)
                return

        await self._finalize(execution)

    def _runnable_steps(self, plan: ExecutionPlan, batch: ExecutionBatch) -> list[ExecutionStep]:
        """Steps of ``batch`` that still need to run; dependents of failures are skipped."""
        runnable = []
        for step in batch.steps:
            if step.status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED):
                continue
            blocked = [
                plan.step(dep)
                for dep in step.dependencies
                if plan.step(dep).status in (StepStatus.FAILED, StepStatus.SKIPPED)
            ]
            if blocked:
                step.status = StepStatus.SKIPPED
                step.error = "Skipped because step(s) {} did not complete".format(
                    ", ".join(str(dep.step_number) for dep in blocked)
                )
                continue
            runnable.append(step)
        return runnable

    def _save_progress(self, execution: Execution) -> None:
        """Persist plan progress without undoing a concurrent pause or cancel."""
        persisted = self.state.get_execution(execution.id)
        if persisted is not None and persisted.status != execution.status:
            execution.status = persisted.status
            execution.error = persisted.error
            execution.completed_at = persisted.completed_at
        execution.updated_at = utc_now()
        self.state.save_execution(execution)

    async def _pause_for_approval(self, execution: Execution, steps: list[ExecutionStep]) -> None:
        execution.transition(ExecutionStatus.PAUSED)
        self.state.save_execution(execution)
        self._active.pop(execution.id, None)
        logger.info(
            "Execution %s paused waiting for approval on step(s) %s",
            execution.id, ", ".join(str(s.step_number) for s in steps),
        )
        await self.events.emit(
            "execution.paused",
            execution.id,
            reason="approval_timeout",
            step_ids=[s.id for s in steps],
        )

    async def _finalize(self, execution: Execution) -> None:
        plan = execution.plan
        incomplete = [
            s for s in plan.steps if s.status != StepStatus.COMPLETED and not s.optional
        ]
        execution.result = build_execution_result(plan, success=not incomplete)

        if incomplete:
            execution.transition(
                ExecutionStatus.FAILED,
                error="Steps did not complete: {}".format(
                    ", ".join(f"{s.step_number} ({s.agent_name}: {s.status.value})" for s in incomplete)
                ),
            )
        else:
            execution.transition(ExecutionStatus.COMPLETED)
        self.state.save_execution(execution)
        self._active.pop(execution.id, None)

        logger.info("Execution %s %s", execution.id, execution.status.value.lower())
        if execution.status == ExecutionStatus.COMPLETED:
            await self.events.emit(
                "execution.completed", execution.id, summary=execution.result.summary
            )
        else:
            await self.events.emit("execution.failed", execution.id, error=execution.error)

    async def _on_loop_error(self, execution_id: str, error: BaseException) -> None:
        execution = self.state.get_execution(execution_id)
        self._active.pop(execution_id, None)
        if execution is None or execution.status.is_terminal:
            return
        execution.transition(ExecutionStatus.FAILED, error=f"Execution loop crashed: {error}")
        self.state.save_execution(execution)
        await self.events.emit("execution.failed", execution_id, error=execution.error)

    def _require(self, execution_id: str) -> Execution:
        execution = self.state.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution


def apply_results(
    plan: ExecutionPlan, results: list[StepExecutionResult], context: ExecutionContext
) -> list[ExecutionStep]:
    """Write batch results onto the plan, then publish outputs to the context.

    Returns the steps that timed out waiting for approval; those go back to
    PENDING so they run again after a resume.
    """
    now = utc_now()
    timed_out = []
    for result in results:
        step = plan.step(result.step_id)
        step.duration_ms = result.duration_ms
        step.tokens_used = result.tokens_used
        step.needs_review = result.needs_review
        if result.success:
            step.status = StepStatus.COMPLETED
            step.output = result.output
            step.error = None
            step.completed_at = now
        elif result.error_type == "approval_timeout":
            step.status = StepStatus.PENDING
            step.error = result.error
            step.started_at = None
            step.completed_at = None
            timed_out.append(step)
        else:
            step.status = StepStatus.FAILED
            step.output = result.output
            step.error = result.error
            step.completed_at = now

    for result in results:
        if result.success and result.output is not None:
            step = plan.step(result.step_id)
            context.set(
                step_output_key(step.id),
                result.output.model_dump(mode="json"),
                created_by=step.agent_id,
            )
    return timed_out


def restore_from_checkpoint(
    plan: ExecutionPlan, checkpoint: ExecutionCheckpoint, context: ExecutionContext
) -> None:
    """Reset step statuses to what the checkpoint recorded.

    Completed steps keep their outputs and are never re-run; failed steps stay
    failed; everything else goes back to PENDING.
    """
    completed = set(checkpoint.state.completed_steps)
    failed = set(checkpoint.state.failed_steps)
    for step in plan.steps:
        if step.id in completed:
            step.status = StepStatus.COMPLETED
            output = checkpoint.state.step_results.get(step.id, step.output)
            step.output = output
            key = step_output_key(step.id)
            if output is not None and not context.has(key):
                context.set(key, output.model_dump(mode="json"), created_by=step.agent_id)
        elif step.id in failed:
            step.status = StepStatus.FAILED
        else:
            step.status = StepStatus.PENDING
            step.started_at = None
            step.completed_at = None


def build_execution_result(plan: ExecutionPlan, success: bool) -> ExecutionResult:
    completed = [s for s in plan.steps if s.status == StepStatus.COMPLETED and s.output]
    summaries = [s.output.summary for s in completed if s.output.summary]
    if len(summaries) == 1:
        output = summaries[0]
    else:
        output = "\n\n".join(
            f"{s.agent_name}:\n{s.output.summary}" for s in completed if s.output.summary
        )

    return ExecutionResult(
        success=success,
        output=output,
        structured={f"step_{s.step_number}": s.output.data for s in completed},
        summary=f"Completed {len(completed)} of {len(plan.steps)} steps",
        steps=[
            StepSummary(
                step_number=s.step_number,
                agent_name=s.agent_name,
                status=s.status,
                duration_ms=s.duration_ms,
                tokens_used=s.tokens_used,
            )
            for s in plan.steps
        ],
        total_duration_ms=sum(s.duration_ms or 0 for s in plan.steps),
        total_tokens_used=sum(s.tokens_used or 0 for s in plan.steps),
    )
