"""Runs the steps of one batch concurrently under a concurrency cap."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from ..log import get_logger
from .schema import BatchStatus, ExecutionBatch, ExecutionStep, StepExecutionResult, utc_now

logger = get_logger(__name__)

StepFn = Callable[[ExecutionStep], Awaitable[StepExecutionResult]]


class ParallelCoordinator:
    def __init__(self, max_concurrent: int = 5) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent

    async def execute_batch(self, batch: ExecutionBatch, run_step: StepFn) -> list[StepExecutionResult]:
        """Run every step in ``batch`` and return one result per step, in order.

        A step that raises becomes a failed result; its siblings keep running.
        """
        batch.status = BatchStatus.RUNNING
        batch.started_at = utc_now()
        logger.info("Batch %d: running %d step(s)", batch.batch_number, len(batch.steps))

        results: list[StepExecutionResult] = []
        for start in range(0, len(batch.steps), self.max_concurrent):
            chunk = batch.steps[start : start + self.max_concurrent]
            results.extend(await asyncio.gather(*(self._guarded(step, run_step) for step in chunk)))

        batch.completed_at = utc_now()
        batch.status = (
            BatchStatus.COMPLETED if all(r.success for r in results) else BatchStatus.FAILED
        )
        logger.info(
            "Batch %d %s (%d/%d succeeded)",
            batch.batch_number,
            batch.status.value.lower(),
            sum(1 for r in results if r.success),
            len(results),
        )
        return results

    async def _guarded(self, step: ExecutionStep, run_step: StepFn) -> StepExecutionResult:
        started = time.monotonic()
        try:
            return await run_step(step)
        except Exception as e:
            logger.exception("Step %s raised", step.id)
            return StepExecutionResult(
                step_id=step.id,
                success=False,
                error=str(e) or type(e).__name__,
                error_type="agent_error",
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    @staticmethod
    def efficiency(total_steps: int, batch_count: int) -> float:
        """Share of sequential rounds saved by batching (0.0 when nothing was saved)."""
        if total_steps == 0:
            return 0.0
        return 1 - batch_count / total_steps
