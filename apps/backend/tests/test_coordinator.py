import asyncio
import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from maestro.orchestration.coordinator import ParallelCoordinator
from maestro.orchestration.schema import BatchStatus, ExecutionBatch, StepExecutionResult

from support import good_output, make_step


class ParallelCoordinatorTests(unittest.TestCase):
    def test_concurrency_never_exceeds_the_cap(self):
        in_flight = 0
        peak = 0

        async def run_step(step):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return StepExecutionResult(step_id=step.id, success=True, output=good_output())

        batch = ExecutionBatch(batch_number=1, steps=[make_step(n) for n in range(1, 8)])
        results = asyncio.run(ParallelCoordinator(max_concurrent=3).execute_batch(batch, run_step))

        self.assertEqual(peak, 3)
        self.assertEqual([r.step_id for r in results], [f"s{n}" for n in range(1, 8)])
        self.assertEqual(batch.status, BatchStatus.COMPLETED)
        self.assertIsNotNone(batch.completed_at)

    def test_exceptions_become_failed_results_and_siblings_finish(self):
        finished = []

        async def run_step(step):
            if step.id == "s2":
                raise RuntimeError("agent exploded")
            await asyncio.sleep(0.01)
            finished.append(step.id)
            return StepExecutionResult(step_id=step.id, success=True, output=good_output())

        batch = ExecutionBatch(batch_number=1, steps=[make_step(1), make_step(2), make_step(3)])
        results = asyncio.run(ParallelCoordinator().execute_batch(batch, run_step))

        by_id = {r.step_id: r for r in results}
        self.assertFalse(by_id["s2"].success)
        self.assertEqual(by_id["s2"].error_type, "agent_error")
        self.assertIn("agent exploded", by_id["s2"].error)
        self.assertEqual(sorted(finished), ["s1", "s3"])
        self.assertEqual(batch.status, BatchStatus.FAILED)

    def test_invalid_cap_is_rejected(self):
        with self.assertRaises(ValueError):
            ParallelCoordinator(max_concurrent=0)

    def test_efficiency(self):
        self.assertAlmostEqual(ParallelCoordinator.efficiency(4, 2), 0.5)
        self.assertEqual(ParallelCoordinator.efficiency(3, 3), 0.0)
        self.assertEqual(ParallelCoordinator.efficiency(0, 0), 0.0)


if __name__ == "__main__":
    unittest.main()
