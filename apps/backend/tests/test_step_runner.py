import asyncio
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from maestro.agents.registry import AgentRegistry
from maestro.orchestration.context import ExecutionContext, step_output_key
from maestro.orchestration.events import InMemoryEventBus
from maestro.orchestration.planner import build_plan
from maestro.orchestration.schema import (
    ApprovalAction,
    ApprovalType,
    Execution,
    ExecutionStatus,
    StepOutput,
    StepStatus,
)
from maestro.orchestration.state import StateManager
from maestro.orchestration.steps import StepRunner
from maestro.quality.gate import QualityGate
from maestro.safety.hitl import HITLGate
from maestro.safety.rate_limiter import RateLimiter

from support import FakeAgent, FakeClock, FixedEvaluator, good_output, make_step

UNSAFE = StepOutput(success=True, summary="Log in with the admin password hunter2 and you are all set.")


class StepRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="maestro-steps-tests-"))
        self.state = StateManager(self.tmp_dir / "maestro.db")
        self.hitl = HITLGate(self.state.approval_store(), poll_interval=0.01, timeout=0.05)
        self.clock = FakeClock()
        self.events = InMemoryEventBus()
        self.seen_events: list[str] = []

        async def record(event):
            self.seen_events.append(event.name)

        self.events.subscribe("*", record)

    def tearDown(self) -> None:
        self.state.close()
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _runner(self, agent: FakeAgent, max_fix_attempts: int = 2) -> StepRunner:
        return StepRunner(
            registry=AgentRegistry([agent]),
            hitl=self.hitl,
            quality_gate=QualityGate(FixedEvaluator()),
            rate_limiter=RateLimiter(clock=self.clock, sleep=self.clock.sleep),
            events=self.events,
            max_fix_attempts=max_fix_attempts,
        )

    def _execution(self, *steps) -> tuple[Execution, ExecutionContext]:
        execution = Execution(user_id="user-1", request="Organise the offsite")
        execution.plan = build_plan(execution.id, list(steps) or [make_step(1)])
        execution.transition(ExecutionStatus.RUNNING)
        self.state.save_execution(execution)
        return execution, ExecutionContext(execution_id=execution.id, user_id="user-1")

    def _run(self, runner, execution, context, step_id="s1"):
        return asyncio.run(runner.run(execution, execution.plan.step(step_id), context))

    def test_successful_step(self):
        agent = FakeAgent()
        execution, context = self._execution()

        result = self._run(self._runner(agent), execution, context)

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(agent.calls, ["s1"])
        self.assertEqual(self.seen_events, ["step.started", "step.completed"])

    def test_rejected_output_is_retried_with_feedback(self):
        async def improve(step, context):
            if "quality_feedback" in step.input.context:
                return good_output()
            return UNSAFE

        agent = FakeAgent(behaviour=improve)
        execution, context = self._execution()

        result = self._run(self._runner(agent), execution, context)

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)
        self.assertIn("sensitive", agent.steps_seen[1].input.context["quality_feedback"])
        self.assertNotIn("quality_feedback", execution.plan.step("s1").input.context)

    def test_persistent_rejection_escalates_to_manual_review(self):
        agent = FakeAgent(behaviour=UNSAFE)
        execution, context = self._execution()

        result = self._run(self._runner(agent, max_fix_attempts=2), execution, context)

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "quality_rejected")
        self.assertTrue(result.needs_review)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(agent.calls), 3)

        pending = self.hitl.get_pending_approvals(execution.id)
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].type, ApprovalType.MANUAL_REVIEW)
        self.assertIn("approval.required", self.seen_events)
        self.assertEqual(self.seen_events[-1], "step.failed")

    def test_critical_action_runs_after_approval(self):
        agent = FakeAgent()
        step = make_step(1, action=ApprovalAction(type="DELETE_FILE", description="delete the old deck"))
        execution, context = self._execution(step)

        async def approve(event):
            self.hitl.approve(event.payload["approval_id"], "manager")

        self.events.subscribe("approval.required", approve)
        result = self._run(self._runner(agent), execution, context)

        self.assertTrue(result.success)
        self.assertEqual(agent.calls, ["s1"])
        self.assertIn("approval.resolved", self.seen_events)

    def test_rejected_action_never_reaches_the_agent(self):
        agent = FakeAgent()
        step = make_step(1, action=ApprovalAction(type="BULK_SEND_EMAIL", description="email everyone"))
        execution, context = self._execution(step)

        async def reject(event):
            self.hitl.reject(event.payload["approval_id"], "manager")

        self.events.subscribe("approval.required", reject)
        result = self._run(self._runner(agent), execution, context)

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "approval_rejected")
        self.assertEqual(agent.calls, [])

    def test_unanswered_approval_times_out(self):
        agent = FakeAgent()
        step = make_step(1, action=ApprovalAction(type="PUBLISH_POST", description="publish the post"))
        execution, context = self._execution(step)

        result = self._run(self._runner(agent), execution, context)

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "approval_timeout")
        self.assertEqual(agent.calls, [])

    def test_previously_approved_action_is_not_asked_again(self):
        agent = FakeAgent()
        action = ApprovalAction(type="DELETE_FILE", description="delete the old deck")
        execution, context = self._execution(make_step(1, action=action))
        approval = self.hitl.create_approval_request(execution.id, "s1", action, "cleanup")
        self.hitl.approve(approval.id, "manager")

        result = self._run(self._runner(agent), execution, context)

        self.assertTrue(result.success)
        self.assertNotIn("approval.required", self.seen_events)

    def test_unmet_dependency_fails_the_precondition(self):
        agent = FakeAgent()
        execution, context = self._execution(make_step(1), make_step(2, depends_on=(1,)))

        result = self._run(self._runner(agent), execution, context, step_id="s2")

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "precondition_failed")
        self.assertEqual(agent.calls, [])

    def test_completed_dependency_with_published_output_satisfies_precondition(self):
        agent = FakeAgent()
        execution, context = self._execution(make_step(1), make_step(2, depends_on=(1,)))
        execution.plan.step("s1").status = StepStatus.COMPLETED
        context.set(step_output_key("s1"), good_output().model_dump(mode="json"), created_by="fake")

        result = self._run(self._runner(agent), execution, context, step_id="s2")

        self.assertTrue(result.success)

    def test_rate_limited_agent_is_retried(self):
        attempts = []

        async def flaky(step, context):
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("429 Too Many Requests")
            return good_output()

        execution, context = self._execution()

        result = self._run(self._runner(FakeAgent(behaviour=flaky)), execution, context)

        self.assertTrue(result.success)
        self.assertEqual(len(attempts), 2)
        self.assertEqual(self.clock.sleeps, [1.0])

    def test_declared_failure_is_not_retried(self):
        agent = FakeAgent(behaviour=StepOutput(success=False, summary="Calendar is not connected"))
        execution, context = self._execution()

        result = self._run(self._runner(agent), execution, context)

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "agent_error")
        self.assertEqual(result.error, "Calendar is not connected")
        self.assertEqual(len(agent.calls), 1)

    def test_unknown_agent(self):
        execution, context = self._execution(make_step(1, agent_id="ghost"))

        result = self._run(self._runner(FakeAgent()), execution, context)

        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "agent_error")


if __name__ == "__main__":
    unittest.main()
