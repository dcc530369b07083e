import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from maestro.agents.registry import AgentRegistry
from maestro.errors import CircularDependencyError, PlanningError
from maestro.orchestration.planner import (
    build_plan,
    classify_intent,
    create_execution_batches,
    parse_plan_response,
    validate_plan,
)

from support import FakeAgent, make_step


class ExecutionBatchTests(unittest.TestCase):
    def test_independent_steps_share_one_batch(self):
        steps = [make_step(1), make_step(2), make_step(3)]

        batches = create_execution_batches(steps)

        self.assertEqual(len(batches), 1)
        self.assertEqual(batches[0].batch_number, 1)
        self.assertEqual([s.id for s in batches[0].steps], ["s1", "s2", "s3"])

    def test_chain_produces_one_batch_per_step_in_order(self):
        steps = [make_step(1), make_step(2, depends_on=(1,)), make_step(3, depends_on=(2,))]

        batches = create_execution_batches(steps)

        self.assertEqual([[s.id for s in b.steps] for b in batches], [["s1"], ["s2"], ["s3"]])
        self.assertEqual([b.batch_number for b in batches], [1, 2, 3])

    def test_every_step_lands_after_its_dependencies(self):
        steps = [
            make_step(1),
            make_step(2),
            make_step(3, depends_on=(1, 2)),
            make_step(4, depends_on=(1,)),
            make_step(5, depends_on=(3, 4)),
        ]

        batches = create_execution_batches(steps)

        batch_of = {s.id: b.batch_number for b in batches for s in b.steps}
        self.assertEqual(sorted(batch_of), ["s1", "s2", "s3", "s4", "s5"])
        for step in steps:
            for dep in step.dependencies:
                self.assertLess(batch_of[dep], batch_of[step.id])
        self.assertEqual(batch_of, {"s1": 1, "s2": 1, "s3": 2, "s4": 2, "s5": 3})

    def test_cycle_raises_without_batches(self):
        steps = [make_step(1, depends_on=(2,)), make_step(2, depends_on=(1,))]

        with self.assertRaises(CircularDependencyError) as ctx:
            create_execution_batches(steps)
        self.assertEqual(sorted(ctx.exception.remaining), ["s1", "s2"])
        self.assertIsInstance(ctx.exception, PlanningError)

    def test_batches_are_deterministic(self):
        steps = [make_step(1), make_step(2, depends_on=(1,)), make_step(3)]

        first = [[s.id for s in b.steps] for b in create_execution_batches(steps)]
        second = [[s.id for s in b.steps] for b in create_execution_batches(steps)]

        self.assertEqual(first, second)


class PlanValidationTests(unittest.TestCase):
    def test_valid_plan_passes_and_carries_estimates(self):
        plan = build_plan("exec-1", [make_step(1), make_step(2, depends_on=(1,))])

        validate_plan(plan)

        self.assertEqual(plan.estimated_duration_ms, 60_000)
        self.assertEqual(plan.estimated_tokens, 4_000)
        self.assertEqual(plan.dependencies.nodes, ["s1", "s2"])
        self.assertEqual(plan.dependencies.dependencies_of("s2"), ["s1"])

    def test_unknown_dependency_is_rejected(self):
        step = make_step(1)
        step.dependencies = ["missing"]
        plan = build_plan("exec-1", [step])

        with self.assertRaises(PlanningError):
            validate_plan(plan)

    def test_duplicate_ids_are_rejected(self):
        plan = build_plan("exec-1", [make_step(1), make_step(1)])

        with self.assertRaises(PlanningError):
            validate_plan(plan)

    def test_cycle_is_rejected(self):
        plan = build_plan(
            "exec-1", [make_step(1, depends_on=(2,)), make_step(2, depends_on=(1,))]
        )

        with self.assertRaises(CircularDependencyError):
            validate_plan(plan)


class PlanParsingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = AgentRegistry(
            [FakeAgent("assistant", name="General Assistant"), FakeAgent("writer", name="Writer")]
        )

    def test_fenced_json_is_parsed_and_dependencies_become_ids(self):
        reply = """Here is the plan:
```json
{"steps": [
  {"step_number": 1, "agent_id": "assistant", "description": "Collect notes", "task": "Collect notes"},
  {"step_number": 2, "agent_id": "writer", "description": "Draft email", "task": "Draft the email",
   "dependencies": [1], "action": {"type": "SEND_EMAIL", "description": "send the email"}}
]}
```"""
        steps = parse_plan_response(reply, "Email the team", self.registry)

        self.assertEqual(len(steps), 2)
        self.assertEqual(steps[1].dependencies, [steps[0].id])
        self.assertEqual(steps[1].agent_name, "Writer")
        self.assertEqual(steps[1].action.type, "SEND_EMAIL")
        self.assertEqual(steps[0].input.task, "Collect notes")

    def test_unknown_agent_falls_back_to_assistant(self):
        reply = '{"steps": [{"step_number": 1, "agent_id": "astrologer", "task": "Read stars"}]}'

        steps = parse_plan_response(reply, "Read the stars", self.registry)

        self.assertEqual(steps[0].agent_id, "assistant")

    def test_unparseable_reply_degrades_to_single_assistant_step(self):
        steps = parse_plan_response("I would love to help!", "Plan my week", self.registry)

        self.assertEqual(len(steps), 1)
        self.assertEqual(steps[0].agent_id, "assistant")
        self.assertEqual(steps[0].input.task, "Plan my week")

    def test_empty_step_list_parses_to_nothing(self):
        self.assertEqual(parse_plan_response('{"steps": []}', "x", self.registry), [])


class IntentClassificationTests(unittest.TestCase):
    def test_keywords_pick_an_intent(self):
        self.assertEqual(classify_intent("Schedule a meeting with Dana"), "calendar")
        self.assertEqual(classify_intent("Draft a blog post about launch"), "content")

    def test_no_keywords_means_general_question(self):
        self.assertEqual(classify_intent("hello there"), "general_question")


if __name__ == "__main__":
    unittest.main()
