"""Fakes shared by the orchestration tests: agents, planner, evaluator, clock."""

import asyncio
import sys
from pathlib import Path
from typing import Callable, Optional

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from maestro.agents.registry import AgentRegistry, BaseAgent
from maestro.config import Settings
from maestro.orchestration.planner import build_plan
from maestro.orchestration.schema import ApprovalAction, ExecutionStep, StepInput, StepOutput
from maestro.quality.evaluation import EvaluationAspects, EvaluationResult
from maestro.runtime import create_runtime

GOOD_SUMMARY = (
    "Here is the finished piece of work, reviewed and ready to share with the team today."
)


def good_output(summary: str = GOOD_SUMMARY, **data) -> StepOutput:
    return StepOutput(success=True, summary=summary, data=data, confidence="medium")


def make_step(
    number: int,
    agent_id: str = "fake",
    depends_on: tuple = (),
    optional: bool = False,
    action: Optional[ApprovalAction] = None,
) -> ExecutionStep:
    return ExecutionStep(
        id=f"s{number}",
        step_number=number,
        agent_id=agent_id,
        agent_name=agent_id.title(),
        description=f"Step {number}",
        input=StepInput(task=f"Do part {number}"),
        dependencies=[f"s{d}" for d in depends_on],
        optional=optional,
        action=action,
    )


class FakeAgent(BaseAgent):
    """Returns canned outputs and records every call by step id.

    ``behaviour`` may be a StepOutput, an exception instance, or an async
    callable taking (step, context) for anything more elaborate.
    """

    def __init__(self, agent_id: str = "fake", behaviour=None, name: Optional[str] = None):
        self.agent_id = agent_id
        self.name = name or agent_id.title()
        self.description = f"{self.name} agent used in tests"
        self.behaviour = behaviour
        self.calls: list[str] = []
        self.steps_seen: list[ExecutionStep] = []

    async def execute(self, step, context) -> StepOutput:
        self.calls.append(step.id)
        self.steps_seen.append(step)
        behaviour = self.behaviour
        if isinstance(behaviour, dict):
            behaviour = behaviour.get(step.id)
        if behaviour is None:
            return good_output(step=step.id)
        if isinstance(behaviour, StepOutput):
            return behaviour
        if isinstance(behaviour, Exception):
            raise behaviour
        return await behaviour(step, context)

    def call_count(self, step_id: str) -> int:
        return self.calls.count(step_id)


class ScriptedPlanner:
    """Hands out a fresh copy of the same steps for every execution."""

    def __init__(self, steps: Optional[list[ExecutionStep]] = None, error: Optional[Exception] = None):
        self.steps = steps or [make_step(1)]
        self.error = error
        self.requests: list[str] = []

    async def create_plan(self, request, user_id, execution_id, context):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return build_plan(execution_id, [s.model_copy(deep=True) for s in self.steps])


class FixedEvaluator:
    def __init__(self, passed: bool = True, feedback: Optional[str] = None):
        self.passed = passed
        self.feedback = feedback
        self.calls = 0

    async def evaluate(self, request, output) -> EvaluationResult:
        self.calls += 1
        score = 0.9 if self.passed else 0.3
        return EvaluationResult(
            passed=self.passed,
            score=score,
            feedback=self.feedback,
            aspects=EvaluationAspects(clarity=score, professionalism=score, relevance=score, tone=score),
        )


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_settings(tmp_dir: Path, **overrides) -> Settings:
    values = dict(
        database_path=tmp_dir / "maestro.db",
        approval_poll_interval_seconds=0.01,
        approval_timeout_seconds=0.5,
        recover_on_startup=False,
        max_concurrent_steps=5,
        max_fix_attempts=2,
    )
    values.update(overrides)
    return Settings(**values)


def make_runtime(
    tmp_dir: Path,
    agents: list[BaseAgent],
    planner=None,
    evaluator=None,
    **setting_overrides,
):
    settings = make_settings(tmp_dir, **setting_overrides)
    return create_runtime(
        settings,
        planner=planner or ScriptedPlanner(),
        registry=AgentRegistry(agents),
        evaluator=evaluator or FixedEvaluator(),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
