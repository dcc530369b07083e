"""Turns a request into an ExecutionPlan and derives parallel batches from it."""

from __future__ import annotations

from typing import Any, Protocol

from ..agents.base import collect_reply, extract_json, run_agent
from ..errors import CircularDependencyError, PlanningError
from ..log import get_logger
from .schema import (
    ApprovalAction,
    DependencyEdge,
    DependencyGraph,
    ExecutionBatch,
    ExecutionPlan,
    ExecutionStep,
    StepInput,
)

logger = get_logger(__name__)

ESTIMATED_MS_PER_STEP = 30_000
ESTIMATED_TOKENS_PER_STEP = 2_000

FALLBACK_AGENT_ID = "assistant"

_INTENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "email": ("email", "e-mail", "inbox", "reply to", "send a message"),
    "calendar": ("meeting", "calendar", "schedule", "appointment", "invite"),
    "research": ("research", "compare", "find out", "look up", "investigate", "analyze", "analyse"),
    "content": ("write", "draft", "post", "article", "blog", "caption", "proposal"),
    "report": ("report", "summary", "summarize", "summarise", "status update"),
    "files": ("drive", "document", "file", "folder", "spreadsheet"),
}

PLANNER_SYSTEM_PROMPT = """\
You are the planner of a multi-agent system. Break the user's request into the
smallest set of steps, each handled by exactly one of the available agents.
Steps that do not need each other's output must not depend on each other, so
they can run in parallel.

Reply with JSON only, no prose:
{
  "steps": [
    {
      "step_number": 1,
      "agent_id": "<one of the available agent ids>",
      "description": "what this step achieves",
      "task": "the instruction given to the agent",
      "requirements": ["..."],
      "constraints": ["..."],
      "dependencies": [<step_numbers this step needs>],
      "optional": false,
      "action": null
    }
  ]
}
If a step sends, publishes, deletes, pays or deploys something, set "action" to
{"type": "SEND_EMAIL" | "BULK_SEND_EMAIL" | "DELETE_FILE" | "PUBLISH_POST" | ...,
 "description": "...", "parameters": {...}, "reversible": true|false}.
"""


def classify_intent(request: str) -> str:
    """Cheap keyword hint passed to the planner. Falls back to general_question."""
    text = request.lower()
    scores = {
        intent: sum(1 for kw in keywords if kw in text)
        for intent, keywords in _INTENT_KEYWORDS.items()
    }
    best = max(scores, key=lambda intent: scores[intent])
    return best if scores[best] > 0 else "general_question"


class Planner(Protocol):
    async def create_plan(
        self, request: str, user_id: str, execution_id: str, context: dict[str, Any]
    ) -> ExecutionPlan: ...


class AgentPlanner:
    """Plans with Claude, constrained to the agents in the registry."""

    def __init__(self, registry, max_turns: int = 5) -> None:
        self.registry = registry
        self.max_turns = max_turns

    async def create_plan(
        self, request: str, user_id: str, execution_id: str, context: dict[str, Any]
    ) -> ExecutionPlan:
        intent = classify_intent(request)
        prompt = (
            f"## Request\n{request}\n\n"
            f"## Intent hint\n{intent}\n\n"
            f"## Available agents\n{self.registry.catalogue()}\n"
        )
        if context:
            prompt += f"\n## Context\n{context}\n"

        logger.info("Planning execution %s (intent: %s)", execution_id, intent)
        reply = await collect_reply(
            run_agent(prompt=prompt, system_prompt=PLANNER_SYSTEM_PROMPT, max_turns=self.max_turns)
        )
        if reply.error:
            raise PlanningError(f"Planner model call failed: {reply.error}")

        steps = parse_plan_response(reply.text, request, self.registry)
        if not steps:
            raise PlanningError("Planner returned an empty plan")
        return build_plan(execution_id, steps)


def parse_plan_response(text: str, request: str, registry=None) -> list[ExecutionStep]:
    """Convert the planner's JSON into steps.

    Dependencies arrive as step numbers and are rewritten to step ids. A reply
    that cannot be parsed degrades to a single general-assistant step.
    """
    try:
        payload = extract_json(text)
        raw_steps = payload["steps"] if isinstance(payload, dict) else payload
        if not isinstance(raw_steps, list):
            raise ValueError("steps is not a list")
        return _steps_from_payload(raw_steps, request, registry)
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Could not parse planner reply, falling back to one step: %s", e)
        return [fallback_step(request, registry)]


def _steps_from_payload(raw_steps: list, request: str, registry) -> list[ExecutionStep]:
    steps: list[ExecutionStep] = []
    number_to_id: dict[int, str] = {}
    deps_by_number: dict[int, list[int]] = {}

    for index, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, dict):
            continue
        number = int(raw.get("step_number") or index)
        agent_id = str(raw.get("agent_id") or FALLBACK_AGENT_ID)
        agent = registry.get(agent_id) if registry is not None else None
        if registry is not None and agent is None:
            logger.warning("Planner chose unknown agent %r, using %s", agent_id, FALLBACK_AGENT_ID)
            agent_id = FALLBACK_AGENT_ID
            agent = registry.get(agent_id)

        action = raw.get("action")
        step = ExecutionStep(
            step_number=number,
            agent_id=agent_id,
            agent_name=agent.name if agent is not None else str(raw.get("agent_name") or agent_id),
            description=str(raw.get("description") or raw.get("task") or ""),
            input=StepInput(
                task=str(raw.get("task") or raw.get("description") or request),
                requirements=[str(r) for r in raw.get("requirements") or []],
                constraints=[str(c) for c in raw.get("constraints") or []],
            ),
            optional=bool(raw.get("optional", False)),
            action=ApprovalAction.model_validate(action) if isinstance(action, dict) else None,
        )
        steps.append(step)
        number_to_id[number] = step.id
        deps_by_number[number] = [int(d) for d in raw.get("dependencies") or []]

    for step in steps:
        step.dependencies = [
            number_to_id[d] for d in deps_by_number[step.step_number] if d in number_to_id
        ]
    return steps


def fallback_step(request: str, registry=None) -> ExecutionStep:
    agent = registry.get(FALLBACK_AGENT_ID) if registry is not None else None
    return ExecutionStep(
        step_number=1,
        agent_id=FALLBACK_AGENT_ID,
        agent_name=agent.name if agent is not None else "General Assistant",
        description="Handle the request directly",
        input=StepInput(task=request),
    )


def build_plan(execution_id: str, steps: list[ExecutionStep]) -> ExecutionPlan:
    return ExecutionPlan(
        execution_id=execution_id,
        steps=steps,
        dependencies=build_dependency_graph(steps),
        estimated_duration_ms=estimate_duration_ms(steps),
        estimated_tokens=estimate_tokens(steps),
    )


def build_dependency_graph(steps: list[ExecutionStep]) -> DependencyGraph:
    edges = [
        DependencyEdge(from_step=dep, to_step=step.id, type="data")
        for step in steps
        for dep in step.dependencies
    ]
    return DependencyGraph(nodes=[step.id for step in steps], edges=edges)


def validate_plan(plan: ExecutionPlan) -> None:
    """Raise PlanningError unless ids are unique, dependencies resolve and there is no cycle."""
    if not plan.steps:
        raise PlanningError("Plan has no steps")

    ids = [step.id for step in plan.steps]
    if len(set(ids)) != len(ids):
        raise PlanningError("Plan contains duplicate step ids")

    known = set(ids)
    for step in plan.steps:
        unknown = [dep for dep in step.dependencies if dep not in known]
        if unknown:
            raise PlanningError(
                f"Step {step.step_number} depends on unknown steps: {', '.join(unknown)}"
            )
        if step.id in step.dependencies:
            raise CircularDependencyError([step.id])

    create_execution_batches(plan.steps)


def create_execution_batches(steps: list[ExecutionStep]) -> list[ExecutionBatch]:
    """Group steps into batches whose dependencies are met by earlier batches.

    Raises CircularDependencyError when some steps can never become ready.
    """
    batches: list[ExecutionBatch] = []
    processed: set[str] = set()
    remaining = list(steps)

    while remaining:
        ready = [s for s in remaining if all(dep in processed for dep in s.dependencies)]
        if not ready:
            raise CircularDependencyError([s.id for s in remaining])
        batches.append(ExecutionBatch(batch_number=len(batches) + 1, steps=ready))
        processed.update(s.id for s in ready)
        ready_ids = {s.id for s in ready}
        remaining = [s for s in remaining if s.id not in ready_ids]

    return batches


def estimate_duration_ms(steps: list[ExecutionStep]) -> int:
    return len(steps) * ESTIMATED_MS_PER_STEP


def estimate_tokens(steps: list[ExecutionStep]) -> int:
    return len(steps) * ESTIMATED_TOKENS_PER_STEP


