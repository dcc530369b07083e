"""Claude-backed agents that turn one plan step into a StepOutput."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from ..errors import StepExecutionError
from ..log import get_logger
from ..orchestration.context import step_output_key
from ..orchestration.schema import ExecutionStep, StepOutput
from .base import collect_reply, extract_json, run_agent
from .registry import BaseAgent, register

if TYPE_CHECKING:
    from ..config import Settings
    from ..orchestration.context import ExecutionContext
    from ..safety.rate_limiter import RateLimiter

logger = get_logger(__name__)

OUTPUT_INSTRUCTIONS = """\
Reply with a single JSON object and nothing else:
{
  "summary": "the answer for the user, written in plain language",
  "data": {"any": "structured values worth passing to later steps"},
  "citations": ["sources you relied on, if any"],
  "confidence": "high" | "medium" | "low",
  "success": true
}
Set "success" to false when the task cannot be done and say why in "summary".
"""


class ClaudeStepAgent(BaseAgent):
    """Runs a step through Claude with a role-specific system prompt."""

    def __init__(
        self,
        agent_id: str,
        name: str,
        description: str,
        role_prompt: str,
        settings: Settings,
        rate_limiter: RateLimiter,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.description = description
        self.role_prompt = role_prompt
        self.settings = settings
        self.rate_limiter = rate_limiter

    async def execute(self, step: ExecutionStep, context: ExecutionContext) -> StepOutput:
        self.rate_limiter.require("claude", "generate")

        reply = await collect_reply(
            run_agent(
                prompt=self.build_prompt(step, context),
                system_prompt=f"{self.role_prompt}\n\n{OUTPUT_INSTRUCTIONS}",
                max_turns=self.settings.agent_max_turns,
            )
        )
        if reply.error:
            raise StepExecutionError(f"{self.name} failed on step {step.step_number}: {reply.error}")

        return parse_step_output(reply.text, reply.tokens_used)

    def build_prompt(self, step: ExecutionStep, context: ExecutionContext) -> str:
        sections = [f"## Task\n{step.input.task}"]

        upstream = []
        for dep_id in step.dependencies:
            value = context.get(step_output_key(dep_id))
            if value is not None:
                upstream.append(json.dumps(value, ensure_ascii=False, default=str))
        if upstream:
            sections.append("## Results from earlier steps\n" + "\n".join(upstream))

        extra = {k: v for k, v in step.input.context.items() if k != "quality_feedback"}
        if extra:
            sections.append("## Context\n" + json.dumps(extra, ensure_ascii=False, default=str))
        if step.input.requirements:
            sections.append("## Requirements\n" + "\n".join(f"- {r}" for r in step.input.requirements))
        if step.input.constraints:
            sections.append("## Constraints\n" + "\n".join(f"- {c}" for c in step.input.constraints))

        feedback = step.input.context.get("quality_feedback")
        if feedback:
            sections.append(
                "## Reviewer feedback on your previous answer\n"
                f"{feedback}\nFix these issues in this attempt."
            )
        return "\n\n".join(sections)


def parse_step_output(text: str, tokens_used: int = 0) -> StepOutput:
    """Build a StepOutput from a model reply, tolerating plain-text answers."""
    try:
        payload = extract_json(text)
    except ValueError:
        logger.debug("Agent reply was not JSON, using it as the summary")
        return StepOutput(success=bool(text), summary=text, tokens_used=tokens_used)

    if not isinstance(payload, dict):
        return StepOutput(success=True, summary=text, data={"items": payload}, tokens_used=tokens_used)

    confidence = payload.get("confidence", "medium")
    if confidence not in ("high", "medium", "low"):
        confidence = "medium"
    data = payload.get("data")
    return StepOutput(
        success=bool(payload.get("success", True)),
        summary=str(payload.get("summary", "")),
        data=data if isinstance(data, dict) else {},
        citations=[str(c) for c in payload.get("citations") or []],
        confidence=confidence,
        tokens_used=tokens_used,
    )


@register("assistant")
def _assistant(settings: Settings, rate_limiter: RateLimiter) -> BaseAgent:
    return ClaudeStepAgent(
        agent_id="assistant",
        name="General Assistant",
        description="Answers questions and handles any task no specialist covers",
        role_prompt="You are a capable general assistant completing one step of a larger task.",
        settings=settings,
        rate_limiter=rate_limiter,
    )


@register("researcher")
def _researcher(settings: Settings, rate_limiter: RateLimiter) -> BaseAgent:
    return ClaudeStepAgent(
        agent_id="researcher",
        name="Researcher",
        description="Gathers facts, compares options and summarises findings with sources",
        role_prompt=(
            "You are a careful researcher. Separate facts from assumptions and say "
            "plainly when you do not have enough information."
        ),
        settings=settings,
        rate_limiter=rate_limiter,
    )


@register("writer")
def _writer(settings: Settings, rate_limiter: RateLimiter) -> BaseAgent:
    return ClaudeStepAgent(
        agent_id="writer",
        name="Writer",
        description="Drafts emails, posts, summaries and other text meant for people",
        role_prompt=(
            "You are a professional writer. Produce clear, friendly text that is "
            "ready to send, without describing how it was produced."
        ),
        settings=settings,
        rate_limiter=rate_limiter,
    )
