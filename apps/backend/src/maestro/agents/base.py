"""Claude Agent SDK plumbing shared by the planner, agents and evaluator."""

import json
import re
from typing import Any, AsyncGenerator, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)

from ..config import get_settings

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


async def run_agent(
    prompt: str,
    system_prompt: str,
    max_turns: int = 10,
    model: Optional[str] = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """Run a Claude Agent SDK query and yield messages as they arrive.

    Yields dicts with:
      - type: "text" | "result" | "error"
      - content: the relevant payload
    """
    settings = get_settings()

    options = ClaudeAgentOptions(
        model=model or settings.default_model,
        system_prompt=system_prompt,
        allowed_tools=[],
        max_turns=max_turns,
        permission_mode="bypassPermissions",
    )

    try:
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        yield {"type": "text", "content": block.text}
            elif isinstance(message, ResultMessage):
                yield {
                    "type": "result",
                    "content": {
                        "subtype": message.subtype,
                        "cost_usd": message.total_cost_usd,
                        "usage": message.usage,
                        "session_id": message.session_id,
                    },
                }
    except Exception as e:
        if isinstance(e, ExceptionGroup):
            msgs = [str(exc) for exc in e.exceptions]
            yield {"type": "error", "content": "; ".join(msgs) or str(e)}
        else:
            yield {"type": "error", "content": str(e)}


class AgentReply:
    """Text, token usage and error collected from one ``run_agent`` stream."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.tokens_used = 0
        self.error: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(self.parts).strip()


async def collect_reply(messages: AsyncGenerator[dict[str, Any], None]) -> AgentReply:
    reply = AgentReply()
    async for msg in messages:
        if msg["type"] == "text":
            reply.parts.append(msg["content"])
        elif msg["type"] == "result":
            usage = msg["content"].get("usage") or {}
            reply.tokens_used += int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        elif msg["type"] == "error":
            reply.error = msg["content"]
    return reply


def extract_json(text: str) -> Any:
    """Parse the first JSON document in a model reply.

    Accepts a fenced ```json block or a bare object/array. Raises ValueError
    when nothing parseable is found.
    """
    match = _FENCED_JSON.search(text)
    candidate = match.group(1).strip() if match else text.strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (candidate.find("{"), candidate.find("[")) if i != -1]
    if not starts:
        raise ValueError("No JSON found in model reply")
    start = min(starts)
    closer = "}" if candidate[start] == "{" else "]"
    end = candidate.rfind(closer)
    if end <= start:
        raise ValueError("No JSON found in model reply")
    try:
        return json.loads(candidate[start : end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in model reply: {e}") from e
