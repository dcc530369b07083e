"""Agent registry: maps agent ids to executable agents."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

from ..orchestration.schema import ExecutionStep, StepOutput

if TYPE_CHECKING:
    from ..config import Settings
    from ..orchestration.context import ExecutionContext
    from ..safety.rate_limiter import RateLimiter


class BaseAgent(ABC):
    """Abstract base for every agent a plan step can be assigned to.

    Interface contract:

        async def execute(self, step, context) -> StepOutput

    Expected business failures come back as ``StepOutput(success=False)``.
    Anything raised is turned into a failed step result by the coordinator.
    """

    agent_id: str = ""
    name: str = ""
    description: str = ""

    @abstractmethod
    async def execute(self, step: ExecutionStep, context: ExecutionContext) -> StepOutput:
        ...


AgentFactory = Callable[["Settings", "RateLimiter"], BaseAgent]

# Built-in agent factories, populated via @register
_BUILTIN_REGISTRY: dict[str, AgentFactory] = {}


def register(agent_id: str) -> Callable[[AgentFactory], AgentFactory]:
    """Decorator that registers a built-in agent factory under ``agent_id``."""

    def decorator(factory: AgentFactory) -> AgentFactory:
        _BUILTIN_REGISTRY[agent_id] = factory
        return factory

    return decorator


class AgentRegistry:
    """Holds the agents available to the planner and the step runner."""

    def __init__(self, agents: list[BaseAgent] | None = None) -> None:
        self._agents: dict[str, BaseAgent] = {}
        for agent in agents or []:
            self.add(agent)

    @classmethod
    def from_builtins(cls, settings: Settings, rate_limiter: RateLimiter) -> AgentRegistry:
        return cls([factory(settings, rate_limiter) for factory in _BUILTIN_REGISTRY.values()])

    def add(self, agent: BaseAgent) -> None:
        self._agents[agent.agent_id] = agent

    def get(self, agent_id: str) -> BaseAgent | None:
        return self._agents.get(agent_id)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def list_available(self) -> list[str]:
        return sorted(self._agents)

    def catalogue(self) -> str:
        """One line per agent, used in the planner prompt."""
        return "\n".join(
            f"- {agent.agent_id} ({agent.name}): {agent.description}"
            for agent in sorted(self._agents.values(), key=lambda a: a.agent_id)
        )
