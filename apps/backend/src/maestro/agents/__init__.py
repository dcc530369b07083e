"""Maestro agents module."""

from .assistant import ClaudeStepAgent
from .registry import AgentRegistry, BaseAgent

__all__ = ["AgentRegistry", "BaseAgent", "ClaudeStepAgent"]
