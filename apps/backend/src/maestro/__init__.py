"""Maestro: multi-agent execution orchestration backend."""
