"""Execution orchestration: planning, batching, state, lifecycle."""
