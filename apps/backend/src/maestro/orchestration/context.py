"""In-memory execution context: shared scratch space and advisory locks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .schema import ContextValue, ExecutionCheckpoint, utc_now


@dataclass
class ExecutionContext:
    """Transient per-execution state, rebuilt from a checkpoint after a restart.

    The shared data is the only channel for step-to-step data flow. Locks are
    advisory: agents that touch a shared external resource (one calendar, one
    inbox) are expected to acquire the lock by name and release it afterwards.
    """

    execution_id: str
    user_id: str
    workspace_id: Optional[str] = None
    shared_data: dict[str, ContextValue] = field(default_factory=dict)
    locks: set[str] = field(default_factory=set)
    started_at: datetime = field(default_factory=utc_now)

    def set(self, key: str, value: Any, created_by: str, *, overwrite: bool = True) -> None:
        if not overwrite and key in self.shared_data:
            raise KeyError(f'Context key "{key}" already exists')
        self.shared_data[key] = ContextValue(value=value, created_by=created_by)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.shared_data.get(key)
        return default if entry is None else entry.value

    def has(self, key: str) -> bool:
        return key in self.shared_data

    def delete(self, key: str) -> bool:
        return self.shared_data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self.shared_data)

    def snapshot(self) -> dict[str, ContextValue]:
        """Deep copy of the shared data, suitable for a checkpoint."""
        return {key: entry.model_copy(deep=True) for key, entry in self.shared_data.items()}

    def values(self) -> dict[str, Any]:
        return {key: entry.value for key, entry in self.shared_data.items()}

    def acquire_lock(self, name: str) -> bool:
        if name in self.locks:
            return False
        self.locks.add(name)
        return True

    def release_lock(self, name: str) -> None:
        self.locks.discard(name)

    @classmethod
    def from_checkpoint(
        cls,
        checkpoint: ExecutionCheckpoint,
        user_id: str,
        workspace_id: Optional[str] = None,
    ) -> ExecutionContext:
        """Rebuild a context from a checkpoint. Locks are never restored."""
        return cls(
            execution_id=checkpoint.execution_id,
            user_id=user_id,
            workspace_id=workspace_id,
            shared_data={
                key: entry.model_copy(deep=True) for key, entry in checkpoint.context.items()
            },
        )


def step_output_key(step_id: str) -> str:
    """Context key under which a completed step's output is published."""
    return f"step:{step_id}"
