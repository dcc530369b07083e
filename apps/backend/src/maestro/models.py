"""API models for Maestro."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ExecutionRequest(BaseModel):
    """Request to start a new execution."""

    request: str = Field(..., min_length=1, description="What the user wants done, in natural language")
    user_id: str = Field(..., description="Who is asking")
    workspace_id: Optional[str] = Field(None, description="Workspace the execution belongs to")
    context: Optional[dict[str, Any]] = Field(
        None,
        description="Additional context handed to the planner",
    )


class ApprovalDecision(BaseModel):
    """A human decision on a pending approval request."""

    user_id: str = Field(..., description="Who made the decision")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str = "Maestro Backend"
    active_executions: int = 0
