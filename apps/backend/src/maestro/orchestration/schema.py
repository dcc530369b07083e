"""Pydantic models for executions, plans, steps, checkpoints and approvals."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    PLANNING = "PLANNING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalType(str, Enum):
    CRITICAL_ACTION = "CRITICAL_ACTION"
    MANUAL_REVIEW = "MANUAL_REVIEW"


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class ApprovalAction(BaseModel):
    """The side effect a step is about to perform."""

    type: str  # "DELETE_FILE" | "BULK_SEND_EMAIL" | "PUBLISH_POST" | ...
    description: str
    parameters: dict[str, Any] = {}
    reversible: bool = True


class EstimatedImpact(BaseModel):
    risk_level: Literal["low", "medium", "high"]
    description: str
    cost: Optional[float] = None
    affected_resources: list[str] = []


class ApprovalRequest(BaseModel):
    """One pending human decision."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    type: ApprovalType
    action: ApprovalAction
    reason: str
    estimated_impact: Optional[EstimatedImpact] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class StepInput(BaseModel):
    task: str
    context: dict[str, Any] = {}
    requirements: list[str] = []
    constraints: list[str] = []


class StepOutput(BaseModel):
    """What an agent hands back for one step."""

    success: bool
    data: dict[str, Any] = {}
    summary: str = ""
    citations: list[str] = []
    confidence: Literal["high", "medium", "low"] = "medium"
    tokens_used: int = 0


class ExecutionStep(BaseModel):
    """One agent invocation within a plan."""

    id: str = Field(default_factory=new_id)
    step_number: int
    agent_id: str
    agent_name: str
    description: str
    input: StepInput
    output: Optional[StepOutput] = None
    status: StepStatus = StepStatus.PENDING
    dependencies: list[str] = []  # step ids
    optional: bool = False
    action: Optional[ApprovalAction] = None
    needs_review: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    error: Optional[str] = None


class DependencyEdge(BaseModel):
    from_step: str
    to_step: str
    type: Literal["data", "sequence", "optional"] = "sequence"


class DependencyGraph(BaseModel):
    nodes: list[str] = []
    edges: list[DependencyEdge] = []

    def dependencies_of(self, step_id: str) -> list[str]:
        return [edge.from_step for edge in self.edges if edge.to_step == step_id]


class ExecutionPlan(BaseModel):
    id: str = Field(default_factory=new_id)
    execution_id: str
    steps: list[ExecutionStep]
    dependencies: DependencyGraph = Field(default_factory=DependencyGraph)
    estimated_duration_ms: Optional[int] = None
    estimated_tokens: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)

    def step(self, step_id: str) -> ExecutionStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


class ExecutionBatch(BaseModel):
    """Steps whose dependencies are all satisfied at one point in time."""

    batch_number: int
    steps: list[ExecutionStep]
    status: BatchStatus = BatchStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

StepErrorType = Literal[
    "agent_error",
    "approval_rejected",
    "approval_timeout",
    "quality_rejected",
    "precondition_failed",
]


class StepExecutionResult(BaseModel):
    step_id: str
    success: bool
    output: Optional[StepOutput] = None
    error: Optional[str] = None
    error_type: Optional[StepErrorType] = None
    duration_ms: int = 0
    tokens_used: int = 0
    attempts: int = 0
    needs_review: bool = False


class StepSummary(BaseModel):
    step_number: int
    agent_name: str
    status: StepStatus
    duration_ms: Optional[int] = None
    tokens_used: Optional[int] = None


class ExecutionResult(BaseModel):
    success: bool
    output: str
    structured: dict[str, Any] = {}
    summary: str
    steps: list[StepSummary] = []
    total_duration_ms: int = 0
    total_tokens_used: int = 0


class Execution(BaseModel):
    """One user request's run through the engine."""

    id: str = Field(default_factory=new_id)
    user_id: str
    workspace_id: Optional[str] = None
    request: str
    status: ExecutionStatus = ExecutionStatus.PLANNING
    plan: Optional[ExecutionPlan] = None
    current_step: int = 0
    total_steps: int = 0
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def transition(self, status: ExecutionStatus, error: str | None = None) -> None:
        """Move to ``status`` keeping completed_at in step with terminality."""
        now = utc_now()
        self.status = status
        self.updated_at = now
        if error is not None:
            self.error = error
        self.completed_at = now if status.is_terminal else None


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


class ContextValue(BaseModel):
    value: Any = None
    created_by: str
    created_at: datetime = Field(default_factory=utc_now)


class CheckpointState(BaseModel):
    current_step: int = 0
    completed_steps: list[str] = []
    failed_steps: list[str] = []
    step_results: dict[str, StepOutput] = {}
    metadata: dict[str, Any] = {}


class ExecutionCheckpoint(BaseModel):
    execution_id: str
    checkpoint_number: int
    state: CheckpointState
    context: dict[str, ContextValue] = {}
    created_at: datetime = Field(default_factory=utc_now)
