"""SQLite-backed persistence for executions, checkpoints and approval requests."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..errors import AlreadyResolvedError, NotFoundError
from ..log import get_logger
from .context import ExecutionContext
from .database import init_db
from .schema import (
    ApprovalAction,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    CheckpointState,
    ContextValue,
    EstimatedImpact,
    Execution,
    ExecutionCheckpoint,
    ExecutionPlan,
    ExecutionResult,
    ExecutionStatus,
    StepStatus,
    utc_now,
)

logger = get_logger(__name__)


class StateManager:
    """Durable store for executions and their checkpoints.

    Every read goes to the database; nothing is cached in-process, so a second
    instance opened on the same file observes the same state.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn = init_db(db_path)
        self._lock = threading.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def approval_store(self) -> ApprovalStore:
        """An approval store on this connection, serialised by the same lock."""
        return ApprovalStore(self._conn, self._lock)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def save_execution(self, execution: Execution) -> str:
        """Upsert an execution keyed by id. Returns the execution id."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO executions
                   (id, user_id, workspace_id, request, status, plan, current_step,
                    total_steps, result, error, created_at, updated_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       status = excluded.status,
                       plan = excluded.plan,
                       current_step = excluded.current_step,
                       total_steps = excluded.total_steps,
                       result = excluded.result,
                       error = excluded.error,
                       updated_at = excluded.updated_at,
                       completed_at = excluded.completed_at""",
                (
                    execution.id,
                    execution.user_id,
                    execution.workspace_id,
                    execution.request,
                    execution.status.value,
                    execution.plan.model_dump_json() if execution.plan else None,
                    execution.current_step,
                    execution.total_steps,
                    execution.result.model_dump_json() if execution.result else None,
                    execution.error,
                    execution.created_at.isoformat(),
                    execution.updated_at.isoformat(),
                    execution.completed_at.isoformat() if execution.completed_at else None,
                ),
            )
            self._conn.commit()
        return execution.id

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM executions WHERE id = ?", (execution_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_execution(row)

    def get_running_executions(self) -> list[Execution]:
        """Executions persisted as RUNNING, newest first."""
        return self._executions_with_status(ExecutionStatus.RUNNING)

    def list_executions(self, user_id: Optional[str] = None) -> list[Execution]:
        with self._lock:
            if user_id is not None:
                rows = self._conn.execute(
                    "SELECT * FROM executions WHERE user_id = ? ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM executions ORDER BY created_at DESC"
                ).fetchall()
        return [_row_to_execution(row) for row in rows]

    def _executions_with_status(self, status: ExecutionStatus) -> list[Execution]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM executions WHERE status = ? ORDER BY created_at DESC",
                (status.value,),
            ).fetchall()
        return [_row_to_execution(row) for row in rows]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(
        self,
        execution: Execution,
        context: Optional[ExecutionContext] = None,
        metadata: Optional[dict] = None,
    ) -> ExecutionCheckpoint:
        """Append a checkpoint numbered one past the latest for this execution."""
        state = _checkpoint_state(execution, metadata or {})
        shared = context.snapshot() if context is not None else {}
        created_at = utc_now()
        context_json = json.dumps(
            {key: value.model_dump(mode="json") for key, value in shared.items()}
        )

        with self._lock:
            cursor = self._conn.execute(
                """INSERT INTO execution_checkpoints
                   (execution_id, checkpoint_number, state, context, created_at)
                   SELECT ?, COALESCE(MAX(checkpoint_number), 0) + 1, ?, ?, ?
                   FROM execution_checkpoints WHERE execution_id = ?""",
                (
                    execution.id,
                    state.model_dump_json(),
                    context_json,
                    created_at.isoformat(),
                    execution.id,
                ),
            )
            number = self._conn.execute(
                "SELECT checkpoint_number FROM execution_checkpoints WHERE rowid = ?",
                (cursor.lastrowid,),
            ).fetchone()[0]
            self._conn.commit()

        logger.info("Checkpoint %d created for execution %s", number, execution.id)
        return ExecutionCheckpoint(
            execution_id=execution.id,
            checkpoint_number=number,
            state=state,
            context=shared,
            created_at=created_at,
        )

    def get_latest_checkpoint(self, execution_id: str) -> Optional[ExecutionCheckpoint]:
        with self._lock:
            row = self._conn.execute(
                """SELECT * FROM execution_checkpoints WHERE execution_id = ?
                   ORDER BY checkpoint_number DESC LIMIT 1""",
                (execution_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_checkpoint(row)

    def list_checkpoints(self, execution_id: str) -> list[ExecutionCheckpoint]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM execution_checkpoints WHERE execution_id = ?
                   ORDER BY checkpoint_number""",
                (execution_id,),
            ).fetchall()
        return [_row_to_checkpoint(row) for row in rows]


class ApprovalStore:
    """Persists approval requests in the same database as executions."""

    def __init__(self, conn: sqlite3.Connection, lock: Optional[threading.Lock] = None):
        self._conn = conn
        self._lock = lock or threading.Lock()

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def insert(self, approval: ApprovalRequest) -> str:
        with self._lock:
            self._conn.execute(
                """INSERT INTO pending_approvals
                   (id, execution_id, step_id, approval_type, action, reason,
                    estimated_impact, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    approval.id,
                    approval.execution_id,
                    approval.step_id,
                    approval.type.value,
                    approval.action.model_dump_json(),
                    approval.reason,
                    approval.estimated_impact.model_dump_json()
                    if approval.estimated_impact
                    else None,
                    approval.status.value,
                    approval.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return approval.id

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pending_approvals WHERE id = ?", (approval_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_approval(row)

    def resolve(self, approval_id: str, status: ApprovalStatus, resolved_by: str) -> ApprovalRequest:
        """Move a PENDING request to ``status``. Resolving twice is an error."""
        resolved_at = utc_now()
        with self._lock:
            cursor = self._conn.execute(
                """UPDATE pending_approvals
                   SET status = ?, resolved_at = ?, resolved_by = ?
                   WHERE id = ? AND status = 'PENDING'""",
                (status.value, resolved_at.isoformat(), resolved_by, approval_id),
            )
            self._conn.commit()
            updated = cursor.rowcount
            row = self._conn.execute(
                "SELECT * FROM pending_approvals WHERE id = ?", (approval_id,)
            ).fetchone()

        if row is None:
            raise NotFoundError(f"Approval {approval_id} not found")
        approval = _row_to_approval(row)
        if updated == 0:
            raise AlreadyResolvedError(
                f"Approval {approval_id} was already {approval.status.value.lower()}"
            )
        return approval

    def latest_for_step(self, execution_id: str, step_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            row = self._conn.execute(
                """SELECT * FROM pending_approvals WHERE execution_id = ? AND step_id = ?
                   ORDER BY created_at DESC LIMIT 1""",
                (execution_id, step_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_approval(row)

    def list_pending(self, execution_id: Optional[str] = None) -> list[ApprovalRequest]:
        with self._lock:
            if execution_id is not None:
                rows = self._conn.execute(
                    """SELECT * FROM pending_approvals
                       WHERE execution_id = ? AND status = 'PENDING' ORDER BY created_at""",
                    (execution_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM pending_approvals WHERE status = 'PENDING' ORDER BY created_at"
                ).fetchall()
        return [_row_to_approval(row) for row in rows]


def _checkpoint_state(execution: Execution, metadata: dict) -> CheckpointState:
    steps = execution.plan.steps if execution.plan else []
    return CheckpointState(
        current_step=execution.current_step,
        completed_steps=[s.id for s in steps if s.status == StepStatus.COMPLETED],
        failed_steps=[s.id for s in steps if s.status == StepStatus.FAILED],
        step_results={
            s.id: s.output
            for s in steps
            if s.status == StepStatus.COMPLETED and s.output is not None
        },
        metadata={"status": execution.status.value, **metadata},
    )


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_execution(row: sqlite3.Row) -> Execution:
    return Execution(
        id=row["id"],
        user_id=row["user_id"],
        workspace_id=row["workspace_id"],
        request=row["request"],
        status=ExecutionStatus(row["status"]),
        plan=ExecutionPlan.model_validate_json(row["plan"]) if row["plan"] else None,
        current_step=row["current_step"],
        total_steps=row["total_steps"],
        result=ExecutionResult.model_validate_json(row["result"]) if row["result"] else None,
        error=row["error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_checkpoint(row: sqlite3.Row) -> ExecutionCheckpoint:
    context = {
        key: ContextValue.model_validate(value)
        for key, value in json.loads(row["context"]).items()
    }
    return ExecutionCheckpoint(
        execution_id=row["execution_id"],
        checkpoint_number=row["checkpoint_number"],
        state=CheckpointState.model_validate_json(row["state"]),
        context=context,
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_approval(row: sqlite3.Row) -> ApprovalRequest:
    return ApprovalRequest(
        id=row["id"],
        execution_id=row["execution_id"],
        step_id=row["step_id"],
        type=ApprovalType(row["approval_type"]),
        action=ApprovalAction.model_validate_json(row["action"]),
        reason=row["reason"],
        estimated_impact=EstimatedImpact.model_validate_json(row["estimated_impact"])
        if row["estimated_impact"]
        else None,
        status=ApprovalStatus(row["status"]),
        created_at=_parse_dt(row["created_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
        resolved_by=row["resolved_by"],
    )
