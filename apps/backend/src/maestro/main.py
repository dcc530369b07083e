from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    AlreadyResolvedError,
    InvalidStateTransitionError,
    NotFoundError,
    OrchestrationError,
    PlanningError,
)
from .log import configure_logging, get_logger
from .models import ApprovalDecision, ExecutionRequest, HealthResponse
from .runtime import Runtime, create_runtime

load_dotenv()

logger = get_logger(__name__)

app = FastAPI(
    title="Maestro API",
    description="Plans natural-language requests into multi-agent executions and runs them",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built on startup unless one was installed beforehand (tests do this)
runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return runtime


def _http_error(error: OrchestrationError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidStateTransitionError, AlreadyResolvedError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, PlanningError):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


@app.on_event("startup")
async def startup() -> None:
    global runtime
    settings = get_settings()
    configure_logging(settings.log_level)
    if runtime is None:
        runtime = create_runtime(settings)
    if runtime.settings.recover_on_startup:
        recovered = await runtime.orchestrator.recover_running_executions()
        if recovered:
            logger.info("Recovered executions on startup: %s", ", ".join(recovered))


@app.on_event("shutdown")
async def shutdown() -> None:
    if runtime is not None:
        await runtime.orchestrator.shutdown()


@app.get("/api/health", response_model=HealthResponse)
def health():
    active = runtime.orchestrator.active_count() if runtime is not None else 0
    return HealthResponse(status="ok", active_executions=active)


# --- Executions ---

@app.post("/api/executions", status_code=201)
async def start_execution(request: ExecutionRequest):
    rt = get_runtime()
    try:
        execution = await rt.orchestrator.start(
            request.request,
            request.user_id,
            {"workspace_id": request.workspace_id, "context": request.context or {}},
        )
    except OrchestrationError as e:
        raise _http_error(e)
    return execution.model_dump(mode="json")


@app.get("/api/executions/{execution_id}")
def get_execution(execution_id: str):
    rt = get_runtime()
    try:
        execution = rt.orchestrator.get_execution(execution_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return execution.model_dump(mode="json")


@app.post("/api/executions/{execution_id}/pause")
async def pause_execution(execution_id: str):
    try:
        execution = await get_runtime().orchestrator.pause(execution_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return execution.model_dump(mode="json")


@app.post("/api/executions/{execution_id}/resume")
async def resume_execution(execution_id: str):
    try:
        execution = await get_runtime().orchestrator.resume(execution_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return execution.model_dump(mode="json")


@app.post("/api/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str):
    try:
        execution = await get_runtime().orchestrator.cancel(execution_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return execution.model_dump(mode="json")


# --- Approvals ---

@app.get("/api/executions/{execution_id}/approvals")
def list_approvals(execution_id: str):
    rt = get_runtime()
    try:
        rt.orchestrator.get_execution(execution_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return [a.model_dump(mode="json") for a in rt.hitl.get_pending_approvals(execution_id)]


@app.post("/api/approvals/{approval_id}/approve")
async def approve(approval_id: str, decision: ApprovalDecision):
    try:
        approval = get_runtime().hitl.approve(approval_id, decision.user_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return approval.model_dump(mode="json")


@app.post("/api/approvals/{approval_id}/reject")
async def reject(approval_id: str, decision: ApprovalDecision):
    try:
        approval = get_runtime().hitl.reject(approval_id, decision.user_id)
    except OrchestrationError as e:
        raise _http_error(e)
    return approval.model_dump(mode="json")
