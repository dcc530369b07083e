"""Explicit construction of every service the orchestrator needs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .agents.registry import AgentRegistry
from .config import Settings
from .log import get_logger
from .orchestration.coordinator import ParallelCoordinator
from .orchestration.events import InMemoryEventBus, WILDCARD, WebhookEventSink
from .orchestration.orchestrator import MasterOrchestrator
from .orchestration.planner import AgentPlanner, Planner
from .orchestration.state import ApprovalStore, StateManager
from .orchestration.steps import StepRunner
from .orchestration.tasks import BackgroundRunner
from .quality.evaluation import Evaluator, ModelEvaluator
from .quality.gate import QualityGate
from .safety.hitl import HITLGate
from .safety.rate_limiter import RateLimiter

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    state: StateManager
    approvals: ApprovalStore
    hitl: HITLGate
    rate_limiter: RateLimiter
    registry: AgentRegistry
    events: InMemoryEventBus
    orchestrator: MasterOrchestrator
    webhook: Optional[WebhookEventSink] = None

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        if self.webhook is not None:
            await self.webhook.aclose()
        self.state.close()


def create_runtime(
    settings: Settings,
    *,
    planner: Optional[Planner] = None,
    registry: Optional[AgentRegistry] = None,
    evaluator: Optional[Evaluator] = None,
    rate_limiter: Optional[RateLimiter] = None,
    hitl: Optional[HITLGate] = None,
) -> Runtime:
    """Wire the services together. Any collaborator can be swapped by passing it in."""
    state = StateManager(settings.database_path)
    approvals = state.approval_store()
    rate_limiter = rate_limiter or RateLimiter()
    registry = registry or AgentRegistry.from_builtins(settings, rate_limiter)
    hitl = hitl or HITLGate(
        approvals,
        poll_interval=settings.approval_poll_interval_seconds,
        timeout=settings.approval_timeout_seconds,
    )

    events = InMemoryEventBus()
    webhook = None
    if settings.event_webhook_url:
        webhook = WebhookEventSink(settings.event_webhook_url)
        events.subscribe(WILDCARD, webhook)
        logger.info("Forwarding events to %s", settings.event_webhook_url)

    step_runner = StepRunner(
        registry=registry,
        hitl=hitl,
        quality_gate=QualityGate(evaluator or ModelEvaluator()),
        rate_limiter=rate_limiter,
        events=events,
        max_fix_attempts=settings.max_fix_attempts,
        max_rate_limit_retries=settings.max_rate_limit_retries,
    )
    orchestrator = MasterOrchestrator(
        state=state,
        planner=planner or AgentPlanner(registry, max_turns=settings.planner_max_turns),
        coordinator=ParallelCoordinator(settings.max_concurrent_steps),
        step_runner=step_runner,
        events=events,
        runner=BackgroundRunner(),
    )
    return Runtime(
        settings=settings,
        state=state,
        approvals=approvals,
        hitl=hitl,
        rate_limiter=rate_limiter,
        registry=registry,
        events=events,
        orchestrator=orchestrator,
        webhook=webhook,
    )
