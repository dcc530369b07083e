"""Lifecycle event bus and an optional webhook sink."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from ..log import get_logger
from .schema import utc_now

logger = get_logger(__name__)

WILDCARD = "*"


class Event(BaseModel):
    name: str  # "execution.started" | "step.completed" | "approval.required" | ...
    execution_id: str
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utc_now)


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus(Protocol):
    async def publish(self, event: Event) -> None: ...

    def subscribe(self, event_name: str, handler: EventHandler) -> None: ...


class InMemoryEventBus:
    """Dispatches events to handlers subscribed by exact name or ``*``.

    A failing handler is logged and never reaches the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    async def publish(self, event: Event) -> None:
        handlers = self._handlers.get(event.name, []) + self._handlers.get(WILDCARD, [])
        if not handlers:
            return

        logger.debug(
            "Publishing %s for execution %s to %d handler(s)",
            event.name, event.execution_id, len(handlers),
        )
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %s", handler, event.name)

    async def emit(self, name: str, execution_id: str, **payload: Any) -> None:
        await self.publish(Event(name=name, execution_id=execution_id, payload=payload))


class WebhookEventSink:
    """POSTs each event as JSON to a configured URL."""

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self.http = http_client or httpx.AsyncClient(timeout=10.0)

    async def __call__(self, event: Event) -> None:
        resp = await self.http.post(self.url, json=event.model_dump(mode="json"))
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self.http.aclose()
