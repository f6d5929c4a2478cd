"""
Typed lifecycle events and the publisher that fans them out.

Events are frozen dataclasses with a class-level ``name``. Every subscriber
owns a queue drained by its own supervisor task, which gives two guarantees:

- a handler that raises is logged and skipped; other subscribers and the
  publishing workflow step are unaffected
- each subscriber receives events in exactly the order they were published,
  so events of one workflow run are delivered FIFO

Handlers may be plain functions or coroutine functions.

Example:
    >>> publisher = EventPublisher()
    >>> publisher.subscribe(WorkflowCompleted, lambda event: print(event.status))
    >>> await publisher.publish(WorkflowCompleted(workflow_id="wf-1", status="merged", auto_merged=True))
    >>> await publisher.drain()
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

import structlog

log = structlog.get_logger(__name__)

WILDCARD = "*"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class WorkflowEvent:
    """Base class of all lifecycle events."""

    name: ClassVar[str] = "workflow.event"

    workflow_id: str

    def payload(self) -> dict[str, Any]:
        """Event fields as a JSON-compatible dictionary."""
        data: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[item.name] = value
        return data


@dataclass(frozen=True)
class BranchCreated(WorkflowEvent):
    name: ClassVar[str] = "branch.created"

    project_path: str = ""
    task_id: str = ""
    branch_name: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class WorkflowExecuted(WorkflowEvent):
    name: ClassVar[str] = "workflow.executed"

    workflow_type: str = ""
    branch_name: str = ""
    confidence_score: float | None = None


@dataclass(frozen=True)
class PullRequestCreated(WorkflowEvent):
    name: ClassVar[str] = "pull_request.created"

    pr_url: str = ""
    branch_name: str = ""


@dataclass(frozen=True)
class WorkflowCompleted(WorkflowEvent):
    name: ClassVar[str] = "workflow.completed"

    status: str = ""
    auto_merged: bool = False
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class WorkflowFailed(WorkflowEvent):
    name: ClassVar[str] = "workflow.failed"

    error: str = ""
    failure_point: str | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class FallbackAttempted(WorkflowEvent):
    name: ClassVar[str] = "workflow.fallback"

    outcome: str = ""
    failure_point: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class WorkflowCancelled(WorkflowEvent):
    name: ClassVar[str] = "workflow.cancelled"

    status: str = ""
    follow_up: bool = False


EventHandler = Callable[[WorkflowEvent], Awaitable[None] | None]


@dataclass
class _Subscription:
    id: str
    event_name: str
    handler: EventHandler
    queue: asyncio.Queue[WorkflowEvent] = field(default_factory=asyncio.Queue)
    worker: asyncio.Task[None] | None = None


class EventPublisher:
    """Typed publish/subscribe bus with per-subscriber supervision."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, _Subscription] = {}

    def subscribe(self, event: str | type[WorkflowEvent], handler: EventHandler) -> str:
        """Register ``handler`` for an event name, event class or ``"*"``.

        Returns:
            Subscription id for :meth:`unsubscribe`
        """
        event_name = event if isinstance(event, str) else event.name
        subscription = _Subscription(id=str(uuid.uuid4()), event_name=event_name, handler=handler)
        self._subscriptions[subscription.id] = subscription
        log.debug("event_subscribed", event_name=event_name, subscription_id=subscription.id)
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; queued events for it are discarded."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        if subscription.worker is not None:
            subscription.worker.cancel()
        return True

    async def publish(self, event: WorkflowEvent) -> int:
        """Queue ``event`` for every matching subscriber.

        Never raises because of a subscriber and never waits for handlers.

        Returns:
            Number of subscribers the event was queued for
        """
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.event_name not in (event.name, WILDCARD):
                continue
            if subscription.worker is None or subscription.worker.done():
                subscription.worker = asyncio.create_task(self._supervise(subscription))
            subscription.queue.put_nowait(event)
            delivered += 1
        log.debug("event_published", event_name=event.name, workflow_id=event.workflow_id, subscribers=delivered)
        return delivered

    async def _supervise(self, subscription: _Subscription) -> None:
        while True:
            event = await subscription.queue.get()
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "event_handler_failed",
                    event_name=event.name,
                    workflow_id=event.workflow_id,
                    subscription_id=subscription.id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                subscription.queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await asyncio.gather(
            *(s.queue.join() for s in list(self._subscriptions.values()) if s.worker is not None)
        )

    async def aclose(self) -> None:
        """Deliver queued events, then stop all supervisor tasks."""
        await self.drain()
        workers = [s.worker for s in self._subscriptions.values() if s.worker is not None]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for subscription in self._subscriptions.values():
            subscription.worker = None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
