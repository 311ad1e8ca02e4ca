from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from sqlmodel import Session

from app.domain.models import EventEnvelope, EventRecord
from app.infra.db import get_engine
from app.infra.logging import get_logger

EventHandler = Callable[[EventEnvelope], None]

EVENT_SUBSCRIPTION_CREATED = "subscription.created"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"
EVENT_SUBSCRIPTION_EXPIRED = "subscription.expired"
EVENT_TRIAL_EXPIRED = "tenant.trial_expired"
EVENT_PERMISSION_CHANGED = "permission.changed"

logger = get_logger(__name__)


class Notifier(Protocol):
    def publish(self, event: EventEnvelope, session: Session | None = None) -> None: ...


class EventBus:
    """Persists governance events and fans them out to in-process handlers.

    When a session is passed the event row joins that transaction. Handlers
    run after the row is staged; a failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(get_engine())
        try:
            session.add(
                EventRecord(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    tenant_id=event.tenant_id,
                    ts=event.ts,
                    actor_id=event.actor_id,
                    payload=event.payload,
                )
            )
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed", event_type=event.event_type)

    def publish_dict(
        self,
        event_type: str,
        tenant_id: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        session: Session | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            tenant_id=tenant_id,
            actor_id=actor_id,
            payload=payload,
        )
        self.publish(event, session=session)
        return event


class NullNotifier:
    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        return None


event_bus = EventBus()
