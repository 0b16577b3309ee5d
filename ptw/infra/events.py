from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from ptw.domain.models import EventEnvelope, EventRecord

EventHandler = Callable[[EventEnvelope], None]

logger = structlog.get_logger(__name__)


class EventBus:
    """Outbound workflow events.

    Events are published only after the originating transaction has
    committed. Each event is persisted to ``events`` and then handed to
    every subscriber; neither a persistence nor a handler failure is
    propagated to the publisher.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def _persist(self, event: EventEnvelope, session: Session | None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(self._engine)
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                ts=event.ts,
                actor_id=event.actor_id,
                permit_id=event.permit_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        try:
            self._persist(event, session)
        except Exception:
            logger.exception("event_persist_failed", event_type=event.event_type, event_id=event.event_id)

        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: int | None = None,
        permit_id: int | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            actor_id=actor_id,
            permit_id=permit_id,
            payload=payload,
        )
        self.publish(event)
        return event
