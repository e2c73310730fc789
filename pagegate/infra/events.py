from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from pagegate.domain.models import EventEnvelope, EventRecord
from pagegate.infra.db import engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]

PAGE_ACCESS_COMMITTED = "page_access.committed"
USER_ROLE_BOUND = "user_role.bound"
USER_ROLE_UNBOUND = "user_role.unbound"

ALL_EVENTS = "*"


class EventBus:
    """Stores each event as an ``EventRecord``, then fans it out in process.

    Subscribers run after the record is written; ``notify`` reaches them
    without a write when the record could not be stored.
    """

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    @staticmethod
    def record(event: EventEnvelope, session: Session) -> None:
        session.add(EventRecord(**event.model_dump()))

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        if session is None:
            with Session(engine) as own_session:
                self.record(event, own_session)
                own_session.commit()
        else:
            self.record(event, session)
        self.notify(event)

    def notify(self, event: EventEnvelope) -> None:
        for handler in [*self._subscribers.get(event.event_type, []), *self._subscribers.get(ALL_EVENTS, [])]:
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, actor_id=actor_id, payload=payload)
        self.publish(event)
        logger.debug("published %s %s", event_type, event.event_id)
        return event


event_bus = EventBus()
