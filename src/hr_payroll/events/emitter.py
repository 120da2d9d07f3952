"""Event emitter for publishing domain events.

The emitter provides:
- Handler registration with type filtering
- Category-based routing
- Error isolation (handler failures don't break other handlers)
- Dispatch deferred until a database transaction commits
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from hr_payroll.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

_PENDING_EVENTS = "hr_payroll.pending_events"

T = TypeVar("T", bound=DomainEvent)

EventHandler = Callable[[DomainEvent], None]


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class EventEmitter:
    """Synchronous event emitter.

    Handlers are isolated: if one fails, others still receive the event.
    Notification delivery is registered as an ordinary handler:

        emitter = EventEmitter()
        emitter.on_all(notifier.notify)

        emitter.emit_on_commit(session, event)
        await session.commit()  # handlers run here; a rollback drops the event
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(
        self,
        event_type: type[T] | list[type[T]],
        handler: EventHandler,
    ) -> None:
        """Register handler for specific event type(s)."""
        if isinstance(event_type, list):
            types = {t.__name__ for t in event_type}
        else:
            types = {event_type.__name__}
        self._handlers.append(HandlerRegistration(handler, types, None))

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler, None, cats))

    def on_all(self, handler: EventHandler) -> None:
        """Register handler for all events."""
        self._handlers.append(HandlerRegistration(handler, None, None))

    def off(self, handler: EventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        return self._dispatch(event)

    def emit_on_commit(self, session: AsyncSession | Session, event: DomainEvent) -> None:
        """Hold an event until the session's transaction commits.

        The event is dropped if that transaction rolls back instead.
        """
        sync_session = getattr(session, "sync_session", session)
        sync_session.info.setdefault(_PENDING_EVENTS, []).append((self, event))

    def _dispatch(self, event: DomainEvent) -> list[Exception]:
        errors: list[Exception] = []
        event_type = event.event_type
        event_category = event.category

        for reg in self._handlers:
            if reg.event_types and event_type not in reg.event_types:
                continue
            if reg.categories and event_category not in reg.categories:
                continue
            try:
                reg.handler(event)
            except Exception as e:
                logger.exception(
                    "Handler %s failed for event %s",
                    reg.handler,
                    event_type,
                )
                errors.append(e)

        return errors


@sa_event.listens_for(Session, "after_commit")
def _dispatch_committed_events(session: Session) -> None:
    if session.get_nested_transaction() is not None:
        # Savepoint released; the enclosing transaction is still open
        return
    for emitter, event in session.info.pop(_PENDING_EVENTS, []):
        emitter.emit(event)


@sa_event.listens_for(Session, "after_transaction_end")
def _drop_uncommitted_events(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is None:
        session.info.pop(_PENDING_EVENTS, None)
