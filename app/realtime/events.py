from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

_LOG = logging.getLogger("app.events")


@dataclass(frozen=True)
class DomainEvent:
    pass


@dataclass(frozen=True)
class ProposalSubmitted(DomainEvent):
    case_id: str
    case_kind: str
    proposal_id: str
    kind: str
    citizen_id: str
    lawyer_id: str
    message: str | None = None


@dataclass(frozen=True)
class ProposalRejected(DomainEvent):
    case_id: str
    case_kind: str
    proposal_id: str
    kind: str
    citizen_id: str
    lawyer_id: str
    responder_id: str


@dataclass(frozen=True)
class CaseAssigned(DomainEvent):
    case_id: str
    case_kind: str
    citizen_id: str
    lawyer_id: str
    proposal_id: str
    channel_id: str
    rejected_proposal_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class CaseStatusChanged(DomainEvent):
    case_id: str
    case_kind: str
    citizen_id: str
    lawyer_id: str | None
    from_status: str
    to_status: str
    changed_by: str


@dataclass(frozen=True)
class ConnectionRequested(DomainEvent):
    connection_id: str
    citizen_id: str
    lawyer_id: str
    message: str
    connection_type: str


@dataclass(frozen=True)
class ConnectionAccepted(DomainEvent):
    connection_id: str
    citizen_id: str
    lawyer_id: str
    channel_id: str
    response_message: str | None = None


@dataclass(frozen=True)
class ConnectionRejected(DomainEvent):
    connection_id: str
    citizen_id: str
    lawyer_id: str
    response_message: str | None = None


EventHandler = Callable[[DomainEvent], None]


class DomainEventBus:
    """Synchronous fan-out of committed domain events to subscribers.

    Publishers call ``publish`` after their transaction commits; subscribers must
    not block (the gateway hands events over to its own event loop).
    """

    def __init__(self):
        self._handlers: list[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                _LOG.exception("event handler failed for %s", type(event).__name__)


def publish_event(events: DomainEventBus | None, event: DomainEvent) -> None:
    if events is not None:
        events.publish(event)
