from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Union


logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable


class Event(Enum):
    UPSERTED = "upserted"
    UPDATED = "updated"
    DELETED = "deleted"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class ContainerUpserted:
    key: Hashable
    new_value: Any


@dataclass(frozen=True)
class ContainerUpdated:
    key: Hashable
    new_value: Any


@dataclass(frozen=True)
class ContainerDeleted:
    key: Hashable


@dataclass(frozen=True)
class ContainerDisposed:
    key: Hashable


Payload = Union[ContainerUpserted, ContainerUpdated, ContainerDeleted, ContainerDisposed]

_PAYLOAD_TYPES: dict[Event, type] = {
    Event.UPSERTED: ContainerUpserted,
    Event.UPDATED: ContainerUpdated,
    Event.DELETED: ContainerDeleted,
    Event.DISPOSED: ContainerDisposed,
}


class EventBus:
    """In-process publish/subscribe channel for container lifecycle events.

    - dispatch is synchronous, in registration order
    - a failing listener is logged and does not stop delivery to the others
    - `on` returns an idempotent unsubscribe function.
    """

    def __init__(self) -> None:
        self._listeners: dict[Event, list[Callable[[Any], object]]] = {event: [] for event in Event}

    def on(self, event: Event | str, listener: Callable[[Any], object]) -> Callable[[], None]:
        """Register `listener` for `event`; return a function that detaches it."""
        listeners = self._listeners[Event(event)]
        listeners.append(listener)
        bound = True

        def unbind() -> None:
            nonlocal bound
            if bound:
                bound = False
                listeners.remove(listener)

        return unbind

    def emit(self, event: Event | str, payload: Payload) -> None:
        event = Event(event)
        expected = _PAYLOAD_TYPES[event]
        if not isinstance(payload, expected):
            msg = f"'{event.value}' event expects a {expected.__name__} payload, got {type(payload).__name__}"
            raise TypeError(msg)

        # Snapshot: listeners may unsubscribe while being notified.
        for listener in list(self._listeners[event]):
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener %r failed handling '%s' event for %r", listener, event.value, payload.key)

    def listener_count(self, event: Event | str) -> int:
        return len(self._listeners[Event(event)])
