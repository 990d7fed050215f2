from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Generator


@dataclass(frozen=True)
class Literal:
    """Registry entry holding a ready-made value.

    Wrap a callable in `Literal` to register the callable itself instead of
    having it invoked on first access.
    """

    value: Any


@dataclass(frozen=True)
class Factory:
    """Registry entry producing its value on first access."""

    fn: Callable[[], Any]


Entry = Union[Literal, Factory]


class Deferred:
    """Re-awaitable wrapper around an awaitable produced by a factory.

    A bare coroutine can be awaited only once, while a cached value may be
    awaited by any number of consumers (batch resolution, disposal,
    subscriptions). The wrapped awaitable is scheduled as soon as an event
    loop is available and every `await` yields the same settled result.
    """

    __slots__ = ("_awaitable", "_future")

    def __init__(self, awaitable: Awaitable[Any]) -> None:
        self._awaitable: Awaitable[Any] | None = awaitable
        self._future: asyncio.Future[Any] | None = None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: schedule on first await.
            pass
        else:
            self._schedule()

    def _schedule(self) -> asyncio.Future[Any]:
        if self._future is None:
            self._future = asyncio.ensure_future(_checked_awaitable(self._awaitable))
            self._future.add_done_callback(_mark_retrieved)
            self._awaitable = None
        return self._future

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def __await__(self) -> Generator[Any, None, Any]:
        return self._schedule().__await__()

    def __repr__(self) -> str:
        state = "settled" if self.done() else "pending"
        return f"<Deferred {state}>"


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # Cached values may never be awaited.
    if not future.cancelled():
        future.exception()


def _checked_awaitable(awaitable: Awaitable[Any] | None) -> Awaitable[Any]:
    if awaitable is None:
        msg = "Deferred has already handed its awaitable over to a future"
        raise RuntimeError(msg)
    return awaitable


def to_entry(raw: object) -> Entry:
    """Classify a raw registry value into a `Literal` or a `Factory`."""
    if isinstance(raw, (Literal, Factory)):
        return raw
    if callable(raw):
        return Factory(fn=raw)
    return Literal(value=raw)


def produce(entry: Entry) -> object:
    """Produce the value to cache for `entry`.

    Factory results that are awaitable are wrapped in a `Deferred`, literal
    values are handed back as registered.
    """
    if isinstance(entry, Literal):
        return entry.value

    value = entry.fn()
    if isinstance(value, Deferred) or not inspect.isawaitable(value):
        return value
    return Deferred(value)
