"""Lazy token-keyed resolution container.

This package provides a small container that maps tokens to literal values or
zero-argument factories, resolves each token on first access, memoizes the
result and notifies observers of every lifecycle change.

Exports:
- `Container` / `make_root`: the container and its constructor function.
- `Literal`, `Factory`: explicit registry entries, overriding the automatic
  "callables are factories" classification.
- `Deferred`: re-awaitable wrapper cached for factories returning awaitables.
- `Event` and its payloads (`ContainerUpserted`, `ContainerUpdated`,
  `ContainerDeleted`, `ContainerDisposed`) for `Container.on`.
- `ResolveError`, `TokenError`, `ContainerRemoved`: error types.
"""

from ._container import (
    Container,
    ContainerRemoved,
    ContainerView,
    LazybindError,
    ResolveError,
    TokenError,
    make_root,
)
from ._entries import Deferred, Factory, Literal
from ._events import (
    ContainerDeleted,
    ContainerDisposed,
    ContainerUpdated,
    ContainerUpserted,
    Event,
    EventBus,
)


__all__ = [
    "Container",
    "ContainerDeleted",
    "ContainerDisposed",
    "ContainerRemoved",
    "ContainerUpdated",
    "ContainerUpserted",
    "ContainerView",
    "Deferred",
    "Event",
    "EventBus",
    "Factory",
    "LazybindError",
    "Literal",
    "ResolveError",
    "TokenError",
    "make_root",
]
