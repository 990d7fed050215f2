from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Union

from ._entries import Deferred, Entry, produce, to_entry
from ._events import (
    ContainerDeleted,
    ContainerDisposed,
    ContainerUpdated,
    ContainerUpserted,
    Event,
    EventBus,
)


logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable, Iterator, Sequence

    Token = Hashable
    Builder = Callable[["ContainerView", "Container"], Mapping[Token, Any]]
    EntriesOrBuilder = Union[Mapping[Token, Any], Builder]
    TokensOrCb = Union[Sequence[Token], Callable[[dict[Token, Token]], Sequence[Token]]]
    Callback = Callable[[Any, Any], object]

_MISSING = object()


class LazybindError(Exception):
    pass


class ResolveError(LazybindError, KeyError):
    """No registry entry exists for the requested token."""

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0]) if self.args else ""


class TokenError(LazybindError, ValueError):
    """One or more tokens are already registered."""

    def __init__(self, tokens: Sequence[Token]) -> None:
        self.tokens = list(tokens)
        super().__init__(f"Tokens already exist: [{', '.join(repr(t) for t in self.tokens)}]")


class ContainerRemoved(LazybindError):
    """Delivered to subscription callbacks when a watched token is deleted."""

    def __init__(self, token: Token) -> None:
        self.token = token
        super().__init__(f"Container {token!r} was removed")


class ContainerView(Mapping):
    """Lazy, read-only view over a container's tokens.

    Nothing is resolved until a value is looked up, either as `view[token]` or
    as `view.token` for string tokens. Lookups are equivalent to `container.get`.
    """

    __slots__ = ("_container",)

    def __init__(self, container: Container) -> None:
        self._container = container

    def __getitem__(self, token: Token) -> Any:
        return self._container.get(token)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name not in self._container:
            msg = f"{type(self).__name__!r} has no container {name!r}"
            raise AttributeError(msg)
        return self._container.get(name)

    def __contains__(self, token: object) -> bool:
        return token in self._container

    def __iter__(self) -> Iterator[Token]:
        return iter(self._container.get_tokens())

    def __len__(self) -> int:
        return len(self._container.get_tokens())

    def __repr__(self) -> str:
        return f"<ContainerView {list(self)!r}>"


class Container:
    """Lazy token-keyed container.

    - register literals or zero-argument factories under tokens
    - resolve on first access and memoize the result
    - dispose cached values through per-token disposers
    - observe lifecycle events, per token or per set of tokens.
    """

    def __init__(self) -> None:
        self._registry: dict[Token, Entry] = {}
        self._cache: dict[Token, Any] = {}
        self._disposers: dict[Token, Callable[[Any], Any]] = {}
        self._events = EventBus()
        self._pending: set[asyncio.Task[None]] = set()
        # Tokens being re-resolved by a subscription; their cache-fill events are not mutations.
        self._refilling: set[Token] = set()
        self._lock = threading.RLock()

    def __contains__(self, token: object) -> bool:
        return token in self._registry

    def on(self, event: Event | str, handler: Callable[[Any], object]) -> Callable[[], None]:
        """Listen for a lifecycle event; returns the unsubscribe function."""
        return self._events.on(event, handler)

    # Resolution

    def get(self, token: Token) -> Any:
        """Resolve `token`, invoking its factory on first access.

        The produced value is cached as is: a factory returning an awaitable
        yields a `Deferred`, which is returned without being awaited.
        """
        with self._lock:
            entry = self._registry.get(token)
            if entry is None:
                msg = f"Can't find token {token!r} value"
                raise ResolveError(msg)

            cached = self._cache.get(token, _MISSING)
            if cached is not _MISSING:
                return cached

            value = produce(entry)
            self._cache[token] = value
            logger.debug("Resolved %r", token)

        self._events.emit(Event.UPSERTED, ContainerUpserted(key=token, new_value=value))
        return value

    def get_tokens(self) -> dict[Token, Token]:
        with self._lock:
            return {token: token for token in self._registry}

    @property
    def containers(self) -> ContainerView:
        return ContainerView(self)

    async def get_container_set(self, tokens_or_cb: TokensOrCb) -> dict[Token, Any]:
        """Resolve several tokens, awaiting the deferred ones concurrently.

        The returned mapping never holds an unsettled `Deferred`.
        """
        values, deferred = self._resolve_set(self._extract_tokens(tokens_or_cb))
        return await self._settle_set(values, deferred)

    def _extract_tokens(self, tokens_or_cb: TokensOrCb) -> list[Token]:
        if callable(tokens_or_cb):
            return list(tokens_or_cb(self.get_tokens()))
        return list(tokens_or_cb)

    def _resolve_set(self, tokens: Sequence[Token]) -> tuple[dict[Token, Any], list[Token]]:
        values = {token: self.get(token) for token in tokens}
        deferred = [token for token, value in values.items() if isinstance(value, Deferred)]
        return values, deferred

    async def _settle_set(self, values: dict[Token, Any], deferred: list[Token]) -> dict[Token, Any]:
        if deferred:
            settled = await asyncio.gather(*(values[token] for token in deferred))
            values.update(zip(deferred, settled))
        return values

    # Registration

    def upsert(self, entries: EntriesOrBuilder) -> Container:
        """Register or overwrite entries, invalidating their cached values."""
        new_entries = self._build(entries)
        for token, raw in new_entries.items():
            if token in self._registry:
                self._events.emit(Event.UPDATED, ContainerUpdated(key=token, new_value=raw))

            with self._lock:
                self._store(token, raw)

            self._events.emit(Event.UPSERTED, ContainerUpserted(key=token, new_value=raw))
        return self

    def add(self, entries: EntriesOrBuilder) -> Container:
        """Register new entries.

        Raises `TokenError` listing every token that is already registered; in
        that case nothing is written.
        """
        new_entries = self._build(entries)
        with self._lock:
            duplicates = [token for token in new_entries if token in self._registry]
            if duplicates:
                raise TokenError(duplicates)

            for token, raw in new_entries.items():
                self._store(token, raw)

        for token, raw in new_entries.items():
            self._events.emit(Event.UPSERTED, ContainerUpserted(key=token, new_value=raw))
        return self

    def add_disposer(self, disposers: EntriesOrBuilder) -> Container:
        """Register cleanup functions, called with the cached value on `dispose`."""
        new_disposers = self._build(disposers)
        for token, disposer in new_disposers.items():
            if not callable(disposer):
                msg = f"Disposer for {token!r} must be callable, got {type(disposer).__name__}"
                raise TypeError(msg)

        with self._lock:
            duplicates = [token for token in new_disposers if token in self._disposers]
            if duplicates:
                raise TokenError(duplicates)
            self._disposers.update(new_disposers)

        logger.debug("Registered disposers for %s", list(new_disposers))
        return self

    def delete(self, token: Token) -> Container:
        """Drop the entry, cached value and disposer of `token`."""
        with self._lock:
            self._registry.pop(token, None)
            self._cache.pop(token, None)
            self._disposers.pop(token, None)

        logger.debug("Deleted %r", token)
        self._events.emit(Event.DELETED, ContainerDeleted(key=token))
        return self

    def _build(self, entries: EntriesOrBuilder) -> dict[Token, Any]:
        if isinstance(entries, Mapping):
            return dict(entries)

        if callable(entries):
            built = entries(self.containers, self)
            if not isinstance(built, Mapping):
                msg = f"Builder callback must return a mapping, got {type(built).__name__}"
                raise TypeError(msg)
            return dict(built)

        msg = f"Expected a mapping or a builder callback, got {type(entries).__name__}"
        raise TypeError(msg)

    def _store(self, token: Token, raw: Any) -> None:
        self._registry[token] = to_entry(raw)
        self._cache.pop(token, None)
        logger.debug("Registered %r", token)

    # Disposal

    async def dispose(self, token: Token) -> Any:
        """Run the disposer of `token` against its cached value.

        No-op unless `token` has both a disposer and a cached value. The
        cached value is dropped once the disposer settles, so the next `get`
        invokes the factory again. `DISPOSED` is emitted only if that value
        was still cached. Returns the disposer's result.
        """
        with self._lock:
            disposer = self._disposers.get(token)
            cached = self._cache.get(token, _MISSING)
        if disposer is None or cached is _MISSING:
            return None

        value = await cached if isinstance(cached, Deferred) else cached

        result = disposer(value)
        if inspect.isawaitable(result):
            result = await result

        with self._lock:
            # An upsert may have replaced the value while we were waiting.
            dropped = self._cache.get(token, _MISSING) is cached
            if dropped:
                del self._cache[token]

        if dropped:
            logger.debug("Disposed %r", token)
            self._events.emit(Event.DISPOSED, ContainerDisposed(key=token))
        return result

    async def dispose_all(self) -> None:
        """Dispose every token holding a disposer, concurrently.

        Every disposal runs to completion even if a sibling fails; the first
        failure is then re-raised and the others are logged.
        """
        with self._lock:
            tokens = list(self._disposers)

        results = await asyncio.gather(*(self.dispose(token) for token in tokens), return_exceptions=True)
        failures = [(token, r) for token, r in zip(tokens, results) if isinstance(r, BaseException)]
        if not failures:
            return

        for token, exc in failures[1:]:
            logger.error("Disposing %r failed", token, exc_info=exc)
        raise failures[0][1]

    # Subscriptions

    def subscribe_to_container(self, token: Token, cb: Callback) -> Callable[[], None]:
        """Call `cb(err, value)` whenever `token` is upserted or deleted.

        The value is re-resolved through `get` and settled when deferred. A
        deletion is reported as `cb(ContainerRemoved(token), None)`.
        """

        def on_upserted(event: ContainerUpserted) -> None:
            if event.key != token or event.key in self._refilling:
                return

            try:
                with self._refill([token]):
                    value = self.get(token)
            except Exception as exc:  # noqa: BLE001
                cb(exc, None)
                return

            if isinstance(value, Deferred):
                self._deliver_later(cb, lambda: value)
            else:
                cb(None, value)

        def on_deleted(event: ContainerDeleted) -> None:
            if event.key == token:
                cb(ContainerRemoved(token), None)

        return self._subscribe(on_upserted, on_deleted)

    def subscribe_to_container_set(self, tokens_or_cb: TokensOrCb, cb: Callback) -> Callable[[], None]:
        """Call `cb(err, values)` whenever any of the tokens is upserted or deleted.

        `values` is the settled mapping `get_container_set` would return.
        """
        tokens = self._extract_tokens(tokens_or_cb)
        watched = set(tokens)

        def on_upserted(event: ContainerUpserted) -> None:
            if event.key not in watched or event.key in self._refilling:
                return

            try:
                with self._refill(tokens):
                    values, deferred = self._resolve_set(tokens)
            except Exception as exc:  # noqa: BLE001
                cb(exc, None)
                return

            if deferred:
                self._deliver_later(cb, lambda: self._settle_set(values, deferred))
            else:
                cb(None, values)

        def on_deleted(event: ContainerDeleted) -> None:
            if event.key in watched:
                cb(ContainerRemoved(event.key), None)

        return self._subscribe(on_upserted, on_deleted)

    def _subscribe(
        self,
        on_upserted: Callable[[ContainerUpserted], None],
        on_deleted: Callable[[ContainerDeleted], None],
    ) -> Callable[[], None]:
        unbind_upserted = self._events.on(Event.UPSERTED, on_upserted)
        unbind_deleted = self._events.on(Event.DELETED, on_deleted)

        def unsubscribe() -> None:
            unbind_upserted()
            unbind_deleted()

        return unsubscribe

    @contextmanager
    def _refill(self, tokens: Sequence[Token]) -> Iterator[None]:
        """Hide UPSERTED events for `tokens` from every subscription while they are re-resolved."""
        added = set(tokens) - self._refilling
        self._refilling.update(added)
        try:
            yield
        finally:
            self._refilling.difference_update(added)

    def _deliver_later(self, cb: Callback, awaitable_fn: Callable[[], Awaitable[Any]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            cb(exc, None)
            return

        async def deliver() -> None:
            try:
                value = await awaitable_fn()
            except Exception as exc:  # noqa: BLE001
                err, value = exc, None
            else:
                err = None

            try:
                cb(err, value)
            except Exception:
                logger.exception("Subscription callback %r failed", cb)

        task = loop.create_task(deliver())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


def make_root() -> Container:
    """Create a fresh, empty container."""
    return Container()
