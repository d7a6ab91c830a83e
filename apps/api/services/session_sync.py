"""
Typed, cancellable subscriptions over the document store.

Every session type reaches the store through ``SessionSyncClient``: ``watch``
turns a document listener into an async iterator of decoded values, ``mutate``
applies partial updates and ``transaction`` exposes the compare-and-swap
primitive used for counters.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from config import settings
from services.document_store import (
    DocumentSnapshot,
    DocumentStore,
    FieldFilter,
    Transaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")
Decoder = Callable[[DocumentSnapshot], T]

_END = object()


class Subscription(Generic[T]):
    """Async iterator over the latest decoded value of one document.

    Values arrive in commit order; a snapshot older than one already delivered
    is dropped, and a newer value replaces one the reader has not consumed yet.
    The stream ends when the document is deleted or ``cancel`` is
    called, and ``cancel`` may be called any number of times from anywhere.
    """

    def __init__(self, store: DocumentStore, collection: str, doc_id: str, decoder: Decoder):
        self.collection = collection
        self.doc_id = doc_id
        self.latest: Optional[T] = None
        self.deleted = False
        self._store = store
        self._decoder = decoder
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._last_version = 0
        self._closed = False
        self._registration = store.add_listener(collection, doc_id, self._on_snapshot)

    @property
    def cancelled(self) -> bool:
        return self._closed

    async def _prime(self) -> None:
        snapshot = await self._store.get(self.collection, self.doc_id)
        if snapshot is not None:
            self._on_snapshot(snapshot)

    def _on_snapshot(self, snapshot: DocumentSnapshot) -> None:
        if self._closed:
            return
        if not snapshot.exists:
            self.deleted = True
            self._close()
            return
        if snapshot.version <= self._last_version:
            return
        self._last_version = snapshot.version
        try:
            value = self._decoder(snapshot)
        except Exception:
            logger.exception("Could not decode %s/%s v%s", self.collection, self.doc_id, snapshot.version)
            return
        self.latest = value
        self._replace_pending(value)

    def _replace_pending(self, item: Any) -> None:
        # At most one undelivered item: a slow reader only ever sees the newest value.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _close(self) -> None:
        self._closed = True
        self._registration.remove()
        self._replace_pending(_END)

    def cancel(self) -> None:
        if self._closed:
            return
        self._close()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None) -> T:
        """Wait for the next value; raises ``asyncio.TimeoutError`` on timeout."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()


class SessionSyncClient:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def watch(self, collection: str, doc_id: str, decoder: Decoder) -> Subscription:
        subscription: Subscription = Subscription(self.store, collection, doc_id, decoder)
        await subscription._prime()
        return subscription

    async def get(self, collection: str, doc_id: str, decoder: Decoder) -> Optional[Any]:
        snapshot = await self.store.get(collection, doc_id)
        return decoder(snapshot) if snapshot is not None else None

    async def query(
        self,
        collection: str,
        decoder: Decoder,
        filters: Sequence[FieldFilter] = (),
        **options: Any,
    ) -> List[Any]:
        snapshots = await self.store.query(collection, filters, **options)
        return [decoder(snapshot) for snapshot in snapshots]

    async def mutate(self, collection: str, doc_id: str, fields: dict) -> None:
        await self.store.update(collection, doc_id, fields)

    async def transaction(self, fn: Callable[[Transaction], Awaitable[R]]) -> R:
        return await self.store.run_transaction(fn)


class Projection(Generic[T]):
    """Local optimistic value layered over the last remote-confirmed value."""

    def __init__(self, confirmed: Optional[T] = None):
        self.confirmed: Optional[T] = confirmed
        self.local: Optional[T] = None
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def current(self) -> Optional[T]:
        return self.local if self._pending else self.confirmed

    def apply_local(self, value: T) -> None:
        self.local = value
        self._pending = True

    def confirm(self, value: T) -> None:
        """Record the authoritative value; it replaces any optimistic one."""
        self.confirmed = value
        self.local = None
        self._pending = False

    def rollback(self) -> None:
        self.local = None
        self._pending = False


class SessionListPoller(Generic[T]):
    """Re-queries a session list on a fixed interval until stopped."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[List[T]]],
        on_results: Callable[[List[T]], Any],
        interval_seconds: Optional[float] = None,
    ):
        self._fetch = fetch
        self._on_results = on_results
        self._interval = float(
            settings.SESSION_LIST_POLL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._task: Optional[asyncio.Task] = None
        self.latest: List[T] = []

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def refresh(self) -> List[T]:
        results = await self._fetch()
        self.latest = results
        self._on_results(results)
        return results

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("Session list refresh failed: %s", exc)
            await asyncio.sleep(self._interval)
