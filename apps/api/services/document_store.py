"""Collection-scoped JSON document store with listeners and CAS transactions.

Documents live in the ``documents`` table as ``(collection, id, data, version)``.
Every committed write bumps ``version``; transactions record the version of each
document they read and only commit if those versions are still current, retrying
the whole transaction function otherwise. Post-commit snapshots are fanned out to
in-process listeners and, when enabled, to other processes over a redis channel.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

import redis.asyncio as redis
from sqlalchemy import ColumnElement, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker as default_session_maker
from models.document import Document
from services.errors import DocumentExistsError, DocumentNotFoundError, TransactionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]
Listener = Callable[["DocumentSnapshot"], Any]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def encode_value(value: Any) -> Any:
    """Convert python values into the JSON shape stored in documents."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(item) for item in value]
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Increment:
    """Atomic counter delta applied at commit time."""

    amount: int = 1


DELETE_FIELD = object()


@dataclass(frozen=True)
class DocumentSnapshot:
    collection: str
    id: str
    data: Dict[str, Any]
    version: int
    exists: bool = True

    def get(self, key: str, default: Any = None) -> Any:
        return _lookup(self.data, key, default)


def _lookup(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        actual = _lookup(data, self.field)
        expected = encode_value(self.value)
        if self.op == "==":
            return actual == expected
        if self.op == "!=":
            return actual != expected
        if self.op == "in":
            return actual in expected
        if self.op == "array_contains":
            return isinstance(actual, list) and expected in actual
        if actual is None or expected is None:
            return False
        try:
            if self.op == "<":
                return actual < expected
            if self.op == "<=":
                return actual <= expected
            if self.op == ">":
                return actual > expected
            if self.op == ">=":
                return actual >= expected
        except TypeError:
            return False
        raise ValueError(f"Unsupported filter operator: {self.op}")


class ListenerRegistration:
    """Handle returned by ``add_listener``; ``remove`` is idempotent."""

    def __init__(self, store: "DocumentStore", key: DocKey, token: int):
        self._store = store
        self._key = key
        self._token = token
        self._removed = False

    @property
    def removed(self) -> bool:
        return self._removed

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        self._store._remove_listener(self._key, self._token)


@dataclass
class _Write:
    kind: str  # "set" | "update" | "delete"
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class _WriteConflict(Exception):
    pass


class Transaction:
    """Read-then-write unit of work; all reads must happen before writes."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self.reads: Dict[DocKey, int] = {}
        self.writes: Dict[DocKey, _Write] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        if self.writes:
            raise RuntimeError("Transaction reads must be executed before writes.")
        snapshot = await self._store.get(collection, doc_id)
        self.reads[(collection, doc_id)] = snapshot.version if snapshot else 0
        return snapshot

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.writes[(collection, doc_id)] = _Write("set", dict(data), merge=merge)

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        new_id = doc_id or uuid.uuid4().hex
        self.reads.setdefault((collection, new_id), 0)
        self.set(collection, new_id, data)
        return new_id

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        pending = self.writes.get(key)
        if pending is not None and pending.kind != "delete":
            pending.data.update(fields)
            return
        self.writes[key] = _Write("update", dict(fields))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes[(collection, doc_id)] = _Write("delete")


def _merge(base: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in fields.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        elif isinstance(value, Increment):
            merged[key] = int(merged.get(key) or 0) + int(value.amount)
        else:
            merged[key] = encode_value(value)
    return merged


def _sql_clause(flt: FieldFilter) -> Optional[ColumnElement[bool]]:
    if flt.op != "==" or "." in flt.field:
        return None
    expected = encode_value(flt.value)
    if isinstance(expected, bool):
        return Document.data[flt.field].as_boolean() == expected
    if isinstance(expected, str):
        return Document.data[flt.field].as_string() == expected
    return None


def _sort_key(value: Any) -> Tuple[int, Any]:
    return (0, value) if value is not None else (1, "")


class DocumentStore:
    """Opaque synchronized document store used by every session type."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        change_feed_enabled: Optional[bool] = None,
        max_attempts: Optional[int] = None,
    ):
        self._session_maker = session_maker or default_session_maker
        self._change_feed_enabled = (
            settings.DOCUMENT_CHANGE_FEED_ENABLED if change_feed_enabled is None else change_feed_enabled
        )
        self._max_attempts = max(int(max_attempts or settings.TRANSACTION_MAX_ATTEMPTS), 1)
        self._listeners: Dict[DocKey, Dict[int, Listener]] = {}
        self._listener_seq = itertools.count(1)
        self._origin = uuid.uuid4().hex
        self._redis: Optional[redis.Redis] = None
        self._feed_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._change_feed_enabled:
            return
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            pubsub = client.pubsub()
            await pubsub.subscribe(settings.DOCUMENT_CHANGE_FEED_CHANNEL)
        except Exception as exc:
            logger.warning("Document change feed unavailable, delivering in-process only: %s", exc)
            return
        self._redis = client
        self._feed_task = asyncio.create_task(self._consume_change_feed(pubsub))

    async def close(self) -> None:
        if self._feed_task is not None:
            self._feed_task.cancel()
            try:
                await self._feed_task
            except asyncio.CancelledError:
                pass
            self._feed_task = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(Document.data, Document.version).where(
                    Document.collection == collection,
                    Document.id == doc_id,
                )
            )
            row = result.first()
        if row is None:
            return None
        return DocumentSnapshot(collection, doc_id, dict(row.data or {}), int(row.version))

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        # String and boolean equality runs in SQL; every other filter and the
        # ordering are applied to the rows that come back.
        clauses = [_sql_clause(flt) for flt in filters]
        statement = select(Document.id, Document.data, Document.version).where(
            Document.collection == collection,
            *[clause for clause in clauses if clause is not None],
        )
        residual = [flt for flt, clause in zip(filters, clauses) if clause is None]
        if limit is not None and not residual and not order_by:
            statement = statement.limit(max(int(limit), 0))

        async with self._session_maker() as db:
            result = await db.execute(statement)
            rows = result.all()

        snapshots = [
            DocumentSnapshot(collection, row.id, dict(row.data or {}), int(row.version))
            for row in rows
        ]
        matched = [snap for snap in snapshots if all(flt.matches(snap.data) for flt in residual)]
        if order_by:
            matched.sort(key=lambda snap: _sort_key(snap.get(order_by)), reverse=descending)
        if limit is not None:
            matched = matched[: max(int(limit), 0)]
        return matched

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        collection: str,
        data: Dict[str, Any],
        doc_id: Optional[str] = None,
    ) -> DocumentSnapshot:
        new_id = doc_id or uuid.uuid4().hex
        payload = _merge({}, data)
        async with self._session_maker() as db:
            try:
                await db.execute(
                    insert(Document).values(collection=collection, id=new_id, data=payload, version=1)
                )
                await db.commit()
            except IntegrityError as exc:
                raise DocumentExistsError(collection, new_id) from exc
        snapshot = DocumentSnapshot(collection, new_id, payload, 1)
        await self._publish([snapshot])
        return snapshot

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        async def _write(txn: Transaction) -> None:
            txn.set(collection, doc_id, data, merge=merge)

        await self.run_transaction(_write)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        async def _write(txn: Transaction) -> None:
            txn.update(collection, doc_id, fields)

        await self.run_transaction(_write)

    async def delete(self, collection: str, doc_id: str) -> None:
        async def _write(txn: Transaction) -> None:
            txn.delete(collection, doc_id)

        await self.run_transaction(_write)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``fn`` until its reads are still current at commit time."""
        attempts = max(int(max_attempts or self._max_attempts), 1)
        for attempt in range(1, attempts + 1):
            txn = Transaction(self)
            result = await fn(txn)
            try:
                snapshots = await self._commit(txn)
            except _WriteConflict as exc:
                logger.info("Transaction conflict on %s (attempt %s/%s)", exc, attempt, attempts)
                await asyncio.sleep(random.uniform(0, 0.01 * attempt))
                continue
            await self._publish(snapshots)
            return result
        raise TransactionConflictError(f"Transaction aborted after {attempts} conflicting attempts.")

    async def _commit(self, txn: Transaction) -> List[DocumentSnapshot]:
        if not txn.writes:
            return []
        async with self._session_maker() as db:
            try:
                for key, expected in txn.reads.items():
                    if key in txn.writes:
                        continue
                    if await self._current_version(db, key) != expected:
                        raise _WriteConflict(f"{key[0]}/{key[1]}")
                snapshots = [
                    await self._apply_write(db, key, write, txn.reads.get(key))
                    for key, write in txn.writes.items()
                ]
                await db.commit()
            except IntegrityError as exc:
                raise _WriteConflict("concurrent insert") from exc
            except OperationalError as exc:
                if "locked" not in str(exc).lower():
                    raise
                raise _WriteConflict("database locked") from exc
        return snapshots

    async def _current_version(self, db: AsyncSession, key: DocKey) -> int:
        result = await db.execute(
            select(Document.version).where(Document.collection == key[0], Document.id == key[1])
        )
        version = result.scalar_one_or_none()
        return int(version) if version is not None else 0

    async def _apply_write(
        self,
        db: AsyncSession,
        key: DocKey,
        write: _Write,
        expected_version: Optional[int],
    ) -> DocumentSnapshot:
        collection, doc_id = key
        result = await db.execute(
            select(Document.data, Document.version).where(
                Document.collection == collection,
                Document.id == doc_id,
            )
        )
        row = result.first()
        current_version = int(row.version) if row is not None else 0
        if expected_version is not None and current_version != expected_version:
            raise _WriteConflict(f"{collection}/{doc_id}")

        if write.kind == "delete":
            if row is not None:
                deleted = await db.execute(
                    delete(Document)
                    .where(
                        Document.collection == collection,
                        Document.id == doc_id,
                        Document.version == current_version,
                    )
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount == 0:
                    raise _WriteConflict(f"{collection}/{doc_id}")
            return DocumentSnapshot(collection, doc_id, {}, current_version + 1, exists=False)

        if write.kind == "update" and row is None:
            raise DocumentNotFoundError(collection, doc_id)

        keep_existing = row is not None and (write.kind == "update" or write.merge)
        new_data = _merge(dict(row.data or {}) if keep_existing else {}, write.data)

        if row is None:
            await db.execute(
                insert(Document).values(collection=collection, id=doc_id, data=new_data, version=1)
            )
            return DocumentSnapshot(collection, doc_id, new_data, 1)

        updated = await db.execute(
            update(Document)
            .where(
                Document.collection == collection,
                Document.id == doc_id,
                Document.version == current_version,
            )
            .values(data=new_data, version=current_version + 1)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 0:
            raise _WriteConflict(f"{collection}/{doc_id}")
        return DocumentSnapshot(collection, doc_id, new_data, current_version + 1)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, collection: str, doc_id: str, callback: Listener) -> ListenerRegistration:
        key = (collection, doc_id)
        token = next(self._listener_seq)
        self._listeners.setdefault(key, {})[token] = callback
        return ListenerRegistration(self, key, token)

    def listener_count(self, collection: Optional[str] = None, doc_id: Optional[str] = None) -> int:
        if collection is None:
            return sum(len(callbacks) for callbacks in self._listeners.values())
        return len(self._listeners.get((collection, doc_id), {}))

    @property
    def change_feed_connected(self) -> bool:
        return self._redis is not None

    def _remove_listener(self, key: DocKey, token: int) -> None:
        callbacks = self._listeners.get(key)
        if not callbacks:
            return
        callbacks.pop(token, None)
        if not callbacks:
            self._listeners.pop(key, None)

    def _dispatch(self, snapshot: DocumentSnapshot) -> None:
        callbacks = list(self._listeners.get((snapshot.collection, snapshot.id), {}).values())
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Listener for %s/%s failed", snapshot.collection, snapshot.id)

    async def _publish(self, snapshots: Iterable[DocumentSnapshot]) -> None:
        snapshots = list(snapshots)
        for snapshot in snapshots:
            self._dispatch(snapshot)
        if self._redis is None or not snapshots:
            return
        try:
            for snapshot in snapshots:
                await self._redis.publish(
                    settings.DOCUMENT_CHANGE_FEED_CHANNEL,
                    json.dumps(
                        {
                            "origin": self._origin,
                            "collection": snapshot.collection,
                            "id": snapshot.id,
                            "version": snapshot.version,
                            "exists": snapshot.exists,
                            "data": snapshot.data,
                        }
                    ),
                )
        except Exception as exc:
            logger.warning("Could not publish document change to redis: %s", exc)

    async def _consume_change_feed(self, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed document change payload")
                    continue
                if payload.get("origin") == self._origin:
                    continue
                self._dispatch(
                    DocumentSnapshot(
                        collection=str(payload.get("collection", "")),
                        id=str(payload.get("id", "")),
                        data=payload.get("data") or {},
                        version=int(payload.get("version") or 0),
                        exists=bool(payload.get("exists", True)),
                    )
                )
        finally:
            await pubsub.aclose()
