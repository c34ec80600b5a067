"""
RiskAnalysis - Document Store
==============================

Collections of mapping-style documents persisted through SQLAlchemy async.

Features:
- Overwrite and merge writes
- Appends with store-generated ids
- Atomic batched writes (all or nothing)
- Server timestamps resolved at commit time
- Push subscriptions for single documents and collection queries
"""

import asyncio
import secrets
import string
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from riskanalysis.db.models import Document
from riskanalysis.exceptions import StoreError

logger = structlog.get_logger(__name__)

_ID_ALPHABET = string.ascii_letters + string.digits
_ID_LENGTH = 20


class _ServerTimestamp:
    """Placeholder replaced by the commit time when a write is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def new_document_id() -> str:
    """Generate a random 20-character document id."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


def split_path(path: str) -> Tuple[str, str]:
    """Split ``collection/document`` into its two parts."""
    parts = path.strip("/").split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid document path: {path!r}")
    return parts[0], parts[1]


def resolve_server_timestamps(value: Any, now: datetime) -> Any:
    """Replace server timestamp sentinels and datetimes with ISO strings."""
    if value is SERVER_TIMESTAMP:
        return now.isoformat()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_server_timestamps(v, now) for v in value]
    return value


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time view of one document."""
    collection: str
    id: str
    data: Optional[Dict[str, Any]] = None

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


@dataclass(frozen=True)
class Query:
    """Collection query with optional ordering and limit.

    Ordering on a field excludes documents that lack that field.
    """
    collection: str
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None

    def ordered(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_by=field_name, descending=descending)

    def limited(self, count: int) -> "Query":
        return replace(self, limit=count)


@dataclass
class _Write:
    collection: str
    document_id: str
    fields: Dict[str, Any]
    merge: bool = False


class WriteBatch:
    """
    A set of writes committed atomically.

    Usage:
        batch = store.batch()
        batch.set("threats/threat1", {...})
        batch.add("recommendations", {...})
        await batch.commit()
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: List[_Write] = []
        self._committed = False
        self.paths: List[str] = []

    def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        collection, document_id = split_path(path)
        self._writes.append(_Write(collection, document_id, dict(fields), merge))
        self.paths.append(path)
        return self

    def add(self, collection: str, fields: Dict[str, Any]) -> "WriteBatch":
        """Queue a write to a new document with a generated id."""
        return self.set(f"{collection}/{self._store.new_id()}", fields)

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        self._committed = True
        if not self._writes:
            return
        await self._store._apply(self._writes)


class Subscription:
    """
    Async iterator of snapshots for a document or a query.

    The current value is delivered first, then one value per committed
    change. Notifications are coalesced: a slow consumer always reads the
    latest state.
    """

    def __init__(
        self,
        store: "DocumentStore",
        collection: str,
        reader: Callable[[], Awaitable[Any]],
    ):
        self._store = store
        self.collection = collection
        self._reader = reader
        self._changed = asyncio.Event()
        self._changed.set()
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        await self._changed.wait()
        if self._closed:
            raise StopAsyncIteration
        self._changed.clear()
        return await self._reader()

    def _notify(self) -> None:
        self._changed.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unregister(self)
        self._changed.set()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class DocumentStore:
    """Document store over a SQLAlchemy async session factory."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from riskanalysis.db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._write_lock = asyncio.Lock()
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    def new_id(self) -> str:
        return new_document_id()

    # ============== Reads ==============

    async def get(self, path: str) -> DocumentSnapshot:
        """Read one document. Missing documents yield ``exists == False``."""
        collection, document_id = split_path(path)
        try:
            async with self._session_factory() as session:
                row = await self._load(session, collection, document_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e
        return DocumentSnapshot(collection, document_id, dict(row.data) if row else None)

    async def query(self, query: Union[Query, str]) -> List[DocumentSnapshot]:
        """Read all documents of a collection, ordered and limited."""
        if isinstance(query, str):
            query = Query(query)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Document)
                    .where(Document.collection == query.collection)
                    .order_by(Document.pk)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query {query.collection}: {e}") from e

        snapshots = [DocumentSnapshot(r.collection, r.document_id, dict(r.data)) for r in rows]

        if query.order_by:
            snapshots = [s for s in snapshots if s.get(query.order_by) is not None]
            snapshots.sort(key=lambda s: s.data[query.order_by], reverse=query.descending)

        if query.limit is not None:
            snapshots = snapshots[:query.limit]

        return snapshots

    # ============== Writes ==============

    async def set(self, path: str, fields: Dict[str, Any], merge: bool = False) -> None:
        """Write a document. With ``merge`` only the given fields change."""
        collection, document_id = split_path(path)
        await self._apply([_Write(collection, document_id, dict(fields), merge)])

    async def add(self, collection: str, fields: Dict[str, Any]) -> str:
        """Append a document with a generated id and return the id."""
        document_id = self.new_id()
        await self._apply([_Write(collection, document_id, dict(fields), False)])
        return document_id

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def _apply(self, writes: List[_Write]) -> None:
        """Apply writes in one transaction, then notify subscribers."""
        now = datetime.now(timezone.utc)

        async with self._write_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        for write in writes:
                            await self._apply_one(session, write, now)
            except SQLAlchemyError as e:
                logger.error(
                    "store_write_failed",
                    writes=len(writes),
                    collections=sorted({w.collection for w in writes}),
                    error=str(e),
                )
                raise StoreError(f"Write failed: {e}") from e

        for collection in {w.collection for w in writes}:
            for subscription in list(self._subscriptions.get(collection, ())):
                subscription._notify()

    async def _apply_one(self, session: AsyncSession, write: _Write, now: datetime) -> None:
        fields = resolve_server_timestamps(write.fields, now)
        row = await self._load(session, write.collection, write.document_id)

        if row is None:
            session.add(Document(
                collection=write.collection,
                document_id=write.document_id,
                data=fields,
            ))
        elif write.merge:
            row.data = {**row.data, **fields}
        else:
            row.data = fields
        await session.flush()

    async def _load(self, session: AsyncSession, collection: str, document_id: str) -> Optional[Document]:
        result = await session.execute(
            select(Document).where(
                Document.collection == collection,
                Document.document_id == document_id,
            )
        )
        return result.scalar_one_or_none()

    # ============== Subscriptions ==============

    def subscribe(self, target: Union[str, Query]) -> Subscription:
        """
        Subscribe to a document path (``collection/id``) or a query.

        Document subscriptions yield ``DocumentSnapshot``; query
        subscriptions yield ``list[DocumentSnapshot]``.
        """
        if isinstance(target, Query):
            query = target
            subscription = Subscription(self, query.collection, lambda: self.query(query))
        elif "/" in target:
            collection, _ = split_path(target)
            subscription = Subscription(self, collection, lambda: self.get(target))
        else:
            query = Query(target)
            subscription = Subscription(self, target, lambda: self.query(query))

        self._subscriptions.setdefault(subscription.collection, set()).add(subscription)
        return subscription

    def _unregister(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.collection)
        if subscribers:
            subscribers.discard(subscription)
