from __future__ import annotations
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
import asyncio
import logging
import os

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool
from dotenv import load_dotenv
from pydantic import TypeAdapter

from observability import metrics
from .errors import ServiceError, storage_error
from .models import Activity, Material, Volunteer

T = TypeVar("T")

ENTITY_TYPES: Dict[str, type] = {
    "volunteers": Volunteer,
    "materials": Material,
    "activities": Activity,
}

# Fields that support find_by lookups, per collection
INDEXES: Dict[str, Tuple[str, ...]] = {
    "volunteers": ("name", "ministry", "active"),
    "materials": ("name", "type", "status", "loaned_to"),
    "activities": ("volunteer_id", "kind"),
}

_ADAPTERS = {name: TypeAdapter(entity_type) for name, entity_type in ENTITY_TYPES.items()}

Record = Dict[str, Any]
_Key = Tuple[str, str]

logger = logging.getLogger("state.repository")


def _check_collection(collection: str):
    if collection not in ENTITY_TYPES:
        raise ValueError(f"unknown collection: {collection}")


def _check_index(collection: str, field: str):
    _check_collection(collection)
    if field not in INDEXES[collection]:
        raise ValueError(f"{collection}.{field} is not indexed")


def _normalize_collections(collections: Iterable[str]) -> List[str]:
    names = sorted(set(collections))
    if not names:
        raise ValueError("a transaction needs at least one collection")
    for name in names:
        _check_collection(name)
    return names


def _index_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def dump_entity(collection: str, entity: Any) -> Record:
    return _ADAPTERS[collection].dump_python(entity, mode="json")


def load_entity(collection: str, record: Record) -> Any:
    return _ADAPTERS[collection].validate_python(record)


class Transaction:
    """Unit of work over a fixed set of collections.

    Reads go to the backend unless the key was already written in this
    transaction. Writes are only staged; the owning store applies them all at
    commit or drops them all.
    """

    def __init__(self, collections: Iterable[str]):
        self.collections = frozenset(collections)
        self._staged: Dict[_Key, Optional[Record]] = {}  # None marks a delete
        self.aborted = False

    def _check(self, collection: str):
        _check_collection(collection)
        if collection not in self.collections:
            raise ValueError(f"collection '{collection}' is not part of this transaction")

    def _ensure_open(self):
        if self.aborted:
            raise RuntimeError("transaction was aborted")

    async def get(self, collection: str, entity_id: str) -> Optional[Any]:
        self._check(collection)
        key = (collection, entity_id)
        if key in self._staged:
            record = self._staged[key]
        else:
            record = await self._read(collection, entity_id)
        return None if record is None else load_entity(collection, record)

    async def get_all(self, collection: str) -> List[Any]:
        self._check(collection)
        records = {r["id"]: r for r in await self._read_all(collection)}
        self._overlay(collection, records)
        return [load_entity(collection, r) for r in records.values()]

    async def find_by(self, collection: str, field: str, value: Any) -> List[Any]:
        self._check(collection)
        _check_index(collection, field)
        wanted = _index_value(value)
        records = {r["id"]: r for r in await self._read_index(collection, field, wanted)}
        self._overlay(collection, records, lambda r: r.get(field) == wanted)
        return [load_entity(collection, r) for r in records.values()]

    def _overlay(self, collection: str, records: Dict[str, Record], keep: Optional[Callable[[Record], bool]] = None):
        for (name, entity_id), record in self._staged.items():
            if name != collection:
                continue
            if record is None or (keep is not None and not keep(record)):
                records.pop(entity_id, None)
            else:
                records[entity_id] = record

    def put(self, collection: str, entity: Any):
        self._check(collection)
        self._ensure_open()
        if not isinstance(entity, ENTITY_TYPES[collection]):
            raise TypeError(f"{type(entity).__name__} cannot be stored in '{collection}'")
        record = dump_entity(collection, entity)
        self._staged[(collection, record["id"])] = record

    def delete(self, collection: str, entity_id: str):
        self._check(collection)
        self._ensure_open()
        self._staged[(collection, entity_id)] = None

    def abort(self):
        """Drop every staged write; the store commits nothing."""
        self.aborted = True
        self._staged.clear()

    @property
    def staged(self) -> Dict[_Key, Optional[Record]]:
        return dict(self._staged)

    # backend hooks
    async def _read(self, collection: str, entity_id: str) -> Optional[Record]:
        raise NotImplementedError

    async def _read_all(self, collection: str) -> List[Record]:
        raise NotImplementedError

    async def _read_index(self, collection: str, field: str, value: Any) -> List[Record]:
        raise NotImplementedError


TransactionBody = Callable[[Transaction], Awaitable[T]]


class Store:
    """Persistent key-value collections with atomic multi-collection writes.

    Entities returned by any read are fresh copies; changing them has no
    effect until they are written back with ``put``.
    """

    async def open(self):
        pass

    async def close(self):
        pass

    async def get(self, collection: str, entity_id: str) -> Optional[Any]:
        raise NotImplementedError

    async def get_all(self, collection: str) -> List[Any]:
        raise NotImplementedError

    async def find_by(self, collection: str, field: str, value: Any) -> List[Any]:
        raise NotImplementedError

    async def run_transaction(self, collections: Iterable[str], body: TransactionBody) -> Any:
        raise NotImplementedError

    async def put(self, collection: str, entity: Any):
        async def _body(txn: Transaction):
            txn.put(collection, entity)

        await self.run_transaction([collection], _body)

    async def delete(self, collection: str, entity_id: str):
        async def _body(txn: Transaction):
            txn.delete(collection, entity_id)

        await self.run_transaction([collection], _body)


class _MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryStore", collections: Iterable[str]):
        super().__init__(collections)
        self._store = store

    async def _read(self, collection: str, entity_id: str) -> Optional[Record]:
        return self._store._data[collection].get(entity_id)

    async def _read_all(self, collection: str) -> List[Record]:
        return list(self._store._data[collection].values())

    async def _read_index(self, collection: str, field: str, value: Any) -> List[Record]:
        return [r for r in self._store._data[collection].values() if r.get(field) == value]


class InMemoryStore(Store):
    def __init__(self):
        self._data: Dict[str, Dict[str, Record]] = {name: {} for name in ENTITY_TYPES}
        # one writer per collection; transactions take their locks in sorted order
        self._locks = {name: asyncio.Lock() for name in ENTITY_TYPES}

    def reset(self):
        for records in self._data.values():
            records.clear()

    async def get(self, collection: str, entity_id: str) -> Optional[Any]:
        _check_collection(collection)
        record = self._data[collection].get(entity_id)
        return None if record is None else load_entity(collection, record)

    async def get_all(self, collection: str) -> List[Any]:
        _check_collection(collection)
        return [load_entity(collection, r) for r in self._data[collection].values()]

    async def find_by(self, collection: str, field: str, value: Any) -> List[Any]:
        _check_index(collection, field)
        wanted = _index_value(value)
        return [load_entity(collection, r) for r in self._data[collection].values() if r.get(field) == wanted]

    async def run_transaction(self, collections: Iterable[str], body: TransactionBody) -> Any:
        names = _normalize_collections(collections)
        async with AsyncExitStack() as stack:
            for name in names:
                await stack.enter_async_context(self._locks[name])
            txn = _MemoryTransaction(self, names)
            try:
                outcome = await body(txn)
            except Exception:
                metrics.inc("store.abort")
                raise
            if txn.aborted:
                metrics.inc("store.abort")
                logger.debug("Transaction on %s aborted by caller", names)
                return outcome
            try:
                self._apply(txn.staged)
            except ServiceError:
                metrics.inc("store.abort")
                raise
            except Exception as exc:  # noqa: BLE001 - any commit failure is a storage failure
                metrics.inc("store.abort")
                logger.exception("Commit failed on %s", names)
                raise storage_error("commit", exc) from exc
            metrics.inc("store.commit")
            return outcome

    def _apply(self, writes: Dict[_Key, Optional[Record]]):
        # build the new collections aside, then swap them in one step
        updated: Dict[str, Dict[str, Record]] = {}
        for (collection, entity_id), record in writes.items():
            target = updated.setdefault(collection, dict(self._data[collection]))
            if record is None:
                target.pop(entity_id, None)
            else:
                target[entity_id] = record
        self._data.update(updated)


class _PostgresTransaction(Transaction):
    def __init__(self, store: "PostgresStore", conn: psycopg.AsyncConnection, collections: Iterable[str]):
        super().__init__(collections)
        self._store = store
        self._conn = conn

    async def _read(self, collection: str, entity_id: str) -> Optional[Record]:
        return await self._store._fetch_one(self._conn, collection, entity_id)

    async def _read_all(self, collection: str) -> List[Record]:
        return await self._store._fetch_all(self._conn, collection)

    async def _read_index(self, collection: str, field: str, value: Any) -> List[Record]:
        return await self._store._fetch_index(self._conn, collection, field, value)

    async def flush(self):
        for (collection, entity_id), record in self._staged.items():
            table = sql.Identifier(collection)
            if record is None:
                await self._conn.execute(
                    sql.SQL("delete from {} where id = %s").format(table),
                    (entity_id,),
                )
            else:
                await self._conn.execute(
                    sql.SQL(
                        """
                        insert into {} (id, data)
                        values (%s, %s)
                        on conflict (id) do update set data = excluded.data
                        """
                    ).format(table),
                    (entity_id, Jsonb(record)),
                )


class PostgresStore(Store):
    """Durable store keeping each collection as a table of JSONB documents."""

    def __init__(self, conninfo: str, *, max_size: int = 5):
        self._logger = logging.getLogger("state.postgres")
        self._pool = AsyncConnectionPool(
            conninfo,
            min_size=1,
            max_size=max_size,
            kwargs={"autocommit": True},
            open=False,
        )

    async def open(self):
        try:
            await self._pool.open()
            async with self._pool.connection() as conn:
                async with conn.transaction():
                    for name in ENTITY_TYPES:
                        await conn.execute(
                            sql.SQL("create table if not exists {} (id text primary key, data jsonb not null)").format(
                                sql.Identifier(name)
                            )
                        )
                        for field in INDEXES[name]:
                            await conn.execute(
                                sql.SQL("create index if not exists {} on {} ((data ->> {}))").format(
                                    sql.Identifier(f"{name}_{field}_idx"),
                                    sql.Identifier(name),
                                    sql.Literal(field),
                                )
                            )
        except (psycopg.Error, OSError) as exc:
            self._logger.exception("Unable to prepare Postgres schema")
            raise storage_error("open", exc) from exc
        self._logger.info("PostgresStore ready")

    async def close(self):
        await self._pool.close()

    async def _fetch_one(self, conn, collection: str, entity_id: str) -> Optional[Record]:
        cur = await conn.execute(
            sql.SQL("select data from {} where id = %s").format(sql.Identifier(collection)),
            (entity_id,),
        )
        row = await cur.fetchone()
        return row[0] if row else None

    async def _fetch_all(self, conn, collection: str) -> List[Record]:
        cur = await conn.execute(sql.SQL("select data from {}").format(sql.Identifier(collection)))
        return [row[0] for row in await cur.fetchall()]

    async def _fetch_index(self, conn, collection: str, field: str, value: Any) -> List[Record]:
        table = sql.Identifier(collection)
        if value is None:
            query = sql.SQL("select data from {} where (data ->> %s) is null").format(table)
            params: tuple = (field,)
        else:
            if isinstance(value, bool):
                value = "true" if value else "false"
            query = sql.SQL("select data from {} where (data ->> %s) = %s").format(table)
            params = (field, str(value))
        cur = await conn.execute(query, params)
        return [row[0] for row in await cur.fetchall()]

    async def _read(self, operation: str, fetch: Callable[[Any], Awaitable[T]]) -> T:
        try:
            async with self._pool.connection() as conn:
                return await fetch(conn)
        except (psycopg.Error, OSError) as exc:
            self._logger.exception("Read failed: %s", operation)
            raise storage_error(operation, exc) from exc

    async def get(self, collection: str, entity_id: str) -> Optional[Any]:
        _check_collection(collection)
        record = await self._read(f"get {collection}", lambda conn: self._fetch_one(conn, collection, entity_id))
        return None if record is None else load_entity(collection, record)

    async def get_all(self, collection: str) -> List[Any]:
        _check_collection(collection)
        records = await self._read(f"get_all {collection}", lambda conn: self._fetch_all(conn, collection))
        return [load_entity(collection, r) for r in records]

    async def find_by(self, collection: str, field: str, value: Any) -> List[Any]:
        _check_index(collection, field)
        wanted = _index_value(value)
        records = await self._read(
            f"find_by {collection}.{field}",
            lambda conn: self._fetch_index(conn, collection, field, wanted),
        )
        return [load_entity(collection, r) for r in records]

    async def run_transaction(self, collections: Iterable[str], body: TransactionBody) -> Any:
        names = _normalize_collections(collections)
        try:
            async with self._pool.connection() as conn:
                async with conn.transaction():
                    for name in names:
                        await conn.execute(
                            sql.SQL("lock table {} in share row exclusive mode").format(sql.Identifier(name))
                        )
                    txn = _PostgresTransaction(self, conn, names)
                    outcome = await body(txn)
                    if txn.aborted:
                        metrics.inc("store.abort")
                        return outcome
                    await txn.flush()
        except (psycopg.Error, OSError) as exc:
            metrics.inc("store.abort")
            self._logger.exception("Transaction on %s failed", names)
            raise storage_error("transaction", exc) from exc
        except Exception:
            metrics.inc("store.abort")
            raise
        metrics.inc("store.commit")
        return outcome


def _pool_max() -> int:
    try:
        return max(1, int(os.getenv("CHECKIN_DB_POOL_MAX", "5")))
    except ValueError:
        return 5


def open_store() -> Store:
    """Build the store selected by the environment (not yet opened)."""
    load_dotenv()
    conninfo = os.getenv("DATABASE_URL") or os.getenv("DATABASE_URL_DEV")
    if conninfo:
        source = "DATABASE_URL" if os.getenv("DATABASE_URL") else "DATABASE_URL_DEV"
        logger.info("Using PostgresStore via %s", source)
        return PostgresStore(conninfo, max_size=_pool_max())
    logger.info("DATABASE_URL not set; using in-memory store")
    return InMemoryStore()
