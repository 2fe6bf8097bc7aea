"""
Entity store contract and the in-memory backend.

Every write happens inside `store.transaction()`: records read with
`get_for_update` stay locked until the transaction ends, and staged writes
become visible together on commit or not at all. Lock order across the code
base is parent (order / delivery request) -> delivery -> driver.
"""
import abc
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, TypeVar

from rxdispatch.models import Delivery, DeliveryRequest, Driver, Record
from rxdispatch.order_state import IN_FLIGHT_STAGES

R = TypeVar("R", bound=Record)

TRACKING_CODE_KEY = "delivery_requests_tracking_code_key"
ACTIVE_DELIVERY_KEY = "deliveries_one_active_per_parent"

ACTIVE_DELIVERY_STATUSES = frozenset(stage.value for stage in IN_FLIGHT_STAGES)


class DuplicateKeyError(Exception):
    """Raised when a unique key already exists. Transaction will roll back."""

    def __init__(self, constraint: str, value: str | None = None):
        self.constraint = constraint
        self.value = value
        super().__init__(constraint, value)


def normalize_filters(filters: dict[str, Any] | None) -> dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in (filters or {}).items()}


class Transaction(abc.ABC):
    @abc.abstractmethod
    async def get_for_update(self, model: type[R], record_id: str) -> R | None:
        """Read and lock one record until the transaction ends."""

    @abc.abstractmethod
    async def insert(self, record: Record) -> None:
        """Stage a new record. Raises DuplicateKeyError on id or unique-key clash."""

    @abc.abstractmethod
    async def update(self, record: Record) -> None:
        """Stage a changed record previously read with get_for_update."""

    @abc.abstractmethod
    async def active_delivery_for(self, parent_id: str) -> Delivery | None:
        """The locked non-terminal delivery of an order / delivery request, if any."""

    @abc.abstractmethod
    async def active_deliveries_for_driver(self, driver_id: str) -> list[Delivery]:
        ...

    @abc.abstractmethod
    async def claim_next_idle_driver(self) -> Driver | None:
        """Lock the idle driver who has been available longest, skipping drivers locked by others."""


class EntityStore(abc.ABC):
    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def get(self, model: type[R], record_id: str) -> R | None:
        ...

    @abc.abstractmethod
    async def find_by_tracking_code(self, tracking_code: str) -> DeliveryRequest | None:
        ...

    @abc.abstractmethod
    async def list(
        self,
        model: type[R],
        filters: dict[str, Any] | None = None,
        *,
        newest_first: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[R]:
        """Records whose top-level fields equal every filter value, ordered by created_at."""

    @abc.abstractmethod
    async def count(self, model: type[R], filters: dict[str, Any] | None = None) -> int:
        ...

    @abc.abstractmethod
    def transaction(self) -> Any:
        """Async context manager yielding a Transaction."""


def _unique_keys(table: str, doc: dict) -> list[tuple[str, str]]:
    if table == DeliveryRequest.table_name:
        return [(TRACKING_CODE_KEY, doc["tracking_code"])]
    if table == Delivery.table_name and doc["status"] in ACTIVE_DELIVERY_STATUSES:
        return [(ACTIVE_DELIVERY_KEY, doc["parent_id"])]
    return []


class _MemoryTransaction(Transaction):
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._held: dict[tuple[str, str], asyncio.Lock] = {}
        self._staged: dict[tuple[str, str], dict] = {}
        self._reserved: list[tuple[str, str]] = []
        self._released: list[tuple[tuple[str, str], str]] = []

    async def _acquire(self, table: str, record_id: str) -> None:
        key = (table, record_id)
        if key in self._held:
            return
        lock = self._store._lock_for(key)
        await lock.acquire()
        self._held[key] = lock

    def _release(self, table: str, record_id: str) -> None:
        lock = self._held.pop((table, record_id), None)
        if lock is not None:
            lock.release()

    def _read(self, table: str, record_id: str) -> dict | None:
        staged = self._staged.get((table, record_id))
        if staged is not None:
            return staged
        return self._store._tables[table].get(record_id)

    def _docs(self, table: str) -> list[dict]:
        docs = dict(self._store._tables[table])
        for (staged_table, record_id), doc in self._staged.items():
            if staged_table == table:
                docs[record_id] = doc
        return list(docs.values())

    def _reserve(self, keys: list[tuple[str, str]], record_id: str) -> None:
        unique = self._store._unique
        for key in keys:
            owner = unique.get(key)
            if owner is not None and owner != record_id:
                raise DuplicateKeyError(key[0], key[1])
        for key in keys:
            if key not in unique:
                unique[key] = record_id
                self._reserved.append(key)

    async def get_for_update(self, model: type[R], record_id: str) -> R | None:
        await asyncio.sleep(0)
        await self._acquire(model.table_name, record_id)
        doc = self._read(model.table_name, record_id)
        return None if doc is None else model.model_validate(doc)

    async def insert(self, record: Record) -> None:
        await asyncio.sleep(0)
        table = record.table_name
        if self._read(table, record.id) is not None:
            raise DuplicateKeyError(f"{table}_pkey", record.id)
        doc = record.model_dump(mode="json")
        self._reserve(_unique_keys(table, doc), record.id)
        await self._acquire(table, record.id)
        self._staged[(table, record.id)] = doc

    async def update(self, record: Record) -> None:
        table = record.table_name
        if (table, record.id) not in self._held:
            raise RuntimeError(f"{table}/{record.id} updated without being locked")
        previous = self._read(table, record.id)
        doc = record.model_dump(mode="json")
        old_keys = set(_unique_keys(table, previous)) if previous else set()
        new_keys = _unique_keys(table, doc)
        self._reserve([key for key in new_keys if key not in old_keys], record.id)
        self._released.extend((key, record.id) for key in old_keys - set(new_keys))
        self._staged[(table, record.id)] = doc

    async def active_delivery_for(self, parent_id: str) -> Delivery | None:
        for doc in self._docs(Delivery.table_name):
            if doc["parent_id"] == parent_id and doc["status"] in ACTIVE_DELIVERY_STATUSES:
                delivery = await self.get_for_update(Delivery, doc["id"])
                if delivery is not None and delivery.is_active:
                    return delivery
        return None

    async def active_deliveries_for_driver(self, driver_id: str) -> list[Delivery]:
        return [
            Delivery.model_validate(doc)
            for doc in self._docs(Delivery.table_name)
            if doc["driver_id"] == driver_id and doc["status"] in ACTIVE_DELIVERY_STATUSES
        ]

    async def claim_next_idle_driver(self) -> Driver | None:
        candidates = sorted(
            (Driver.model_validate(doc) for doc in self._docs(Driver.table_name)),
            key=lambda driver: driver.available_since,
        )
        for candidate in candidates:
            if not candidate.is_idle:
                continue
            key = (Driver.table_name, candidate.id)
            if key not in self._held and self._store._lock_for(key).locked():
                continue
            driver = await self.get_for_update(Driver, candidate.id)
            if driver is not None and driver.is_idle:
                return driver
            self._release(Driver.table_name, candidate.id)
        return None

    def _commit(self) -> None:
        for (table, record_id), doc in self._staged.items():
            self._store._tables[table][record_id] = doc
        for key, record_id in self._released:
            if self._store._unique.get(key) == record_id:
                del self._store._unique[key]

    def _rollback(self) -> None:
        for key in self._reserved:
            self._store._unique.pop(key, None)

    def _close(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()


class MemoryStore(EntityStore):
    """Process-local store with per-record asyncio locks. Used for tests and single-process runs."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._unique: dict[tuple[str, str], str] = {}

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get(self, model: type[R], record_id: str) -> R | None:
        await asyncio.sleep(0)
        doc = self._tables[model.table_name].get(record_id)
        return None if doc is None else model.model_validate(doc)

    async def find_by_tracking_code(self, tracking_code: str) -> DeliveryRequest | None:
        record_id = self._unique.get((TRACKING_CODE_KEY, tracking_code))
        if record_id is None:
            return None
        return await self.get(DeliveryRequest, record_id)

    def _matching(self, model: type[R], filters: dict[str, Any] | None) -> list[R]:
        wanted = normalize_filters(filters)
        return [
            model.model_validate(doc)
            for doc in self._tables[model.table_name].values()
            if all(doc.get(key) == value for key, value in wanted.items())
        ]

    async def list(
        self,
        model: type[R],
        filters: dict[str, Any] | None = None,
        *,
        newest_first: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[R]:
        await asyncio.sleep(0)
        records = sorted(self._matching(model, filters), key=lambda r: r.created_at, reverse=newest_first)
        end = None if limit is None else offset + limit
        return records[offset:end]

    async def count(self, model: type[R], filters: dict[str, Any] | None = None) -> int:
        await asyncio.sleep(0)
        return len(self._matching(model, filters))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        tx = _MemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            tx._rollback()
            raise
        else:
            tx._commit()
        finally:
            tx._close()
