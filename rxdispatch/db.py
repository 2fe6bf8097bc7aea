"""
Async Postgres entity store: one JSONB document table per record type
(orders, delivery_requests, deliveries, drivers).
Each write runs in a single transaction; records read for update are locked
with SELECT ... FOR UPDATE until commit. Unique indexes back the two hard
invariants: one tracking code per request, one active delivery per parent.
"""
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from rxdispatch.config import settings
from rxdispatch.models import Delivery, DeliveryRequest, Driver, Order, Record
from rxdispatch.store import (
    ACTIVE_DELIVERY_KEY,
    ACTIVE_DELIVERY_STATUSES,
    TRACKING_CODE_KEY,
    DuplicateKeyError,
    EntityStore,
    R,
    Transaction,
    normalize_filters,
)

_TABLES = [Order.table_name, DeliveryRequest.table_name, Delivery.table_name, Driver.table_name]
_ACTIVE_STATUSES = sorted(ACTIVE_DELIVERY_STATUSES)


async def init_schema(pool: asyncpg.Pool, reset: bool = False) -> None:
    async with pool.acquire() as conn:
        for table in _TABLES:
            if reset:
                await conn.execute(f"DROP TABLE IF EXISTS {table};")
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id VARCHAR(64) PRIMARY KEY,
                    doc JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                );
            """)
        await conn.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {TRACKING_CODE_KEY}
            ON delivery_requests ((doc->>'tracking_code'));
        """)
        statuses = ", ".join(f"'{status}'" for status in _ACTIVE_STATUSES)
        await conn.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_DELIVERY_KEY}
            ON deliveries ((doc->>'parent_id'))
            WHERE doc->>'status' IN ({statuses});
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_deliveries_driver_id
            ON deliveries ((doc->>'driver_id'));
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_status
            ON orders ((doc->>'status'));
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_delivery_requests_status
            ON delivery_requests ((doc->>'status'));
        """)


def _load(model: type[R], raw: Any) -> R:
    return model.model_validate(json.loads(raw) if isinstance(raw, str) else raw)


def _dump(record: Record) -> str:
    return json.dumps(record.model_dump(mode="json"))


class _PostgresTransaction(Transaction):
    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def get_for_update(self, model: type[R], record_id: str) -> R | None:
        row = await self._conn.fetchrow(
            f"SELECT doc FROM {model.table_name} WHERE id = $1 FOR UPDATE;",
            record_id,
        )
        return None if row is None else _load(model, row["doc"])

    async def insert(self, record: Record) -> None:
        try:
            await self._conn.execute(
                f"""
                INSERT INTO {record.table_name} (id, doc, created_at, updated_at)
                VALUES ($1, $2::jsonb, $3, $4);
                """,
                record.id,
                _dump(record),
                record.created_at,
                record.updated_at,
            )
        except UniqueViolationError as e:
            raise DuplicateKeyError(e.constraint_name or f"{record.table_name}_pkey", record.id) from e

    async def update(self, record: Record) -> None:
        try:
            await self._conn.execute(
                f"UPDATE {record.table_name} SET doc = $2::jsonb, updated_at = $3 WHERE id = $1;",
                record.id,
                _dump(record),
                record.updated_at,
            )
        except UniqueViolationError as e:
            raise DuplicateKeyError(e.constraint_name or "", record.id) from e

    async def active_delivery_for(self, parent_id: str) -> Delivery | None:
        row = await self._conn.fetchrow(
            """
            SELECT doc FROM deliveries
            WHERE doc->>'parent_id' = $1 AND doc->>'status' = ANY($2::text[])
            FOR UPDATE;
            """,
            parent_id,
            _ACTIVE_STATUSES,
        )
        return None if row is None else _load(Delivery, row["doc"])

    async def active_deliveries_for_driver(self, driver_id: str) -> list[Delivery]:
        rows = await self._conn.fetch(
            """
            SELECT doc FROM deliveries
            WHERE doc->>'driver_id' = $1 AND doc->>'status' = ANY($2::text[]);
            """,
            driver_id,
            _ACTIVE_STATUSES,
        )
        return [_load(Delivery, row["doc"]) for row in rows]

    async def claim_next_idle_driver(self) -> Driver | None:
        row = await self._conn.fetchrow(
            """
            SELECT doc FROM drivers
            WHERE doc->>'lifecycle' = 'active'
              AND (doc->>'on_duty')::boolean
              AND (doc->>'is_available')::boolean
            ORDER BY (doc->>'available_since')::timestamptz ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED;
            """
        )
        return None if row is None else _load(Driver, row["doc"])


class PostgresStore(EntityStore):
    def __init__(self, database_url: str | None = None, reset_schema: bool = False):
        self._database_url = database_url or settings.database_url
        self._reset_schema = reset_schema
        self._pool: asyncpg.Pool | None = None

    async def open(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=settings.db_command_timeout,
            )
            await init_schema(self._pool, reset=self._reset_schema)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresStore used before open()")
        return self._pool

    async def get(self, model: type[R], record_id: str) -> R | None:
        row = await self.pool.fetchrow(f"SELECT doc FROM {model.table_name} WHERE id = $1;", record_id)
        return None if row is None else _load(model, row["doc"])

    async def find_by_tracking_code(self, tracking_code: str) -> DeliveryRequest | None:
        row = await self.pool.fetchrow(
            "SELECT doc FROM delivery_requests WHERE doc->>'tracking_code' = $1;",
            tracking_code,
        )
        return None if row is None else _load(DeliveryRequest, row["doc"])

    async def list(
        self,
        model: type[R],
        filters: dict[str, Any] | None = None,
        *,
        newest_first: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[R]:
        direction = "DESC" if newest_first else "ASC"
        rows = await self.pool.fetch(
            f"""
            SELECT doc FROM {model.table_name}
            WHERE doc @> $1::jsonb
            ORDER BY created_at {direction}
            LIMIT $2 OFFSET $3;
            """,
            json.dumps(normalize_filters(filters)),
            limit,
            offset,
        )
        return [_load(model, row["doc"]) for row in rows]

    async def count(self, model: type[R], filters: dict[str, Any] | None = None) -> int:
        return await self.pool.fetchval(
            f"SELECT count(*) FROM {model.table_name} WHERE doc @> $1::jsonb;",
            json.dumps(normalize_filters(filters)),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield _PostgresTransaction(conn)
