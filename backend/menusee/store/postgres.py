from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import psycopg
from psycopg import AsyncConnection, sql
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from ..models import DEVICE_USER_FIELDS, DISH_FIELDS, SCAN_FIELDS, DeviceUser, Dish, Scan
from . import Store, Transaction, check_fields, plain_fields

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_ATTEMPTS = 3

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS device_users (
        device_id TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        scan_count INTEGER NOT NULL DEFAULT 0 CHECK (scan_count >= 0)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_scans (
        id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        image_ref TEXT,
        restaurant_name TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        status_message TEXT,
        error_message TEXT,
        total_dishes INTEGER NOT NULL DEFAULT 0 CHECK (total_dishes >= 0),
        dishes_extracted INTEGER NOT NULL DEFAULT 0 CHECK (dishes_extracted >= 0),
        images_generated INTEGER NOT NULL DEFAULT 0 CHECK (images_generated >= 0),
        images_requested INTEGER NOT NULL DEFAULT 0 CHECK (images_requested >= 0),
        images_failed INTEGER NOT NULL DEFAULT 0 CHECK (images_failed >= 0),
        estimated_cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (estimated_cost_usd >= 0),
        actual_cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (actual_cost_usd >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        CHECK (images_generated <= images_requested),
        CHECK (images_failed <= images_generated),
        CHECK (dishes_extracted <= total_dishes)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_menu_scans_device_created ON menu_scans(device_id, created_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS dishes (
        id TEXT PRIMARY KEY,
        scan_id TEXT NOT NULL REFERENCES menu_scans(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT,
        price TEXT,
        section_name TEXT,
        display_order INTEGER NOT NULL,
        image_status TEXT NOT NULL DEFAULT 'pending',
        image_key TEXT,
        image_url TEXT,
        image_provider TEXT,
        image_cost_usd DOUBLE PRECISION,
        image_error TEXT,
        claim_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        image_generated_at TIMESTAMPTZ,
        UNIQUE (scan_id, display_order)
    );
    """,
    "ALTER TABLE dishes ADD COLUMN IF NOT EXISTS claim_id TEXT;",
)


async def _ensure_schema(conn: AsyncConnection) -> None:
    async with conn.cursor() as cur:
        for statement in _SCHEMA_STATEMENTS:
            await cur.execute(statement)
    await conn.commit()


def _insert_query(table: str, row: Dict[str, Any]) -> sql.Composed:
    columns = list(row)
    return sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        sql.SQL(", ").join(sql.Placeholder() for _ in columns),
    )


def _update_query(table: str, key: str, fields: Dict[str, Any]) -> sql.Composed:
    return sql.SQL("UPDATE {} SET {} WHERE {} = %s").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(k)) for k in fields),
        sql.Identifier(key),
    )


class PostgresTransaction(Transaction):
    """Every row read is locked FOR UPDATE until the transaction ends."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def _fetchone(self, query: Any, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()

    async def _fetchall(self, query: Any, params: Sequence[Any]) -> List[Dict[str, Any]]:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    async def _execute(self, query: Any, params: Sequence[Any]) -> None:
        async with self._conn.cursor() as cur:
            await cur.execute(query, params)

    async def get_device_user(self, device_id: str) -> Optional[DeviceUser]:
        row = await self._fetchone("SELECT * FROM device_users WHERE device_id = %s FOR UPDATE", (device_id,))
        return DeviceUser.model_validate(row) if row else None

    async def insert_device_user(self, user: DeviceUser) -> None:
        row = plain_fields(user.model_dump())
        await self._execute(_insert_query("device_users", row), list(row.values()))

    async def patch_device_user(self, device_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DEVICE_USER_FIELDS - {"device_id"}, "device user")
        if not fields:
            return
        row = plain_fields(fields)
        await self._execute(_update_query("device_users", "device_id", row), [*row.values(), device_id])

    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        row = await self._fetchone("SELECT * FROM menu_scans WHERE id = %s FOR UPDATE", (scan_id,))
        return Scan.model_validate(row) if row else None

    async def list_scans_for_device(self, device_id: str) -> List[Scan]:
        rows = await self._fetchall(
            "SELECT * FROM menu_scans WHERE device_id = %s ORDER BY created_at DESC",
            (device_id,),
        )
        return [Scan.model_validate(r) for r in rows]

    async def insert_scan(self, scan: Scan) -> None:
        row = plain_fields(scan.model_dump())
        await self._execute(_insert_query("menu_scans", row), list(row.values()))

    async def patch_scan(self, scan_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, SCAN_FIELDS, "scan")
        if not fields:
            return
        row = plain_fields(fields)
        await self._execute(_update_query("menu_scans", "id", row), [*row.values(), scan_id])

    async def delete_scan(self, scan_id: str) -> None:
        await self._execute("DELETE FROM menu_scans WHERE id = %s", (scan_id,))

    async def get_dish(self, dish_id: str) -> Optional[Dish]:
        row = await self._fetchone("SELECT * FROM dishes WHERE id = %s FOR UPDATE", (dish_id,))
        return Dish.model_validate(row) if row else None

    async def list_dishes(self, scan_id: str) -> List[Dish]:
        rows = await self._fetchall(
            "SELECT * FROM dishes WHERE scan_id = %s ORDER BY display_order FOR UPDATE",
            (scan_id,),
        )
        return [Dish.model_validate(r) for r in rows]

    async def insert_dishes(self, dishes: Sequence[Dish]) -> None:
        if not dishes:
            return
        rows = [plain_fields(d.model_dump()) for d in dishes]
        async with self._conn.cursor() as cur:
            await cur.executemany(_insert_query("dishes", rows[0]), [list(r.values()) for r in rows])

    async def patch_dish(self, dish_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DISH_FIELDS - {"scan_id", "display_order"}, "dish")
        if not fields:
            return
        row = plain_fields(fields)
        await self._execute(_update_query("dishes", "id", row), [*row.values(), dish_id])

    async def delete_dish(self, dish_id: str) -> None:
        await self._execute("DELETE FROM dishes WHERE id = %s", (dish_id,))


class PostgresStore(Store):
    def __init__(self, url: str) -> None:
        self._url = url
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> AsyncConnection:
        conn = await psycopg.AsyncConnection.connect(self._url, row_factory=dict_row)
        if not self._schema_ready:
            async with self._schema_lock:
                if not self._schema_ready:
                    await _ensure_schema(conn)
                    self._schema_ready = True
        return conn

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            conn = await self._connect()
            try:
                async with conn.transaction():
                    return await fn(PostgresTransaction(conn))
            except (pg_errors.DeadlockDetected, pg_errors.SerializationFailure):
                if attempt == _MAX_ATTEMPTS:
                    raise
                logger.warning("Retrying store transaction after lock conflict (attempt=%d)", attempt)
            finally:
                await conn.close()
        raise RuntimeError("unreachable")
