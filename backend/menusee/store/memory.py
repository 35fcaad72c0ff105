"""In-process store for local runs and tests.

Transactions are serialized behind one asyncio lock and applied to a staged
copy of the tables, so a failing unit of work leaves nothing behind.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from ..models import DEVICE_USER_FIELDS, DISH_FIELDS, SCAN_FIELDS, DeviceUser, Dish, Scan
from . import Store, Transaction, check_fields

T = TypeVar("T")


class _Tables:
    def __init__(self) -> None:
        self.users: Dict[str, DeviceUser] = {}
        self.scans: Dict[str, Scan] = {}
        self.dishes: Dict[str, Dish] = {}

    def copy(self) -> "_Tables":
        out = _Tables()
        out.users = dict(self.users)
        out.scans = dict(self.scans)
        out.dishes = dict(self.dishes)
        return out


class MemoryTransaction(Transaction):
    def __init__(self, tables: _Tables) -> None:
        self._t = tables

    async def get_device_user(self, device_id: str) -> Optional[DeviceUser]:
        user = self._t.users.get(device_id)
        return user.model_copy() if user is not None else None

    async def insert_device_user(self, user: DeviceUser) -> None:
        if user.device_id in self._t.users:
            raise ValueError(f"Device user already exists: {user.device_id}")
        self._t.users[user.device_id] = user.model_copy()

    async def patch_device_user(self, device_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DEVICE_USER_FIELDS - {"device_id"}, "device user")
        current = self._t.users[device_id]
        self._t.users[device_id] = DeviceUser.model_validate({**current.model_dump(), **fields})

    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        scan = self._t.scans.get(scan_id)
        return scan.model_copy() if scan is not None else None

    async def list_scans_for_device(self, device_id: str) -> List[Scan]:
        scans = [s.model_copy() for s in self._t.scans.values() if s.device_id == device_id]
        scans.sort(key=lambda s: s.created_at, reverse=True)
        return scans

    async def insert_scan(self, scan: Scan) -> None:
        if scan.id in self._t.scans:
            raise ValueError(f"Scan already exists: {scan.id}")
        self._t.scans[scan.id] = scan.model_copy()

    async def patch_scan(self, scan_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, SCAN_FIELDS, "scan")
        current = self._t.scans[scan_id]
        self._t.scans[scan_id] = Scan.model_validate({**current.model_dump(), **fields})

    async def delete_scan(self, scan_id: str) -> None:
        self._t.scans.pop(scan_id, None)
        for dish_id in [d.id for d in self._t.dishes.values() if d.scan_id == scan_id]:
            del self._t.dishes[dish_id]

    async def get_dish(self, dish_id: str) -> Optional[Dish]:
        dish = self._t.dishes.get(dish_id)
        return dish.model_copy() if dish is not None else None

    async def list_dishes(self, scan_id: str) -> List[Dish]:
        dishes = [d.model_copy() for d in self._t.dishes.values() if d.scan_id == scan_id]
        dishes.sort(key=lambda d: d.display_order)
        return dishes

    async def insert_dishes(self, dishes: Sequence[Dish]) -> None:
        for dish in dishes:
            if dish.id in self._t.dishes:
                raise ValueError(f"Dish already exists: {dish.id}")
            taken = any(
                d.scan_id == dish.scan_id and d.display_order == dish.display_order
                for d in self._t.dishes.values()
            )
            if taken:
                raise ValueError(f"Duplicate display order {dish.display_order} for scan {dish.scan_id}")
            self._t.dishes[dish.id] = dish.model_copy()

    async def patch_dish(self, dish_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DISH_FIELDS - {"scan_id", "display_order"}, "dish")
        current = self._t.dishes[dish_id]
        self._t.dishes[dish_id] = Dish.model_validate({**current.model_dump(), **fields})

    async def delete_dish(self, dish_id: str) -> None:
        self._t.dishes.pop(dish_id, None)


class MemoryStore(Store):
    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        async with self._lock:
            staged = self._tables.copy()
            result = await fn(MemoryTransaction(staged))
            self._tables = staged
            return result
