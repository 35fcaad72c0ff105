"""Persistent store: transactional unit of work over device users, scans and dishes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from ..errors import ConfigurationError, NotFoundError
from ..models import DeviceUser, Dish, Scan
from ..observability import ErrorCode

if TYPE_CHECKING:
    from ..config import PipelineConfig

T = TypeVar("T")


def plain_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Unwrap enum values so every backend stores plain strings."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def check_fields(fields: Mapping[str, Any], allowed: frozenset, kind: str) -> None:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown {kind} fields: {sorted(unknown)}")
    if "id" in fields:
        raise ValueError(f"{kind} id cannot be patched")


class Transaction(ABC):
    """One atomic unit of work.

    Reads must happen before writes inside a transaction; some backends
    (Firestore) reject reads after the first buffered write.
    """

    # Device users
    @abstractmethod
    async def get_device_user(self, device_id: str) -> Optional[DeviceUser]: ...

    @abstractmethod
    async def insert_device_user(self, user: DeviceUser) -> None: ...

    @abstractmethod
    async def patch_device_user(self, device_id: str, fields: Mapping[str, Any]) -> None: ...

    # Scans
    @abstractmethod
    async def get_scan(self, scan_id: str) -> Optional[Scan]: ...

    @abstractmethod
    async def list_scans_for_device(self, device_id: str) -> List[Scan]:
        """Scans owned by a device, newest first."""

    @abstractmethod
    async def insert_scan(self, scan: Scan) -> None: ...

    @abstractmethod
    async def patch_scan(self, scan_id: str, fields: Mapping[str, Any]) -> None: ...

    @abstractmethod
    async def delete_scan(self, scan_id: str) -> None: ...

    # Dishes
    @abstractmethod
    async def get_dish(self, dish_id: str) -> Optional[Dish]: ...

    @abstractmethod
    async def list_dishes(self, scan_id: str) -> List[Dish]:
        """Dishes of a scan ordered by display order."""

    @abstractmethod
    async def insert_dishes(self, dishes: Sequence[Dish]) -> None: ...

    @abstractmethod
    async def patch_dish(self, dish_id: str, fields: Mapping[str, Any]) -> None: ...

    @abstractmethod
    async def delete_dish(self, dish_id: str) -> None: ...

    async def require_scan(self, scan_id: str) -> Scan:
        scan = await self.get_scan(scan_id)
        if scan is None:
            raise NotFoundError(f"Scan not found: {scan_id}", code=ErrorCode.SCAN_NOT_FOUND)
        return scan

    async def require_dish(self, dish_id: str) -> Dish:
        dish = await self.get_dish(dish_id)
        if dish is None:
            raise NotFoundError(f"Dish not found: {dish_id}", code=ErrorCode.DISH_NOT_FOUND)
        return dish

    async def require_device_user(self, device_id: str) -> DeviceUser:
        user = await self.get_device_user(device_id)
        if user is None:
            raise NotFoundError(
                "Device user not found. Call ensureDeviceUser first.",
                code=ErrorCode.DEVICE_NOT_FOUND,
            )
        return user


class Store(ABC):
    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run `fn` atomically. Backends may retry `fn` on contention."""

    async def close(self) -> None:
        return None

    # Read-only conveniences
    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        return await self.run_transaction(lambda tx: tx.get_scan(scan_id))

    async def get_dish(self, dish_id: str) -> Optional[Dish]:
        return await self.run_transaction(lambda tx: tx.get_dish(dish_id))

    async def list_dishes(self, scan_id: str) -> List[Dish]:
        return await self.run_transaction(lambda tx: tx.list_dishes(scan_id))


def create_store(config: PipelineConfig) -> Store:
    """Create a store backend based on configuration."""
    backend = config.store_backend

    match backend:
        case "memory":
            from .memory import MemoryStore

            return MemoryStore()
        case "postgres":
            from .postgres import PostgresStore

            if not config.database_url:
                raise ConfigurationError("DATABASE_URL not configured")
            return PostgresStore(config.database_url)
        case "firestore":
            from .firestore import FirestoreStore

            return FirestoreStore(project=config.gcp_project)
        case _:
            raise ConfigurationError(
                f"Unknown store backend: {backend!r} (choose memory / postgres / firestore)"
            )
