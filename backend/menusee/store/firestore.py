from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from ..models import DEVICE_USER_FIELDS, DISH_FIELDS, SCAN_FIELDS, DeviceUser, Dish, Scan
from . import Store, Transaction, check_fields, plain_fields

T = TypeVar("T")

_DEVICE_USERS = "device_users"
_SCANS = "menu_scans"
_DISHES = "dishes"


def _doc(record: Any, *, exclude: Optional[set] = None) -> Dict[str, Any]:
    return plain_fields(record.model_dump(exclude=exclude))


class FirestoreTransaction(Transaction):
    """Document transaction. Writes are buffered until commit."""

    def __init__(self, db: firestore.AsyncClient, tx: firestore.AsyncTransaction) -> None:
        self._db = db
        self._tx = tx

    def _ref(self, collection: str, doc_id: str):
        return self._db.collection(collection).document(doc_id)

    async def get_device_user(self, device_id: str) -> Optional[DeviceUser]:
        snap = await self._ref(_DEVICE_USERS, device_id).get(transaction=self._tx)
        if not snap.exists:
            return None
        return DeviceUser.model_validate({**snap.to_dict(), "device_id": snap.id})

    async def insert_device_user(self, user: DeviceUser) -> None:
        self._tx.create(self._ref(_DEVICE_USERS, user.device_id), _doc(user, exclude={"device_id"}))

    async def patch_device_user(self, device_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DEVICE_USER_FIELDS - {"device_id"}, "device user")
        if fields:
            self._tx.update(self._ref(_DEVICE_USERS, device_id), plain_fields(fields))

    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        snap = await self._ref(_SCANS, scan_id).get(transaction=self._tx)
        if not snap.exists:
            return None
        return Scan.model_validate({**snap.to_dict(), "id": snap.id})

    async def list_scans_for_device(self, device_id: str) -> List[Scan]:
        query = (
            self._db.collection(_SCANS)
            .where(filter=FieldFilter("device_id", "==", device_id))
            .order_by("created_at", direction=firestore.Query.DESCENDING)
        )
        docs = await query.get(transaction=self._tx)
        return [Scan.model_validate({**d.to_dict(), "id": d.id}) for d in docs]

    async def insert_scan(self, scan: Scan) -> None:
        self._tx.create(self._ref(_SCANS, scan.id), _doc(scan, exclude={"id"}))

    async def patch_scan(self, scan_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, SCAN_FIELDS, "scan")
        if fields:
            self._tx.update(self._ref(_SCANS, scan_id), plain_fields(fields))

    async def delete_scan(self, scan_id: str) -> None:
        # Dishes are deleted explicitly by the caller; documents do not cascade.
        self._tx.delete(self._ref(_SCANS, scan_id))

    async def get_dish(self, dish_id: str) -> Optional[Dish]:
        snap = await self._ref(_DISHES, dish_id).get(transaction=self._tx)
        if not snap.exists:
            return None
        return Dish.model_validate({**snap.to_dict(), "id": snap.id})

    async def list_dishes(self, scan_id: str) -> List[Dish]:
        query = (
            self._db.collection(_DISHES)
            .where(filter=FieldFilter("scan_id", "==", scan_id))
            .order_by("display_order")
        )
        docs = await query.get(transaction=self._tx)
        return [Dish.model_validate({**d.to_dict(), "id": d.id}) for d in docs]

    async def insert_dishes(self, dishes: Sequence[Dish]) -> None:
        for dish in dishes:
            self._tx.create(self._ref(_DISHES, dish.id), _doc(dish, exclude={"id"}))

    async def patch_dish(self, dish_id: str, fields: Mapping[str, Any]) -> None:
        check_fields(fields, DISH_FIELDS - {"scan_id", "display_order"}, "dish")
        if fields:
            self._tx.update(self._ref(_DISHES, dish_id), plain_fields(fields))

    async def delete_dish(self, dish_id: str) -> None:
        self._tx.delete(self._ref(_DISHES, dish_id))


class FirestoreStore(Store):
    def __init__(self, project: Optional[str] = None, client: Optional[firestore.AsyncClient] = None) -> None:
        self._db = client or firestore.AsyncClient(project=project)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        @firestore.async_transactional
        async def _run(tx: firestore.AsyncTransaction) -> T:
            return await fn(FirestoreTransaction(self._db, tx))

        return await _run(self._db.transaction())
