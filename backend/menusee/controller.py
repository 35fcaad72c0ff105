from __future__ import annotations

import logging
from typing import Any, Dict, List

from .accountant import QuotaAccountant
from .errors import InvalidTransitionError
from .models import Dish, Scan
from .schemas import CancelResult
from .status import (
    POST_EXTRACTION_STATUSES,
    DishImageStatus,
    ScanStatus,
    dish_transition,
    scan_transition,
)
from .store import Store, Transaction

logger = logging.getLogger(__name__)


def _count(dishes: List[Dish], status: DishImageStatus) -> int:
    return sum(1 for d in dishes if d.image_status == status)


class CancellationController:
    """Stops or force-finishes image generation for a scan.

    Cancellation is cooperative: queued dishes become skipped so their jobs
    find nothing to claim; a provider call already running is not aborted.
    """

    def __init__(self, store: Store, accountant: QuotaAccountant) -> None:
        self._store = store
        self._accountant = accountant

    @staticmethod
    def _check(scan: Scan) -> None:
        if scan.status not in POST_EXTRACTION_STATUSES:
            raise InvalidTransitionError(
                f"Cannot stop generation while the menu is {scan.status.value}",
                details={"status": scan.status.value},
            )

    async def _sweep(self, tx: Transaction, dishes: List[Dish], sources: frozenset) -> List[Dish]:
        swept = []
        for dish in dishes:
            if dish.image_status in sources:
                patch = dish_transition(dish.image_status, DishImageStatus.SKIPPED)
                await tx.patch_dish(dish.id, patch)
                swept.append(dish.model_copy(update=patch))
            else:
                swept.append(dish)
        return swept

    async def stop_generation(self, scan_id: str) -> CancelResult:
        """queued -> skipped; running jobs finish on their own."""

        async def _tx(tx: Transaction) -> CancelResult:
            scan = await tx.require_scan(scan_id)
            dishes = await tx.list_dishes(scan_id)
            self._check(scan)

            n_queued = _count(dishes, DishImageStatus.QUEUED)
            after = await self._sweep(tx, dishes, frozenset({DishImageStatus.QUEUED}))
            completed = _count(after, DishImageStatus.COMPLETED)
            # Only dishes skipped by this call; earlier stops are not recounted.
            skipped = n_queued
            message = f"Stopped - {completed} images completed, {skipped} skipped"

            if scan.status != ScanStatus.FAILED:
                patch: Dict[str, Any] = {}
                if n_queued:
                    patch.update(self._accountant.release(scan, n_queued))
                if scan.status == ScanStatus.GENERATING:
                    patch.update(scan_transition(scan.status, ScanStatus.COMPLETED, status_message=message))
                if patch:
                    await tx.patch_scan(scan_id, patch)

            return CancelResult(
                completed=completed,
                skipped=skipped,
                total_dishes=len(dishes),
                message=message,
                changed=bool(n_queued) or scan.status == ScanStatus.GENERATING,
            )

        result = await self._store.run_transaction(_tx)
        logger.info("stop_generation scan_id=%s %s", scan_id, result.model_dump())
        return result

    async def force_complete(self, scan_id: str) -> CancelResult:
        """queued and generating -> skipped; the scan completes now."""

        async def _tx(tx: Transaction) -> CancelResult:
            scan = await tx.require_scan(scan_id)
            dishes = await tx.list_dishes(scan_id)
            self._check(scan)

            targets = frozenset({DishImageStatus.QUEUED, DishImageStatus.GENERATING})
            n_swept = sum(1 for d in dishes if d.image_status in targets)
            after = await self._sweep(tx, dishes, targets)
            completed = _count(after, DishImageStatus.COMPLETED)
            failed = _count(after, DishImageStatus.FAILED)
            skipped = _count(after, DishImageStatus.SKIPPED)
            message = f"Completed with {completed} images"

            if scan.status != ScanStatus.FAILED and (n_swept or scan.status == ScanStatus.GENERATING):
                resolved = completed + failed
                patch: Dict[str, Any] = {
                    **self._accountant.release(scan, n_swept),
                    "images_generated": resolved,
                    "images_failed": failed,
                }
                patch["images_requested"] = max(patch["images_requested"], resolved)
                if scan.status == ScanStatus.GENERATING:
                    patch.update(scan_transition(scan.status, ScanStatus.COMPLETED, status_message=message))
                await tx.patch_scan(scan_id, patch)

            return CancelResult(
                completed=completed,
                skipped=skipped,
                total_dishes=len(dishes),
                message=message,
                changed=bool(n_swept) or scan.status == ScanStatus.GENERATING,
            )

        result = await self._store.run_transaction(_tx)
        logger.info("force_complete scan_id=%s %s", scan_id, result.model_dump())
        return result
