"""
Quota and cost accounting for dish images.

Every counter change happens inside the caller's store transaction, so two
concurrent queue requests can never push a scan past MAX_IMAGES_PER_SCAN.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from .config import ImageProvider, PipelineConfig
from .models import Dish, Scan
from .schemas import QueueResult
from .status import (
    BULK_QUEUEABLE,
    SINGLE_QUEUEABLE,
    DishImageStatus,
    ScanStatus,
    dish_transition,
    scan_transition,
)
from .store import Store, Transaction

logger = logging.getLogger(__name__)

MSG_BULK_LIMIT = "Max images per scan reached"
MSG_SINGLE_LIMIT = "Maximum images per scan reached"
MSG_ALREADY_QUEUED = "Image already generated or in progress"
MSG_NOTHING_TO_QUEUE = "No dishes waiting for images"
MSG_SCAN_FAILED = "Scan failed; images cannot be generated"
MSG_NOT_READY = "Menu is still being processed"
MSG_ALL_GENERATED = "All images generated!"
MSG_GENERATING = "Generating images..."


def completion_message(failed: int, requested: int) -> str:
    if failed <= 0:
        return MSG_ALL_GENERATED
    return f"Processing complete ({failed} of {requested} images failed)"


class QuotaAccountant:
    def __init__(self, store: Store, config: PipelineConfig) -> None:
        self._store = store
        self._config = config

    def auto_queue_count(self, total_dishes: int) -> int:
        return max(0, min(total_dishes, self._config.auto_image_limit, self._config.max_images_per_scan))

    def unit_cost(self, provider: ImageProvider) -> float:
        return self._config.image_cost(provider)

    def room(self, scan: Scan) -> int:
        return max(0, self._config.max_images_per_scan - scan.images_requested)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------
    def _refusal(self, scan: Scan) -> Optional[str]:
        if scan.status == ScanStatus.FAILED:
            return MSG_SCAN_FAILED
        if scan.status not in (ScanStatus.GENERATING, ScanStatus.COMPLETED):
            return MSG_NOT_READY
        return None

    async def _mark_queued(
        self,
        tx: Transaction,
        scan: Scan,
        dishes: Sequence[Dish],
        provider: ImageProvider,
        *,
        newly_requested: int,
        retracted_failures: int = 0,
    ) -> None:
        for dish in dishes:
            await tx.patch_dish(
                dish.id,
                {
                    **dish_transition(dish.image_status, DishImageStatus.QUEUED),
                    "image_provider": provider.value,
                    "image_error": None,
                },
            )

        patch: Dict[str, Any] = {
            "images_requested": scan.images_requested + newly_requested,
            "estimated_cost_usd": scan.estimated_cost_usd + len(dishes) * self.unit_cost(provider),
        }
        if retracted_failures:
            patch["images_generated"] = max(0, scan.images_generated - retracted_failures)
            patch["images_failed"] = max(0, scan.images_failed - retracted_failures)
        if scan.status == ScanStatus.COMPLETED:
            patch.update(
                scan_transition(scan.status, ScanStatus.GENERATING, reopen=True, status_message=MSG_GENERATING)
            )
        await tx.patch_scan(scan.id, patch)

    async def queue_remaining(self, scan_id: str, provider: ImageProvider) -> QueueResult:
        """Queue as many pending/skipped dishes as the ceiling allows, in display order."""

        async def _tx(tx: Transaction) -> QueueResult:
            scan = await tx.require_scan(scan_id)
            dishes = await tx.list_dishes(scan_id)

            refusal = self._refusal(scan)
            if refusal:
                return QueueResult(queued=0, message=refusal, scan_id=scan_id)

            room = self.room(scan)
            if room <= 0:
                return QueueResult(queued=0, message=MSG_BULK_LIMIT, scan_id=scan_id)

            eligible = [d for d in dishes if d.image_status in BULK_QUEUEABLE]
            eligible.sort(key=lambda d: d.display_order)
            selected = eligible[:room]
            if not selected:
                return QueueResult(queued=0, message=MSG_NOTHING_TO_QUEUE, scan_id=scan_id)

            await self._mark_queued(tx, scan, selected, provider, newly_requested=len(selected))
            return QueueResult(
                queued=len(selected),
                message=f"Queued {len(selected)} images for generation",
                dish_ids=[d.id for d in selected],
                scan_id=scan_id,
            )

        result = await self._store.run_transaction(_tx)
        logger.info("queue_remaining scan_id=%s queued=%d", scan_id, result.queued)
        return result

    async def queue_single(self, dish_id: str, provider: ImageProvider) -> QueueResult:
        """Queue one dish. Already queued/generating/completed dishes are a no-op.

        A failed dish already holds a slot of the quota: re-queuing it retracts
        its failure instead of requesting a new slot.
        """

        async def _tx(tx: Transaction) -> QueueResult:
            dish = await tx.require_dish(dish_id)
            scan = await tx.require_scan(dish.scan_id)

            if dish.image_status not in SINGLE_QUEUEABLE:
                return QueueResult(queued=0, message=MSG_ALREADY_QUEUED, scan_id=scan.id)

            refusal = self._refusal(scan)
            if refusal:
                return QueueResult(queued=0, message=refusal, scan_id=scan.id)

            if dish.image_status == DishImageStatus.FAILED:
                await self._mark_queued(tx, scan, [dish], provider, newly_requested=0, retracted_failures=1)
            else:
                if self.room(scan) <= 0:
                    return QueueResult(queued=0, message=MSG_SINGLE_LIMIT, scan_id=scan.id)
                await self._mark_queued(tx, scan, [dish], provider, newly_requested=1)

            return QueueResult(
                queued=1,
                message="Queued 1 images for generation",
                dish_ids=[dish.id],
                scan_id=scan.id,
            )

        result = await self._store.run_transaction(_tx)
        logger.info("queue_single dish_id=%s queued=%d", dish_id, result.queued)
        return result

    # ------------------------------------------------------------------
    # Worker outcomes (run inside the worker's finalize transaction)
    # ------------------------------------------------------------------
    def _resolve_patch(self, scan: Scan, *, failed: bool, cost: float) -> Dict[str, Any]:
        generated = scan.images_generated + 1
        failures = scan.images_failed + (1 if failed else 0)
        patch: Dict[str, Any] = {"images_generated": generated, "images_failed": failures}
        if cost:
            patch["actual_cost_usd"] = scan.actual_cost_usd + cost
        # Terminal scans keep their status; only counters move.
        if scan.status == ScanStatus.GENERATING and generated >= scan.images_requested:
            patch.update(
                scan_transition(
                    scan.status,
                    ScanStatus.COMPLETED,
                    status_message=completion_message(failures, scan.images_requested),
                )
            )
        return patch

    async def record_success(self, tx: Transaction, scan: Scan, cost: float) -> Dict[str, Any]:
        patch = self._resolve_patch(scan, failed=False, cost=cost)
        await tx.patch_scan(scan.id, patch)
        return patch

    async def record_failure(self, tx: Transaction, scan: Scan) -> Dict[str, Any]:
        patch = self._resolve_patch(scan, failed=True, cost=0.0)
        await tx.patch_scan(scan.id, patch)
        return patch

    async def record_cost_only(self, tx: Transaction, scan: Scan, cost: float) -> None:
        """Bill a generation whose image was discarded."""
        if cost:
            await tx.patch_scan(scan.id, {"actual_cost_usd": scan.actual_cost_usd + cost})

    def release(self, scan: Scan, count: int) -> Dict[str, Any]:
        """Give `count` unstarted images back to the quota. Returns the scan patch."""
        requested = max(scan.images_generated, scan.images_requested - max(0, count))
        return {"images_requested": requested}
