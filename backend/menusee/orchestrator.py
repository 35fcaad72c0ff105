"""
Scan pipeline: vision extraction, dish creation and image fan-out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterator, List, Optional, Sequence, Tuple

from .accountant import MSG_GENERATING, QuotaAccountant
from .config import ImageProvider, PipelineConfig
from .errors import MenuSeeError
from .jobs import GenerateImageJob, JobQueue, ProcessScanJob
from .models import Dish
from .observability import (
    ErrorCode,
    ScanContext,
    log_scan_done,
    log_scan_error,
    log_scan_start,
    log_step_timing,
)
from .providers import VisionProvider
from .schemas import OperationResult, VisionMenuItem, VisionMenuResponse
from .status import DishImageStatus, ScanStatus, is_terminal, scan_transition
from .store import Store, Transaction
from .worker import ImageGenerationWorker

logger = logging.getLogger(__name__)

MSG_PROCESSING = "Processing menu..."
MSG_EXTRACTING = "Extracting dishes..."
MSG_MENU_DONE = "Menu processed successfully!"
MSG_NO_IMAGE = "Scan or image not found"


def flatten_menu(menu: VisionMenuResponse) -> Iterator[Tuple[Optional[str], VisionMenuItem]]:
    """Sections first, then fallback items; nameless items are dropped."""
    for section in menu.sections:
        for item in section.items:
            if item.name.strip():
                yield (section.name.strip() or None), item
    for item in menu.items_fallback or []:
        if item.name.strip():
            yield None, item


class PipelineOrchestrator:
    def __init__(
        self,
        store: Store,
        vision: VisionProvider,
        accountant: QuotaAccountant,
        worker: ImageGenerationWorker,
        jobs: JobQueue,
        config: PipelineConfig,
    ) -> None:
        self._store = store
        self._vision = vision
        self._accountant = accountant
        self._worker = worker
        self._jobs = jobs
        self._config = config

    async def start(self, scan_id: str, provider: ImageProvider) -> OperationResult:
        """Move an uploaded scan into processing and submit its job."""

        async def _tx(tx: Transaction) -> OperationResult:
            scan = await tx.require_scan(scan_id)
            if not scan.image_ref:
                if not is_terminal(scan.status):
                    await tx.patch_scan(
                        scan_id,
                        scan_transition(
                            scan.status, ScanStatus.FAILED, status_message=MSG_NO_IMAGE, error_message=MSG_NO_IMAGE
                        ),
                    )
                return OperationResult(success=False, message=MSG_NO_IMAGE)
            if scan.status != ScanStatus.UPLOADING:
                return OperationResult(
                    success=False,
                    message=f"Scan cannot be started while {scan.status.value}",
                    data={"status": scan.status.value},
                )
            await tx.patch_scan(scan_id, scan_transition(scan.status, ScanStatus.PROCESSING, status_message=MSG_PROCESSING))
            return OperationResult(success=True, message="Processing started", data={"scan_id": scan_id})

        result = await self._store.run_transaction(_tx)
        if not result.success:
            return result

        try:
            await self._jobs.submit(ProcessScanJob(scan_id=scan_id, provider=provider))
        except MenuSeeError as e:
            await self._fail(scan_id, e.message)
            return OperationResult(success=False, message=e.message)
        return result

    async def run(self, scan_id: str, provider: ImageProvider) -> None:
        provider = ImageProvider(provider)
        ctx = ScanContext(scan_id=scan_id, provider=provider.value)
        log_scan_start(ctx)

        scan = await self._store.get_scan(scan_id)
        if scan is None or scan.status != ScanStatus.PROCESSING:
            # Redelivered job or a scan that moved on without us.
            ctx.mark_done("noop")
            log_scan_done(ctx, {"status": scan.status.value if scan else None})
            return

        try:
            started = time.monotonic()
            try:
                menu = await asyncio.wait_for(
                    self._vision.extract_menu(scan.image_ref or ""),
                    timeout=self._config.vision_timeout_seconds or None,
                )
            except asyncio.TimeoutError:
                raise MenuSeeError(
                    f"Menu parsing timed out after {self._config.vision_timeout_seconds:.0f}s",
                    code=ErrorCode.VISION_TIMEOUT,
                )
            ctx.vision_ms = int((time.monotonic() - started) * 1000)
            log_step_timing(ctx, "vision", ctx.vision_ms)

            items = list(flatten_menu(menu))
            if not await self._mark_extracting(scan_id, menu.restaurant_name, len(items)):
                ctx.mark_done("abandoned")
                log_scan_done(ctx)
                return

            queued = await self._create_dishes(scan_id, items, provider)
            if queued is None:
                ctx.mark_done("abandoned")
                log_scan_done(ctx)
                return
        except Exception as e:
            code = e.code if isinstance(e, MenuSeeError) else ErrorCode.SCAN_FAILED
            message = str(e) or code.value
            log_scan_error(ctx, code, message, exc=None if isinstance(e, MenuSeeError) else e)
            await self._fail(scan_id, message)
            ctx.mark_done(ScanStatus.FAILED.value)
            log_scan_done(ctx)
            return

        ctx.dishes_count = len(items)
        ctx.images_queued = len(queued)
        await self.dispatch_images(scan_id, [d.id for d in queued], provider)
        ctx.mark_done(ScanStatus.GENERATING.value if queued else ScanStatus.COMPLETED.value)
        log_scan_done(ctx)

    async def _mark_extracting(self, scan_id: str, restaurant_name: Optional[str], total: int) -> bool:
        async def _tx(tx: Transaction) -> bool:
            scan = await tx.require_scan(scan_id)
            if scan.status != ScanStatus.PROCESSING:
                return False
            patch = scan_transition(scan.status, ScanStatus.EXTRACTING, status_message=MSG_EXTRACTING)
            patch.update(
                {
                    "total_dishes": total,
                    "actual_cost_usd": scan.actual_cost_usd + self._config.costs.vision_parse,
                }
            )
            if restaurant_name and restaurant_name.strip():
                patch["restaurant_name"] = restaurant_name.strip()
            await tx.patch_scan(scan_id, patch)
            return True

        return await self._store.run_transaction(_tx)

    async def _create_dishes(
        self,
        scan_id: str,
        items: Sequence[Tuple[Optional[str], VisionMenuItem]],
        provider: ImageProvider,
    ) -> Optional[List[Dish]]:
        """Insert dishes, queue the auto subset and leave extraction. None if the scan moved on."""
        auto = self._accountant.auto_queue_count(len(items))

        async def _tx(tx: Transaction) -> Optional[List[Dish]]:
            scan = await tx.require_scan(scan_id)
            if scan.status != ScanStatus.EXTRACTING:
                return None

            dishes = [
                Dish(
                    scan_id=scan_id,
                    name=item.name.strip(),
                    description=item.description,
                    price=item.price,
                    section_name=section,
                    display_order=order,
                    image_status=DishImageStatus.QUEUED if order < auto else DishImageStatus.PENDING,
                    image_provider=provider.value if order < auto else None,
                )
                for order, (section, item) in enumerate(items)
            ]
            await tx.insert_dishes(dishes)

            if auto:
                transition = scan_transition(scan.status, ScanStatus.GENERATING, status_message=MSG_GENERATING)
            else:
                transition = scan_transition(scan.status, ScanStatus.COMPLETED, status_message=MSG_MENU_DONE)
            await tx.patch_scan(
                scan_id,
                {
                    **transition,
                    "dishes_extracted": len(dishes),
                    "images_requested": auto,
                    "estimated_cost_usd": scan.estimated_cost_usd + auto * self._accountant.unit_cost(provider),
                },
            )
            return dishes[:auto]

        return await self._store.run_transaction(_tx)

    async def dispatch_images(self, scan_id: str, dish_ids: Sequence[str], provider: ImageProvider) -> None:
        """Submit one image job per queued dish; a dish whose job cannot be submitted fails."""
        for dish_id in dish_ids:
            try:
                await self._jobs.submit(GenerateImageJob(dish_id=dish_id, scan_id=scan_id, provider=provider))
            except MenuSeeError as e:
                logger.error("Could not submit image job for dish_id=%s: %s", dish_id, e.message)
                await self._worker.fail(dish_id, scan_id, e.message)

    async def _fail(self, scan_id: str, message: str) -> None:
        async def _tx(tx: Transaction) -> None:
            scan = await tx.get_scan(scan_id)
            if scan is None or is_terminal(scan.status):
                return
            await tx.patch_scan(
                scan_id,
                scan_transition(scan.status, ScanStatus.FAILED, status_message=message, error_message=message),
            )

        await self._store.run_transaction(_tx)
