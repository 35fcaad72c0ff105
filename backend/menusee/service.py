"""
MenuService: the application facade behind the HTTP API.

Wires the store, providers, job queue and pipeline components together and
exposes the client-facing operations.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from PIL import UnidentifiedImageError

from .accountant import QuotaAccountant
from .config import ImageProvider, PipelineConfig
from .controller import CancellationController
from .errors import InvalidTransitionError, MenuSeeError, NotFoundError
from .image_store import ImageStore, ensure_jpeg_bytes, upload_image_key
from .jobs import GenerateImageJob, Job, JobQueue, ProcessScanJob, create_job_queue
from .models import DeviceUser, Dish, Scan, utcnow
from .observability import ErrorCode
from .orchestrator import PipelineOrchestrator
from .providers import ImageGenerator, VisionProvider, create_image_generators, create_vision_provider
from .schemas import (
    DeleteResult,
    DeviceStats,
    OperationResult,
    QueueResult,
    ScanView,
    ScanWithDishes,
    SignedUrlResponse,
)
from .status import ScanStatus, scan_transition
from .store import Store, Transaction, create_store
from .uploads import ASSET_PREFIX, ImageLoader, UploadError, decode_base64_image
from .worker import ImageGenerationWorker

logger = logging.getLogger(__name__)


class MenuService:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        store: Optional[Store] = None,
        jobs: Optional[JobQueue] = None,
        image_store: Optional[ImageStore] = None,
        loader: Optional[ImageLoader] = None,
        vision: Optional[VisionProvider] = None,
        generators: Optional[Mapping[ImageProvider, ImageGenerator]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store or create_store(config)
        self.image_store = image_store or ImageStore(config.public_base_url)
        self.loader = loader or ImageLoader(self.image_store)
        self.vision = vision or create_vision_provider(config, self.loader)
        self.generators = generators if generators is not None else create_image_generators(config)
        self.jobs = jobs or create_job_queue(config)

        self.accountant = QuotaAccountant(self.store, config)
        self.worker = ImageGenerationWorker(
            self.store, self.accountant, self.generators, self.image_store, config, sleep=sleep
        )
        self.orchestrator = PipelineOrchestrator(
            self.store, self.vision, self.accountant, self.worker, self.jobs, config
        )
        self.controller = CancellationController(self.store, self.accountant)

    async def start(self) -> None:
        await self.jobs.start(self.handle_job)

    async def close(self) -> None:
        await self.jobs.close()
        await self.store.close()

    async def handle_job(self, job: Job) -> None:
        match job:
            case ProcessScanJob():
                await self.orchestrator.run(job.scan_id, job.provider)
            case GenerateImageJob():
                await self.worker.run(job.dish_id, job.scan_id, job.provider)
            case _:
                raise ValueError(f"Unknown job: {job!r}")

    # ------------------------------------------------------------------
    # Device users
    # ------------------------------------------------------------------
    async def ensure_device_user(self, device_id: str) -> DeviceUser:
        async def _tx(tx: Transaction) -> DeviceUser:
            user = await tx.get_device_user(device_id)
            if user is None:
                user = DeviceUser(device_id=device_id)
                await tx.insert_device_user(user)
                logger.info("Created device user %s", device_id)
                return user
            now = utcnow()
            await tx.patch_device_user(device_id, {"last_seen_at": now})
            return user.model_copy(update={"last_seen_at": now})

        return await self.store.run_transaction(_tx)

    async def list_scans(self, device_id: str) -> List[ScanView]:
        scans = await self.store.run_transaction(lambda tx: tx.list_scans_for_device(device_id))
        return [ScanView.from_scan(s) for s in scans]

    async def device_stats(self, device_id: str) -> DeviceStats:
        scans = await self.store.run_transaction(lambda tx: tx.list_scans_for_device(device_id))
        return DeviceStats(
            total_scans=len(scans),
            completed_scans=sum(1 for s in scans if s.status == ScanStatus.COMPLETED),
            total_dishes=sum(s.total_dishes for s in scans),
            total_images=sum(s.images_succeeded for s in scans),
            total_cost_usd=round(sum(s.actual_cost_usd for s in scans), 4),
        )

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    async def create_scan(self, device_id: str) -> ScanView:
        async def _tx(tx: Transaction) -> Scan:
            user = await tx.require_device_user(device_id)
            scan = Scan(device_id=device_id, estimated_cost_usd=self.config.costs.vision_parse)
            await tx.insert_scan(scan)
            await tx.patch_device_user(device_id, {"scan_count": user.scan_count + 1, "last_seen_at": utcnow()})
            return scan

        scan = await self.store.run_transaction(_tx)
        logger.info("Created scan %s for device %s", scan.id, device_id)
        return ScanView.from_scan(scan)

    async def attach_image(
        self,
        scan_id: str,
        *,
        image_url: Optional[str] = None,
        image_base64: Optional[str] = None,
    ) -> ScanView:
        """Record the menu photo for a pending scan and move it to uploading."""
        stored_key: Optional[str] = None
        if image_base64:
            data, _ = decode_base64_image(image_base64)
            try:
                jpeg = await asyncio.to_thread(ensure_jpeg_bytes, data)
            except (UnidentifiedImageError, OSError) as e:
                raise UploadError(f"Unsupported image data: {e}") from e
            stored_key = upload_image_key(scan_id)
            await asyncio.to_thread(self.image_store.put, stored_key, jpeg, content_type="image/jpeg")
            image_ref = ASSET_PREFIX + stored_key
        elif image_url:
            image_ref = image_url.strip()
            if not image_ref.startswith(("gs://", "http://", "https://")):
                raise UploadError(f"Unsupported image reference: {image_ref}")
        else:
            raise UploadError("No image provided", code=ErrorCode.IMAGE_MISSING)

        async def _tx(tx: Transaction) -> Scan:
            scan = await tx.require_scan(scan_id)
            patch = scan_transition(scan.status, ScanStatus.UPLOADING, status_message="Image uploaded")
            patch["image_ref"] = image_ref
            await tx.patch_scan(scan_id, patch)
            return scan.model_copy(update=patch)

        try:
            scan = await self.store.run_transaction(_tx)
        except MenuSeeError:
            if stored_key:
                await asyncio.to_thread(self.image_store.delete, stored_key)
            raise
        return ScanView.from_scan(scan)

    async def rename_scan(self, scan_id: str, restaurant_name: str) -> ScanView:
        name = restaurant_name.strip() or None

        async def _tx(tx: Transaction) -> Scan:
            scan = await tx.require_scan(scan_id)
            await tx.patch_scan(scan_id, {"restaurant_name": name})
            return scan.model_copy(update={"restaurant_name": name})

        return ScanView.from_scan(await self.store.run_transaction(_tx))

    async def get_scan_view(self, scan_id: str) -> ScanView:
        scan = await self.store.run_transaction(lambda tx: tx.require_scan(scan_id))
        return ScanView.from_scan(scan)

    async def get_scan_with_dishes(self, scan_id: str) -> ScanWithDishes:
        async def _tx(tx: Transaction):
            return await tx.require_scan(scan_id), await tx.list_dishes(scan_id)

        scan, dishes = await self.store.run_transaction(_tx)
        sections: Dict[str, List[Dish]] = {}
        no_section: List[Dish] = []
        for dish in dishes:
            if dish.section_name:
                sections.setdefault(dish.section_name, []).append(dish)
            else:
                no_section.append(dish)
        return ScanWithDishes(scan=ScanView.from_scan(scan), dishes=dishes, sections=sections, no_section=no_section)

    async def create_signed_upload_url(self, content_type: str) -> SignedUrlResponse:
        upload_url, gs_uri, expires_at = await asyncio.to_thread(
            self.loader.signed_upload_url, self.config.upload_bucket, content_type
        )
        return SignedUrlResponse(upload_url=upload_url, image_ref=gs_uri, expires_at=expires_at.isoformat())

    async def _delete(self, scan_id: str) -> DeleteResult:
        async def _tx(tx: Transaction):
            scan = await tx.require_scan(scan_id)
            dishes = await tx.list_dishes(scan_id)
            user = await tx.get_device_user(scan.device_id)
            for dish in dishes:
                await tx.delete_dish(dish.id)
            await tx.delete_scan(scan_id)
            if user is not None:
                await tx.patch_device_user(user.device_id, {"scan_count": max(0, user.scan_count - 1)})
            return scan, dishes

        scan, dishes = await self.store.run_transaction(_tx)

        released = 0
        for key in [d.image_key for d in dishes if d.image_key]:
            try:
                if await asyncio.to_thread(self.image_store.delete, key):
                    released += 1
            except Exception:
                logger.warning("Failed to release dish image %s", key, exc_info=True)
        try:
            if await self.loader.release(scan.image_ref):
                released += 1
        except Exception:
            logger.warning("Failed to release menu image %s", scan.image_ref, exc_info=True)

        logger.info("Deleted scan %s (%d dishes, %d blobs)", scan_id, len(dishes), released)
        return DeleteResult(deleted=True, dishes_deleted=len(dishes), blobs_released=released)

    # ------------------------------------------------------------------
    # Client RPCs: success flag plus a human-readable message
    # ------------------------------------------------------------------
    @staticmethod
    async def _rpc(op: Awaitable[OperationResult]) -> OperationResult:
        try:
            return await op
        except (NotFoundError, InvalidTransitionError) as e:
            return OperationResult(success=False, message=e.message, data={"error_code": e.code.value})

    @staticmethod
    def _queued(result: QueueResult) -> OperationResult:
        return OperationResult(success=result.queued > 0, message=result.message, data=result.model_dump())

    async def start_processing(self, scan_id: str, provider: Optional[str] = None) -> OperationResult:
        return await self._rpc(self.orchestrator.start(scan_id, self.config.resolve_provider(provider)))

    async def generate_remaining_images(self, scan_id: str, provider: Optional[str] = None) -> OperationResult:
        async def _op() -> OperationResult:
            resolved = self.config.resolve_provider(provider)
            result = await self.accountant.queue_remaining(scan_id, resolved)
            await self.orchestrator.dispatch_images(scan_id, result.dish_ids, resolved)
            return self._queued(result)

        return await self._rpc(_op())

    async def generate_single_dish_image(self, dish_id: str, provider: Optional[str] = None) -> OperationResult:
        async def _op() -> OperationResult:
            resolved = self.config.resolve_provider(provider)
            result = await self.accountant.queue_single(dish_id, resolved)
            if result.queued and result.scan_id:
                await self.orchestrator.dispatch_images(result.scan_id, result.dish_ids, resolved)
            return self._queued(result)

        return await self._rpc(_op())

    async def stop_generation(self, scan_id: str) -> OperationResult:
        async def _op() -> OperationResult:
            result = await self.controller.stop_generation(scan_id)
            return OperationResult(success=True, message=result.message, data=result.model_dump())

        return await self._rpc(_op())

    async def force_complete(self, scan_id: str) -> OperationResult:
        async def _op() -> OperationResult:
            result = await self.controller.force_complete(scan_id)
            return OperationResult(success=True, message=result.message, data=result.model_dump())

        return await self._rpc(_op())

    async def delete_scan(self, scan_id: str) -> OperationResult:
        async def _op() -> OperationResult:
            result = await self._delete(scan_id)
            return OperationResult(success=True, message="Scan deleted", data=result.model_dump())

        return await self._rpc(_op())

