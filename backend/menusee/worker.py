from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, Optional

from .accountant import QuotaAccountant
from .config import ImageProvider, PipelineConfig
from .errors import ConfigurationError, MenuSeeError, ProviderError
from .image_store import ImageStore, dish_image_key, ensure_jpeg_bytes
from .models import Dish, new_id
from .observability import ErrorCode, ScanContext, log_image_job, log_scan_error, log_step_timing
from .providers import GeneratedImage, ImageGenerator
from .status import (
    DishImageStatus,
    ScanStatus,
    can_claim,
    dish_transition,
    is_terminal,
)
from .store import Store, Transaction

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Delicious dish"


def render_prompt(template: str, dish: Dish) -> str:
    return template.replace("{name}", dish.name).replace("{description}", dish.description or DEFAULT_DESCRIPTION)


class ImageGenerationWorker:
    """Generates the image for one dish per job.

    Claiming moves a dish queued -> generating in its own transaction and
    stamps a fresh claim_id on it. A duplicate job finds nothing to claim, and
    a job whose claim was superseded (force-complete, then a re-request) can
    no longer complete or fail the dish.
    """

    def __init__(
        self,
        store: Store,
        accountant: QuotaAccountant,
        generators: Mapping[ImageProvider, ImageGenerator],
        image_store: ImageStore,
        config: PipelineConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._accountant = accountant
        self._generators = generators
        self._image_store = image_store
        self._config = config
        self._sleep = sleep

    async def run(self, dish_id: str, scan_id: str, provider: ImageProvider) -> Optional[DishImageStatus]:
        provider = ImageProvider(provider)
        ctx = ScanContext(scan_id=scan_id, dish_id=dish_id, provider=provider.value)

        dish = await self._claim(dish_id, provider)
        if dish is None:
            ctx.mark_done("noop")
            log_image_job(ctx, "not_claimed")
            return None
        log_image_job(ctx, "claimed")

        key = dish_image_key(scan_id, dish_id, dish.claim_id)
        try:
            prompt = render_prompt(self._config.image_prompt_template, dish)
            image = await self._generate(ctx, provider, prompt)

            started = time.monotonic()
            jpeg = await asyncio.to_thread(ensure_jpeg_bytes, image.data)
            await asyncio.to_thread(self._image_store.put, key, jpeg, content_type="image/jpeg")
            ctx.store_ms = int((time.monotonic() - started) * 1000)
        except Exception as e:
            code = e.code if isinstance(e, MenuSeeError) else ErrorCode.IMAGE_GEN_FAILED
            log_scan_error(ctx, code, str(e), exc=None if isinstance(e, MenuSeeError) else e)
            if not await self.fail(dish_id, scan_id, str(e) or code.value, claim_id=dish.claim_id):
                ctx.mark_done("discarded")
                log_image_job(ctx, "stale_failure")
                return None
            ctx.mark_done(DishImageStatus.FAILED.value)
            log_image_job(ctx, "failed")
            return DishImageStatus.FAILED

        outcome = await self._finish(dish_id, scan_id, dish.claim_id, key, image)
        if outcome != "completed":
            await asyncio.to_thread(self._image_store.delete, key)
            ctx.mark_done("discarded")
            log_image_job(ctx, outcome, {"cost_usd": image.cost_usd})
            return None

        ctx.mark_done(DishImageStatus.COMPLETED.value)
        log_image_job(ctx, "completed", {"cost_usd": image.cost_usd, "model": image.model})
        return DishImageStatus.COMPLETED

    async def _claim(self, dish_id: str, provider: ImageProvider) -> Optional[Dish]:
        async def _tx(tx: Transaction) -> Optional[Dish]:
            dish = await tx.get_dish(dish_id)
            if dish is None or not can_claim(dish.image_status):
                return None
            scan = await tx.get_scan(dish.scan_id)
            if scan is None:
                return None
            if scan.status == ScanStatus.FAILED:
                await tx.patch_dish(dish.id, dish_transition(dish.image_status, DishImageStatus.SKIPPED))
                return None
            patch = {
                **dish_transition(dish.image_status, DishImageStatus.GENERATING),
                "image_provider": provider.value,
                "image_error": None,
                "claim_id": new_id(),
            }
            await tx.patch_dish(dish.id, patch)
            return dish.model_copy(update=patch)

        return await self._store.run_transaction(_tx)

    async def _generate(self, ctx: ScanContext, provider: ImageProvider, prompt: str) -> GeneratedImage:
        generator = self._generators.get(provider)
        if generator is None:
            raise ConfigurationError(f"Image provider not configured: {provider.value}")

        timeout = self._config.image_timeout_seconds or None
        attempts = self._config.image_max_retries + 1
        error: Optional[ProviderError] = None
        for attempt in range(1, attempts + 1):
            ctx.attempts = attempt
            started = time.monotonic()
            try:
                image = await asyncio.wait_for(generator.generate_image(prompt), timeout=timeout)
            except asyncio.TimeoutError:
                error = ProviderError(
                    f"Image generation timed out after {self._config.image_timeout_seconds:.0f}s",
                    code=ErrorCode.IMAGE_GEN_TIMEOUT,
                )
            except ProviderError as e:
                error = e
            else:
                ctx.image_gen_ms = int((time.monotonic() - started) * 1000)
                log_step_timing(ctx, "image_gen", ctx.image_gen_ms, {"attempt": attempt})
                return image

            if attempt < attempts:
                delay = self._config.image_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Image generation attempt %d/%d failed for dish_id=%s, retrying in %.1fs: %s",
                    attempt,
                    attempts,
                    ctx.dish_id,
                    delay,
                    error,
                )
                await self._sleep(delay)

        raise error  # type: ignore[misc]

    async def _finish(self, dish_id: str, scan_id: str, claim_id: Optional[str], key: str, image: GeneratedImage) -> str:
        async def _tx(tx: Transaction) -> str:
            dish = await tx.get_dish(dish_id)
            scan = await tx.get_scan(scan_id)
            if dish is None or scan is None:
                logger.warning("Dish or scan deleted while generating (dish_id=%s)", dish_id)
                return "discarded_deleted"

            if dish.image_status != DishImageStatus.GENERATING or dish.claim_id != claim_id:
                # Force-completed (and possibly re-claimed) while the provider call was running.
                logger.warning(
                    "Discarding late image for dish_id=%s (status=%s); recording cost only",
                    dish_id,
                    dish.image_status.value,
                )
                await self._accountant.record_cost_only(tx, scan, image.cost_usd)
                return "discarded"

            if is_terminal(scan.status):
                logger.warning("Late image result for scan_id=%s in status=%s", scan_id, scan.status.value)

            await tx.patch_dish(
                dish_id,
                {
                    **dish_transition(dish.image_status, DishImageStatus.COMPLETED),
                    "image_key": key,
                    "image_url": self._image_store.public_url(key),
                    "image_provider": image.provider.value,
                    "image_cost_usd": image.cost_usd,
                    "image_error": None,
                },
            )
            await self._accountant.record_success(tx, scan, image.cost_usd)
            return "completed"

        return await self._store.run_transaction(_tx)

    async def fail(self, dish_id: str, scan_id: str, message: str, claim_id: Optional[str] = None) -> bool:
        """Mark a dish failed and count it as resolved.

        With a claim_id, only the generating dish still held by that claim is
        failed. Without one, only a dish still queued is: its job was never
        submitted, so nothing else can have claimed it.
        """

        async def _tx(tx: Transaction) -> bool:
            dish = await tx.get_dish(dish_id)
            scan = await tx.get_scan(scan_id)
            if dish is None or scan is None:
                return False
            if claim_id is None:
                if dish.image_status != DishImageStatus.QUEUED:
                    return False
            elif dish.image_status != DishImageStatus.GENERATING or dish.claim_id != claim_id:
                logger.warning("Ignoring failure from a superseded job for dish_id=%s", dish_id)
                return False
            await tx.patch_dish(
                dish_id,
                {**dish_transition(dish.image_status, DishImageStatus.FAILED), "image_error": message},
            )
            await self._accountant.record_failure(tx, scan)
            return True

        return await self._store.run_transaction(_tx)
