"""Image quota: bulk and single-dish queueing against MAX_IMAGES_PER_SCAN."""

import asyncio

import pytest

from conftest import process
from menusee.status import DishImageStatus, ScanStatus


async def _completed_scan(service, queue, scan_id, provider=None):
    await process(service, queue, scan_id, provider)
    await queue.drain(service)
    return await service.get_scan_with_dishes(scan_id)


async def test_scenario_c_generate_remaining_reopens_scan(service, queue, uploaded_scan_id):
    await _completed_scan(service, queue, uploaded_scan_id)

    result = await service.generate_remaining_images(uploaded_scan_id)

    assert result.success
    assert result.message == "Queued 3 images for generation"
    assert result.data["queued"] == 3
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.status == ScanStatus.GENERATING
    assert scan.completed_at is None
    assert scan.images_requested == 5
    assert scan.estimated_cost_usd == pytest.approx(0.01 + 5 * 0.02)
    assert len(queue.jobs) == 3

    await queue.drain(service)

    view = await service.get_scan_with_dishes(uploaded_scan_id)
    assert view.scan.status == ScanStatus.COMPLETED
    assert view.scan.images_generated == view.scan.images_requested == 5
    assert all(d.image_status == DishImageStatus.COMPLETED for d in view.dishes)


async def test_generate_remaining_respects_ceiling(service, queue, config, uploaded_scan_id):
    object.__setattr__(config, "max_images_per_scan", 3)
    await _completed_scan(service, queue, uploaded_scan_id)

    result = await service.generate_remaining_images(uploaded_scan_id)

    assert result.data["queued"] == 1
    view = await service.get_scan_with_dishes(uploaded_scan_id)
    # Display order decides which dish gets the last slot.
    assert view.dishes[2].image_status == DishImageStatus.QUEUED
    assert [d.image_status for d in view.dishes[3:]] == [DishImageStatus.PENDING] * 2
    assert view.scan.images_requested == 3

    again = await service.generate_remaining_images(uploaded_scan_id)
    assert not again.success
    assert again.message == "Max images per scan reached"


async def test_concurrent_generate_remaining_never_exceeds_ceiling(service, queue, config, uploaded_scan_id):
    object.__setattr__(config, "max_images_per_scan", 3)
    await _completed_scan(service, queue, uploaded_scan_id)

    results = await asyncio.gather(
        service.generate_remaining_images(uploaded_scan_id),
        service.generate_remaining_images(uploaded_scan_id),
    )

    assert sum(r.data["queued"] for r in results) == 1
    await queue.drain(service)
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.images_requested == 3
    assert scan.images_generated == 3
    assert scan.status == ScanStatus.COMPLETED


async def test_generate_remaining_with_nothing_left(service, queue, uploaded_scan_id):
    await _completed_scan(service, queue, uploaded_scan_id)
    await service.generate_remaining_images(uploaded_scan_id)
    await queue.drain(service)

    result = await service.generate_remaining_images(uploaded_scan_id)

    assert not result.success
    assert result.message == "No dishes waiting for images"
    assert (await service.get_scan_view(uploaded_scan_id)).status == ScanStatus.COMPLETED


async def test_generate_remaining_before_extraction(service, queue, uploaded_scan_id):
    result = await service.generate_remaining_images(uploaded_scan_id)

    assert not result.success
    assert result.message == "Menu is still being processed"
    assert queue.jobs == []


async def test_generate_remaining_on_failed_scan(service, queue, vision, uploaded_scan_id):
    vision.error = RuntimeError("unexpected")
    await process(service, queue, uploaded_scan_id)

    result = await service.generate_remaining_images(uploaded_scan_id)

    assert not result.success
    assert result.message == "Scan failed; images cannot be generated"


async def test_single_dish_queues_once(service, queue, uploaded_scan_id):
    view = await _completed_scan(service, queue, uploaded_scan_id)
    pending = view.dishes[3]

    first = await service.generate_single_dish_image(pending.id)
    second = await service.generate_single_dish_image(pending.id)

    assert first.success
    assert first.message == "Queued 1 images for generation"
    assert not second.success
    assert second.message == "Image already generated or in progress"
    assert len(queue.jobs) == 1
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.images_requested == 3
    assert scan.status == ScanStatus.GENERATING


async def test_single_dish_already_completed_is_a_noop(service, queue, uploaded_scan_id):
    view = await _completed_scan(service, queue, uploaded_scan_id)

    result = await service.generate_single_dish_image(view.dishes[0].id)

    assert not result.success
    assert result.message == "Image already generated or in progress"
    assert (await service.get_scan_view(uploaded_scan_id)).status == ScanStatus.COMPLETED


async def test_single_dish_at_ceiling(service, queue, config, uploaded_scan_id):
    object.__setattr__(config, "max_images_per_scan", 2)
    view = await _completed_scan(service, queue, uploaded_scan_id)

    result = await service.generate_single_dish_image(view.dishes[4].id)

    assert not result.success
    assert result.message == "Maximum images per scan reached"
    assert (await service.store.get_dish(view.dishes[4].id)).image_status == DishImageStatus.PENDING


async def test_requeue_failed_dish_retracts_failure(service, queue, config, openai_generator, uploaded_scan_id):
    object.__setattr__(config, "auto_image_limit", 1)
    openai_generator.fail_times = 1
    view = await _completed_scan(service, queue, uploaded_scan_id)
    failed = view.dishes[0]
    assert failed.image_status == DishImageStatus.FAILED

    result = await service.generate_single_dish_image(failed.id)

    assert result.success
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.images_requested == 1
    assert scan.images_generated == 0
    assert scan.images_failed == 0
    assert scan.status == ScanStatus.GENERATING

    await queue.drain(service)

    dish = await service.store.get_dish(failed.id)
    assert dish.image_status == DishImageStatus.COMPLETED
    assert dish.image_error is None
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.status == ScanStatus.COMPLETED
    assert scan.status_message == "All images generated!"
    assert scan.images_generated == scan.images_requested == 1


async def test_single_dish_uses_requested_provider(service, queue, banana_generator, uploaded_scan_id):
    view = await _completed_scan(service, queue, uploaded_scan_id)

    await service.generate_single_dish_image(view.dishes[2].id, "nano_banana")
    await queue.drain(service)

    dish = await service.store.get_dish(view.dishes[2].id)
    assert dish.image_provider == "nano_banana"
    assert len(banana_generator.calls) == 1


async def test_unknown_dish(service):
    result = await service.generate_single_dish_image("missing")

    assert not result.success
    assert result.data["error_code"] == "DISH_NOT_FOUND"
