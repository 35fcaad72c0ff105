"""Pytest fixtures: fake providers, in-memory store and a wired MenuService."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from menusee.config import ImageProvider, PipelineConfig
from menusee.errors import MenuSeeError, ProviderError
from menusee.image_store import ImageStore
from menusee.jobs import Job, JobQueue
from menusee.observability import ErrorCode
from menusee.providers import GeneratedImage, ImageGenerator, VisionProvider
from menusee.schemas import VisionMenuResponse
from menusee.service import MenuService
from menusee.store.memory import MemoryStore

# Starts with the JPEG magic bytes, so it is stored as-is.
FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg-body"

MENU_URL = "https://example.com/menu.jpg"


def make_menu(n_dishes: int = 5, restaurant: Optional[str] = "Trattoria Test") -> VisionMenuResponse:
    """Two sections, then the rest as fallback items."""
    names = [f"Dish {i}" for i in range(n_dishes)]
    starters = [{"name": n, "description": f"{n} description", "price": "$5"} for n in names[:2]]
    mains = [{"name": n} for n in names[2:4]]
    fallback = [{"name": n} for n in names[4:]]
    return VisionMenuResponse.model_validate(
        {
            "restaurantName": restaurant,
            "sections": [
                {"name": "Starters", "items": starters},
                {"name": "Mains", "items": mains},
            ],
            "itemsFallback": fallback,
        }
    )


class FakeVision(VisionProvider):
    def __init__(self, menu: Optional[VisionMenuResponse] = None) -> None:
        self.menu = menu or make_menu()
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[str] = []

    async def extract_menu(self, image_ref: str) -> VisionMenuResponse:
        self.calls.append(image_ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.menu


class FakeImageGenerator(ImageGenerator):
    def __init__(self, provider: ImageProvider = ImageProvider.OPENAI, cost: float = 0.02) -> None:
        self.provider = provider
        self.cost = cost
        self.fail_times = 0
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.calls: List[str] = []

    async def generate_image(self, prompt: str) -> GeneratedImage:
        self.calls.append(prompt)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times:
            self.fail_times -= 1
            raise ProviderError("Image generation failed: boom", code=ErrorCode.IMAGE_GEN_FAILED)
        return GeneratedImage(
            data=FAKE_JPEG,
            content_type="image/jpeg",
            cost_usd=self.cost,
            provider=self.provider,
            model="fake-model",
        )


class RecordingJobQueue(JobQueue):
    """Collects jobs; tests run them explicitly with `drain`."""

    def __init__(self) -> None:
        self.jobs: List[Job] = []
        self.fail_submit = False

    async def submit(self, job: Job) -> None:
        if self.fail_submit:
            raise MenuSeeError("queue unavailable", code=ErrorCode.TASK_ENQUEUE_FAILED)
        self.jobs.append(job)

    def take(self) -> List[Job]:
        jobs, self.jobs = self.jobs, []
        return jobs

    async def drain(self, service: MenuService) -> None:
        while self.jobs:
            for job in self.take():
                await service.handle_job(job)


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def _no_remote_image_store(monkeypatch):
    for key in ("R2_BUCKET", "R2_ENDPOINT", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_PUBLIC_URL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(
        auto_image_limit=2,
        max_images_per_scan=50,
        vision_timeout_seconds=5,
        image_timeout_seconds=5,
        public_base_url="http://testserver",
    )


@pytest.fixture
def vision() -> FakeVision:
    return FakeVision()


@pytest.fixture
def openai_generator() -> FakeImageGenerator:
    return FakeImageGenerator(ImageProvider.OPENAI, cost=0.02)


@pytest.fixture
def banana_generator() -> FakeImageGenerator:
    return FakeImageGenerator(ImageProvider.NANO_BANANA, cost=0.04)


@pytest.fixture
def queue() -> RecordingJobQueue:
    return RecordingJobQueue()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def service(config, vision, openai_generator, banana_generator, queue, fake_sleep) -> MenuService:
    return MenuService(
        config,
        store=MemoryStore(),
        jobs=queue,
        image_store=ImageStore(config.public_base_url),
        vision=vision,
        generators={ImageProvider.OPENAI: openai_generator, ImageProvider.NANO_BANANA: banana_generator},
        sleep=fake_sleep,
    )


@pytest_asyncio.fixture
async def uploaded_scan_id(service) -> str:
    await service.ensure_device_user("device-1")
    scan = await service.create_scan("device-1")
    await service.attach_image(scan.id, image_url=MENU_URL)
    return scan.id


async def process(service: MenuService, queue: RecordingJobQueue, scan_id: str, provider: Optional[str] = None):
    """Start processing and run the extraction job only."""
    result = await service.start_processing(scan_id, provider)
    assert result.success, result.message
    for job in queue.take():
        if job.kind == "process_scan":
            await service.handle_job(job)
        else:
            queue.jobs.append(job)
    return result
