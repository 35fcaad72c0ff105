"""
Job queue for pipeline work.

Two variants:
- LocalJobQueue: in-process asyncio worker pool (local runs, tests)
- CloudTasksJobQueue: one Cloud Task per job, delivered back to the
  /internal/tasks/* endpoints of this service
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Literal, Optional, Union

from pydantic import BaseModel

from .config import ImageProvider, PipelineConfig
from .errors import ConfigurationError, MenuSeeError
from .observability import ErrorCode

logger = logging.getLogger(__name__)


class ProcessScanJob(BaseModel):
    kind: Literal["process_scan"] = "process_scan"
    scan_id: str
    provider: ImageProvider


class GenerateImageJob(BaseModel):
    kind: Literal["generate_image"] = "generate_image"
    dish_id: str
    scan_id: str
    provider: ImageProvider


Job = Union[ProcessScanJob, GenerateImageJob]
JobHandler = Callable[[Job], Awaitable[None]]

TASK_PATHS = {
    "process_scan": "/internal/tasks/process-scan",
    "generate_image": "/internal/tasks/generate-dish-image",
}


class JobQueue(ABC):
    async def start(self, handler: JobHandler) -> None:
        return None

    @abstractmethod
    async def submit(self, job: Job) -> None: ...

    async def join(self) -> None:
        return None

    async def close(self) -> None:
        return None


class LocalJobQueue(JobQueue):
    def __init__(self, concurrency: int = 4) -> None:
        self._concurrency = max(1, concurrency)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._handler: Optional[JobHandler] = None

    async def start(self, handler: JobHandler) -> None:
        if self._workers:
            return
        self._handler = handler
        self._workers = [
            asyncio.create_task(self._work(i), name=f"menusee-worker-{i}") for i in range(self._concurrency)
        ]

    async def _work(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._handler(job)  # type: ignore[misc]
            except Exception:
                logger.exception("Job failed (worker=%d, kind=%s)", index, job.kind)
            finally:
                self._queue.task_done()

    async def submit(self, job: Job) -> None:
        await self._queue.put(job)

    async def join(self) -> None:
        """Wait until every submitted job, including jobs they submit, is done."""
        await self._queue.join()

    async def close(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


class CloudTasksJobQueue(JobQueue):
    def __init__(self, config: PipelineConfig, client=None) -> None:
        if not config.gcp_project:
            raise ConfigurationError("GCP_PROJECT not configured for cloud_tasks job queue")
        self._config = config
        self._client = client

    def _get_client(self):
        if self._client is None:
            from google.cloud import tasks_v2

            self._client = tasks_v2.CloudTasksClient()
        return self._client

    def _build_task(self, job: Job):
        from google.cloud import tasks_v2

        cfg = self._config
        headers = {"Content-Type": "application/json"}
        if cfg.internal_api_token:
            headers["x-internal-token"] = cfg.internal_api_token

        http_request = tasks_v2.HttpRequest(
            http_method=tasks_v2.HttpMethod.POST,
            url=f"{cfg.service_base_url}{TASK_PATHS[job.kind]}",
            headers=headers,
            body=job.model_dump_json().encode(),
        )
        if cfg.cloud_tasks_sa_email:
            http_request.oidc_token = tasks_v2.OidcToken(
                service_account_email=cfg.cloud_tasks_sa_email,
                audience=cfg.service_base_url,
            )
        return tasks_v2.Task(http_request=http_request)

    async def submit(self, job: Job) -> None:
        client = self._get_client()
        cfg = self._config
        queue_path = client.queue_path(cfg.gcp_project, cfg.cloud_tasks_location, cfg.cloud_tasks_queue)
        task = self._build_task(job)
        try:
            await asyncio.to_thread(client.create_task, parent=queue_path, task=task)
        except Exception as e:
            logger.exception("Failed to enqueue %s task", job.kind)
            raise MenuSeeError(f"Failed to enqueue task: {e}", code=ErrorCode.TASK_ENQUEUE_FAILED) from e
        logger.info("Enqueued %s task (%s)", job.kind, job.model_dump())


def create_job_queue(config: PipelineConfig) -> JobQueue:
    match config.job_queue:
        case "local":
            return LocalJobQueue(config.worker_concurrency)
        case "cloud_tasks":
            return CloudTasksJobQueue(config)
        case _:
            raise ConfigurationError(f"Unknown job queue: {config.job_queue!r} (choose local / cloud_tasks)")
