import json
from unittest.mock import MagicMock

import pytest

from menusee.config import ImageProvider, PipelineConfig
from menusee.errors import ConfigurationError, MenuSeeError
from menusee.jobs import CloudTasksJobQueue, GenerateImageJob, LocalJobQueue, ProcessScanJob, create_job_queue
from menusee.observability import ErrorCode
from menusee.status import ScanStatus


async def test_local_queue_runs_jobs_and_survives_handler_errors():
    seen = []

    async def handler(job):
        seen.append(job.scan_id)
        if job.scan_id == "bad":
            raise RuntimeError("boom")

    queue = LocalJobQueue(concurrency=2)
    await queue.start(handler)
    for scan_id in ("a", "bad", "b"):
        await queue.submit(ProcessScanJob(scan_id=scan_id, provider=ImageProvider.OPENAI))
    await queue.join()
    await queue.close()

    assert sorted(seen) == ["a", "b", "bad"]


async def test_local_queue_drives_the_whole_pipeline(service, uploaded_scan_id):
    local = LocalJobQueue(concurrency=3)
    service.jobs = local
    service.orchestrator._jobs = local
    await service.start()
    try:
        result = await service.start_processing(uploaded_scan_id)
        assert result.success
        await local.join()
        scan = await service.get_scan_view(uploaded_scan_id)
    finally:
        await service.close()

    assert scan.status == ScanStatus.COMPLETED
    assert scan.images_generated == scan.images_requested == 2


def _cloud_config(**overrides) -> PipelineConfig:
    values = dict(
        gcp_project="menusee-prod",
        job_queue="cloud_tasks",
        cloud_tasks_location="asia-east1",
        cloud_tasks_queue="menusee-jobs",
        service_base_url="https://menusee.example.run.app",
        internal_api_token="s3cret",
    )
    values.update(overrides)
    return PipelineConfig(**values)


async def test_cloud_tasks_builds_http_task():
    client = MagicMock()
    client.queue_path.return_value = "projects/menusee-prod/locations/asia-east1/queues/menusee-jobs"
    queue = CloudTasksJobQueue(_cloud_config(cloud_tasks_sa_email="tasks@menusee.iam"), client=client)
    job = GenerateImageJob(dish_id="d1", scan_id="s1", provider=ImageProvider.NANO_BANANA)

    await queue.submit(job)

    client.queue_path.assert_called_once_with("menusee-prod", "asia-east1", "menusee-jobs")
    kwargs = client.create_task.call_args.kwargs
    assert kwargs["parent"] == "projects/menusee-prod/locations/asia-east1/queues/menusee-jobs"
    http_request = kwargs["task"].http_request
    assert http_request.url == "https://menusee.example.run.app/internal/tasks/generate-dish-image"
    assert http_request.headers["x-internal-token"] == "s3cret"
    assert json.loads(http_request.body) == {
        "kind": "generate_image",
        "dish_id": "d1",
        "scan_id": "s1",
        "provider": "nano_banana",
    }
    assert http_request.oidc_token.service_account_email == "tasks@menusee.iam"


async def test_cloud_tasks_enqueue_failure():
    client = MagicMock()
    client.create_task.side_effect = RuntimeError("quota exhausted")
    queue = CloudTasksJobQueue(_cloud_config(), client=client)

    with pytest.raises(MenuSeeError) as excinfo:
        await queue.submit(ProcessScanJob(scan_id="s1", provider=ImageProvider.OPENAI))
    assert excinfo.value.code == ErrorCode.TASK_ENQUEUE_FAILED


async def test_submit_failure_fails_the_scan(service, queue, uploaded_scan_id):
    queue.fail_submit = True

    result = await service.start_processing(uploaded_scan_id)

    assert not result.success
    scan = await service.get_scan_view(uploaded_scan_id)
    assert scan.status == ScanStatus.FAILED
    assert scan.error_message == "queue unavailable"


def test_create_job_queue():
    assert isinstance(create_job_queue(PipelineConfig()), LocalJobQueue)
    assert isinstance(create_job_queue(_cloud_config()), CloudTasksJobQueue)
    with pytest.raises(ConfigurationError):
        create_job_queue(_cloud_config(gcp_project=None))
    with pytest.raises(ConfigurationError):
        create_job_queue(PipelineConfig(job_queue="celery"))
