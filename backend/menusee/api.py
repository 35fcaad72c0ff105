"""
HTTP routes.

Client API:
- POST   /api/v1/devices/{device_id}/session      -> ensure device user
- GET    /api/v1/devices/{device_id}/scans        -> scans, newest first
- GET    /api/v1/devices/{device_id}/stats        -> running totals
- POST   /api/v1/uploads/signed-url               -> GCS signed PUT URL
- POST   /api/v1/scans                            -> create scan
- GET    /api/v1/scans/{id}                       -> scan with progress
- PATCH  /api/v1/scans/{id}                       -> rename
- DELETE /api/v1/scans/{id}                       -> delete scan, dishes, blobs
- POST   /api/v1/scans/{id}/image                 -> attach menu photo
- GET    /api/v1/scans/{id}/dishes                -> dishes grouped by section
- POST   /api/v1/scans/{id}/process               -> start processing
- POST   /api/v1/scans/{id}/images/remaining      -> queue remaining images
- POST   /api/v1/scans/{id}/stop                  -> stop generation
- POST   /api/v1/scans/{id}/force-complete        -> force complete
- GET    /api/v1/scans/{id}/events                -> SSE live progress
- POST   /api/v1/dishes/{id}/image                -> queue one dish image

Internal (job queue delivery):
- POST /internal/tasks/process-scan
- POST /internal/tasks/generate-dish-image
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import StreamingResponse

from .jobs import GenerateImageJob, ProcessScanJob
from .schemas import (
    AttachImageRequest,
    CreateScanRequest,
    DeviceStats,
    DeviceUserView,
    OperationResult,
    ProviderRequest,
    RenameScanRequest,
    ScanView,
    ScanWithDishes,
    SignedUrlRequest,
    SignedUrlResponse,
)
from .service import MenuService
from .sse import scan_event_stream

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> MenuService:
    return request.app.state.service


def _provider(req: Optional[ProviderRequest]) -> Optional[str]:
    return req.image_provider if req is not None else None


# -----------------------------------------------------------------------------
# Devices
# -----------------------------------------------------------------------------
@router.post("/api/v1/devices/{device_id}/session", response_model=DeviceUserView)
async def ensure_device_user(device_id: str, service: MenuService = Depends(get_service)) -> DeviceUserView:
    user = await service.ensure_device_user(device_id)
    return DeviceUserView(**user.model_dump())


@router.get("/api/v1/devices/{device_id}/scans", response_model=List[ScanView])
async def list_device_scans(device_id: str, service: MenuService = Depends(get_service)) -> List[ScanView]:
    return await service.list_scans(device_id)


@router.get("/api/v1/devices/{device_id}/stats", response_model=DeviceStats)
async def device_stats(device_id: str, service: MenuService = Depends(get_service)) -> DeviceStats:
    return await service.device_stats(device_id)


# -----------------------------------------------------------------------------
# Uploads
# -----------------------------------------------------------------------------
@router.post("/api/v1/uploads/signed-url", response_model=SignedUrlResponse)
async def create_signed_upload_url(
    req: SignedUrlRequest, service: MenuService = Depends(get_service)
) -> SignedUrlResponse:
    """Signed URL for direct GCS upload from the mobile client."""
    return await service.create_signed_upload_url(req.content_type)


# -----------------------------------------------------------------------------
# Scans
# -----------------------------------------------------------------------------
@router.post("/api/v1/scans", response_model=ScanView)
async def create_scan(req: CreateScanRequest, service: MenuService = Depends(get_service)) -> ScanView:
    return await service.create_scan(req.device_id)


@router.get("/api/v1/scans/{scan_id}", response_model=ScanView)
async def get_scan(scan_id: str, service: MenuService = Depends(get_service)) -> ScanView:
    return await service.get_scan_view(scan_id)


@router.patch("/api/v1/scans/{scan_id}", response_model=ScanView)
async def rename_scan(
    scan_id: str, req: RenameScanRequest, service: MenuService = Depends(get_service)
) -> ScanView:
    return await service.rename_scan(scan_id, req.restaurant_name)


@router.delete("/api/v1/scans/{scan_id}", response_model=OperationResult)
async def delete_scan(scan_id: str, service: MenuService = Depends(get_service)) -> OperationResult:
    return await service.delete_scan(scan_id)


@router.post("/api/v1/scans/{scan_id}/image", response_model=ScanView)
async def attach_image(
    scan_id: str, req: AttachImageRequest, service: MenuService = Depends(get_service)
) -> ScanView:
    return await service.attach_image(scan_id, image_url=req.image_url, image_base64=req.image_base64)


@router.get("/api/v1/scans/{scan_id}/dishes", response_model=ScanWithDishes)
async def get_scan_with_dishes(scan_id: str, service: MenuService = Depends(get_service)) -> ScanWithDishes:
    return await service.get_scan_with_dishes(scan_id)


@router.post("/api/v1/scans/{scan_id}/process", response_model=OperationResult)
async def start_processing(
    scan_id: str,
    req: Optional[ProviderRequest] = None,
    service: MenuService = Depends(get_service),
) -> OperationResult:
    return await service.start_processing(scan_id, _provider(req))


@router.post("/api/v1/scans/{scan_id}/images/remaining", response_model=OperationResult)
async def generate_remaining_images(
    scan_id: str,
    req: Optional[ProviderRequest] = None,
    service: MenuService = Depends(get_service),
) -> OperationResult:
    return await service.generate_remaining_images(scan_id, _provider(req))


@router.post("/api/v1/scans/{scan_id}/stop", response_model=OperationResult)
async def stop_generation(scan_id: str, service: MenuService = Depends(get_service)) -> OperationResult:
    return await service.stop_generation(scan_id)


@router.post("/api/v1/scans/{scan_id}/force-complete", response_model=OperationResult)
async def force_complete(scan_id: str, service: MenuService = Depends(get_service)) -> OperationResult:
    return await service.force_complete(scan_id)


@router.get("/api/v1/scans/{scan_id}/events")
async def stream_scan_events(scan_id: str, service: MenuService = Depends(get_service)) -> StreamingResponse:
    # 404 up front rather than inside the stream.
    await service.get_scan_view(scan_id)
    return StreamingResponse(
        scan_event_stream(
            service,
            scan_id,
            poll_interval=service.config.sse_poll_interval_seconds,
            max_duration=service.config.sse_max_duration_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# -----------------------------------------------------------------------------
# Dishes
# -----------------------------------------------------------------------------
@router.post("/api/v1/dishes/{dish_id}/image", response_model=OperationResult)
async def generate_single_dish_image(
    dish_id: str,
    req: Optional[ProviderRequest] = None,
    service: MenuService = Depends(get_service),
) -> OperationResult:
    return await service.generate_single_dish_image(dish_id, _provider(req))


# -----------------------------------------------------------------------------
# Internal task endpoints
# -----------------------------------------------------------------------------
def _check_internal_token(service: MenuService, token: Optional[str]) -> None:
    expected = service.config.internal_api_token
    if expected and token != expected:
        raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/internal/tasks/process-scan")
async def run_process_scan_task(
    job: ProcessScanJob,
    service: MenuService = Depends(get_service),
    x_internal_token: Optional[str] = Header(default=None),
    x_cloudtasks_taskname: Optional[str] = Header(default=None),
) -> Dict[str, str]:
    _check_internal_token(service, x_internal_token)
    logger.info("Running process-scan task %s for scan_id=%s", x_cloudtasks_taskname, job.scan_id)
    await service.handle_job(job)
    return {"status": "ok", "scan_id": job.scan_id}


@router.post("/internal/tasks/generate-dish-image")
async def run_generate_image_task(
    job: GenerateImageJob,
    service: MenuService = Depends(get_service),
    x_internal_token: Optional[str] = Header(default=None),
    x_cloudtasks_taskname: Optional[str] = Header(default=None),
) -> Dict[str, str]:
    _check_internal_token(service, x_internal_token)
    logger.info("Running image task %s for dish_id=%s", x_cloudtasks_taskname, job.dish_id)
    await service.handle_job(job)
    return {"status": "ok", "dish_id": job.dish_id}
