from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Dish, Scan
from .status import scan_progress

# -----------------------------------------------------------------------------
# Vision extraction contract
# -----------------------------------------------------------------------------


class VisionMenuItem(BaseModel):
    name: str
    description: Optional[str] = Field(default=None)
    price: Optional[str] = Field(default=None)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("description", "price", mode="before")
    @classmethod
    def _coerce_optional_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class VisionMenuSection(BaseModel):
    name: str = Field(default="")
    items: List[VisionMenuItem] = Field(default_factory=list)


class VisionMenuResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    restaurant_name: Optional[str] = Field(default=None, alias="restaurantName")
    sections: List[VisionMenuSection] = Field(default_factory=list)
    items_fallback: Optional[List[VisionMenuItem]] = Field(default=None, alias="itemsFallback")

    @field_validator("sections", mode="before")
    @classmethod
    def _default_sections(cls, v: Any) -> Any:
        return [] if v is None else v


# JSON schema handed to the models as the required output shape.
VISION_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "restaurantName": {"type": "string"},
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "description": {"type": "string"},
                                "price": {"type": "string"},
                            },
                            "required": ["name"],
                        },
                    },
                },
                "required": ["name", "items"],
            },
        },
        "itemsFallback": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "price": {"type": "string"},
                },
                "required": ["name"],
            },
        },
    },
    "required": ["sections"],
}


# -----------------------------------------------------------------------------
# API requests
# -----------------------------------------------------------------------------


class CreateScanRequest(BaseModel):
    device_id: str


class AttachImageRequest(BaseModel):
    image_url: Optional[str] = None
    image_base64: Optional[str] = None


class ProviderRequest(BaseModel):
    image_provider: Optional[str] = None


class RenameScanRequest(BaseModel):
    restaurant_name: str


class SignedUrlRequest(BaseModel):
    content_type: str = Field(default="image/jpeg")


# -----------------------------------------------------------------------------
# API responses
# -----------------------------------------------------------------------------


class OperationResult(BaseModel):
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class QueueResult(BaseModel):
    queued: int
    message: str
    dish_ids: List[str] = Field(default_factory=list)
    scan_id: Optional[str] = None


class CancelResult(BaseModel):
    completed: int
    skipped: int
    total_dishes: int
    message: str
    changed: bool = True


class SignedUrlResponse(BaseModel):
    upload_url: str
    image_ref: str
    expires_at: str


class ScanView(Scan):
    progress: float

    @classmethod
    def from_scan(cls, scan: Scan) -> "ScanView":
        progress = scan_progress(scan.status, scan.images_generated, scan.images_requested)
        return cls(**scan.model_dump(), progress=progress)


class ScanWithDishes(BaseModel):
    scan: ScanView
    dishes: List[Dish]
    sections: Dict[str, List[Dish]]
    no_section: List[Dish]


class DeviceStats(BaseModel):
    total_scans: int
    completed_scans: int
    total_dishes: int
    total_images: int
    total_cost_usd: float


class DeleteResult(BaseModel):
    deleted: bool
    dishes_deleted: int
    blobs_released: int


class DeviceUserView(BaseModel):
    device_id: str
    created_at: datetime.datetime
    last_seen_at: datetime.datetime
    scan_count: int
