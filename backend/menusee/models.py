"""Persistent records: device users, scans and dishes."""

from __future__ import annotations

import datetime
import uuid
from typing import Optional

from pydantic import BaseModel, Field

from .status import DishImageStatus, ScanStatus


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DeviceUser(BaseModel):
    device_id: str
    created_at: datetime.datetime = Field(default_factory=utcnow)
    last_seen_at: datetime.datetime = Field(default_factory=utcnow)
    scan_count: int = Field(default=0, ge=0)


class Scan(BaseModel):
    id: str = Field(default_factory=new_id)
    device_id: str
    image_ref: Optional[str] = None
    restaurant_name: Optional[str] = None

    status: ScanStatus = ScanStatus.PENDING
    status_message: Optional[str] = None
    error_message: Optional[str] = None

    total_dishes: int = Field(default=0, ge=0)
    dishes_extracted: int = Field(default=0, ge=0)
    # Resolved image jobs (succeeded + failed); drives completion.
    images_generated: int = Field(default=0, ge=0)
    images_requested: int = Field(default=0, ge=0)
    # Subset of images_generated whose job failed.
    images_failed: int = Field(default=0, ge=0)

    estimated_cost_usd: float = Field(default=0.0, ge=0)
    actual_cost_usd: float = Field(default=0.0, ge=0)

    created_at: datetime.datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime.datetime] = None

    @property
    def images_succeeded(self) -> int:
        return max(0, self.images_generated - self.images_failed)


class Dish(BaseModel):
    id: str = Field(default_factory=new_id)
    scan_id: str
    name: str
    description: Optional[str] = None
    price: Optional[str] = None
    section_name: Optional[str] = None
    display_order: int = Field(ge=0)

    image_status: DishImageStatus = DishImageStatus.PENDING
    image_key: Optional[str] = None
    image_url: Optional[str] = None
    image_provider: Optional[str] = None
    image_cost_usd: Optional[float] = None
    image_error: Optional[str] = None
    # Set when a job claims the dish; only that job may resolve it.
    claim_id: Optional[str] = None

    created_at: datetime.datetime = Field(default_factory=utcnow)
    image_generated_at: Optional[datetime.datetime] = None


SCAN_FIELDS = frozenset(Scan.model_fields)
DISH_FIELDS = frozenset(Dish.model_fields)
DEVICE_USER_FIELDS = frozenset(DeviceUser.model_fields)
