"""
Observability utilities: correlation IDs, timing, error codes.

Usage:
    from .observability import ScanContext, ErrorCode, log_scan_start, log_scan_done

This module provides:
- ErrorCode: enum of normalized error codes
- ScanContext: dataclass for correlation IDs and timing of one pipeline run
- Structured logging helpers
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Release metadata (set via env or build)
# -----------------------------------------------------------------------------
RELEASE_VERSION = os.getenv("RELEASE_VERSION", "v1.0")
GIT_SHA = os.getenv("GIT_SHA", "unknown")


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic root handler honouring LOG_LEVEL."""
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# -----------------------------------------------------------------------------
# Error codes (normalized)
# -----------------------------------------------------------------------------
class ErrorCode(str, Enum):
    """Normalized error codes for status messages, SSE errors and logging."""

    # Input errors
    INVALID_IMAGE = "INVALID_IMAGE"
    IMAGE_MISSING = "IMAGE_MISSING"

    # Vision errors
    VISION_TIMEOUT = "VISION_TIMEOUT"
    VISION_FAILED = "VISION_FAILED"
    VISION_MALFORMED = "VISION_MALFORMED"

    # Image generation errors
    IMAGE_GEN_TIMEOUT = "IMAGE_GEN_TIMEOUT"
    IMAGE_GEN_FAILED = "IMAGE_GEN_FAILED"

    # Configuration
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"

    # State errors
    SCAN_NOT_FOUND = "SCAN_NOT_FOUND"
    DISH_NOT_FOUND = "DISH_NOT_FOUND"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    # Infra errors
    STORE_FAILED = "STORE_FAILED"
    TASK_ENQUEUE_FAILED = "TASK_ENQUEUE_FAILED"
    UPLOAD_FAILED = "UPLOAD_FAILED"

    # Pipeline
    SCAN_FAILED = "SCAN_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# -----------------------------------------------------------------------------
# Scan context (correlation + timing)
# -----------------------------------------------------------------------------
@dataclass
class ScanContext:
    """
    Holds correlation IDs and timing for a single pipeline run.
    Create at the start of a run, pass through the pipeline.
    """

    scan_id: str
    dish_id: Optional[str] = None
    provider: Optional[str] = None

    # Timing (monotonic, seconds)
    started_at: float = field(default_factory=time.monotonic)
    done_at: Optional[float] = None

    # Step timings (ms)
    vision_ms: Optional[int] = None
    image_gen_ms: Optional[int] = None
    store_ms: Optional[int] = None

    # Outcome
    final_status: str = "unknown"
    error_code: Optional[str] = None
    dishes_count: int = 0
    images_queued: int = 0
    attempts: int = 0

    def elapsed_ms(self) -> int:
        """Total elapsed time since start, in ms."""
        return int((time.monotonic() - self.started_at) * 1000)

    def time_to_done_ms(self) -> Optional[int]:
        if self.done_at is None:
            return None
        return int((self.done_at - self.started_at) * 1000)

    def mark_done(self, status: str) -> None:
        self.done_at = time.monotonic()
        self.final_status = status

    def correlation_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "scan_id": self.scan_id,
            "release": RELEASE_VERSION,
            "git_sha": GIT_SHA,
        }
        if self.dish_id:
            fields["dish_id"] = self.dish_id
        if self.provider:
            fields["provider"] = self.provider
        return fields

    def timing_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"elapsed_ms": self.elapsed_ms()}
        ttd = self.time_to_done_ms()
        if ttd is not None:
            fields["time_to_done_ms"] = ttd
        if self.vision_ms is not None:
            fields["vision_ms"] = self.vision_ms
        if self.image_gen_ms is not None:
            fields["image_gen_ms"] = self.image_gen_ms
        if self.store_ms is not None:
            fields["store_ms"] = self.store_ms
        return fields

    def outcome_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "final_status": self.final_status,
            "dishes_count": self.dishes_count,
            "images_queued": self.images_queued,
        }
        if self.attempts:
            fields["attempts"] = self.attempts
        if self.error_code:
            fields["error_code"] = self.error_code
        return fields

    def all_fields(self) -> Dict[str, Any]:
        return {
            **self.correlation_fields(),
            **self.timing_fields(),
            **self.outcome_fields(),
        }


# -----------------------------------------------------------------------------
# Structured logging helpers
# -----------------------------------------------------------------------------
def log_scan_start(ctx: ScanContext, extra: Optional[Dict[str, Any]] = None) -> None:
    fields = ctx.correlation_fields()
    if extra:
        fields.update(extra)
    logger.info("scan_start %s", fields)


def log_scan_done(ctx: ScanContext, extra: Optional[Dict[str, Any]] = None) -> None:
    """Log scan done with all fields (correlation + timing + outcome)."""
    fields = ctx.all_fields()
    if extra:
        fields.update(extra)
    logger.info("scan_done %s", fields)


def log_scan_error(
    ctx: ScanContext,
    error_code: ErrorCode,
    message: str,
    exc: Optional[BaseException] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Log scan error with correlation fields and error code."""
    ctx.error_code = error_code.value
    fields = ctx.correlation_fields()
    fields["error_code"] = error_code.value
    fields["error_message"] = message
    if extra:
        fields.update(extra)
    if exc is not None:
        logger.error("scan_error %s", fields, exc_info=exc)
    else:
        logger.warning("scan_error %s", fields)


def log_step_timing(
    ctx: ScanContext,
    step: str,
    duration_ms: int,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a step timing (e.g., vision, image_gen, store)."""
    fields = ctx.correlation_fields()
    fields["step"] = step
    fields["duration_ms"] = duration_ms
    if extra:
        fields.update(extra)
    logger.info("scan_step %s", fields)


def log_image_job(ctx: ScanContext, outcome: str, extra: Optional[Dict[str, Any]] = None) -> None:
    """Log the outcome of one dish image job."""
    fields = ctx.all_fields()
    fields["outcome"] = outcome
    if extra:
        fields.update(extra)
    if outcome in ("completed", "claimed"):
        logger.info("image_job %s", fields)
    else:
        logger.warning("image_job %s", fields)
