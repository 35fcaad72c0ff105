"""
Runtime configuration for the MenuSee pipeline.

Every setting can be overridden through an environment variable. Values that
fail to parse fall back to their defaults so a typo never takes the service
down at boot.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional


class ImageProvider(str, Enum):
    """Interchangeable image-generation backends."""

    OPENAI = "openai"
    NANO_BANANA = "nano_banana"


class VisionProviderName(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


DEFAULT_IMAGE_PROMPT_TEMPLATE = (
    'Professional food photography of "{name}". {description}. '
    "Appetizing presentation on a clean plate, soft natural lighting, "
    "shallow depth of field, high-end restaurant style. "
    "Photorealistic, no text or labels."
)


@dataclass(frozen=True)
class CostTable:
    """Estimated cost per external call, in USD."""

    vision_parse: float = 0.01
    image_openai: float = 0.02
    image_nano_banana: float = 0.02

    def image_cost(self, provider: ImageProvider) -> float:
        if provider == ImageProvider.NANO_BANANA:
            return self.image_nano_banana
        return self.image_openai


@dataclass(frozen=True)
class PipelineConfig:
    # Number of dish images to auto-generate per scan (0 = on-demand only)
    auto_image_limit: int = 0
    # Hard maximum images per scan, auto and manual combined
    max_images_per_scan: int = 50
    default_image_provider: ImageProvider = ImageProvider.OPENAI
    vision_provider: VisionProviderName = VisionProviderName.GEMINI
    costs: CostTable = field(default_factory=CostTable)
    image_prompt_template: str = DEFAULT_IMAGE_PROMPT_TEMPLATE

    # Providers
    google_api_key: str = ""
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_vision_model: str = "gpt-4o"
    openai_image_model: str = "dall-e-2"
    gemini_vision_model: str = "gemini-2.5-pro"
    gemini_vision_fallback_model: str = "gemini-2.5-flash"
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_image_fallback_model: str = "imagen-3.0-generate-002"
    image_size: str = "1024x1024"
    image_quality: str = "standard"

    # Timeouts / retries
    vision_timeout_seconds: float = 120.0
    image_timeout_seconds: float = 90.0
    image_max_retries: int = 0
    image_retry_backoff_seconds: float = 2.0

    # Infrastructure
    store_backend: str = "memory"
    database_url: Optional[str] = None
    gcp_project: Optional[str] = None
    job_queue: str = "local"
    worker_concurrency: int = 4
    cloud_tasks_location: str = "asia-east1"
    cloud_tasks_queue: str = "menusee-jobs"
    cloud_tasks_sa_email: str = ""
    service_base_url: str = "http://127.0.0.1:8080"
    public_base_url: str = "http://127.0.0.1:8080"
    internal_api_token: str = ""
    upload_bucket: str = ""

    # Live progress stream
    sse_poll_interval_seconds: float = 1.0
    sse_max_duration_seconds: float = 300.0

    def image_cost(self, provider: ImageProvider) -> float:
        return self.costs.image_cost(provider)

    def resolve_provider(self, value: Optional[str]) -> ImageProvider:
        """Map a client-supplied provider string onto a known variant.

        Unknown or empty values fall back to the configured default.
        """
        if isinstance(value, ImageProvider):
            return value
        if value:
            try:
                return ImageProvider(value.strip().lower())
            except ValueError:
                pass
        return self.default_image_provider


def _env_str(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    try:
        value = int(env.get(key, default))
    except Exception:
        value = default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        value = float(env.get(key, default))
    except Exception:
        value = default
    return max(0.0, value)


def _env_enum(env: Mapping[str, str], key: str, enum_cls, default):
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        return default


def load_config(env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Build a PipelineConfig from environment variables."""
    if env is None:
        env = os.environ
    defaults = PipelineConfig()

    costs = CostTable(
        vision_parse=_env_float(env, "COST_VISION_PARSE", CostTable.vision_parse),
        image_openai=_env_float(env, "COST_IMAGE_OPENAI", CostTable.image_openai),
        image_nano_banana=_env_float(env, "COST_IMAGE_NANO_BANANA", CostTable.image_nano_banana),
    )

    overrides: Dict[str, object] = {
        "auto_image_limit": _env_int(env, "AUTO_IMAGE_LIMIT", defaults.auto_image_limit),
        "max_images_per_scan": _env_int(env, "MAX_IMAGES_PER_SCAN", defaults.max_images_per_scan),
        "default_image_provider": _env_enum(
            env, "DEFAULT_IMAGE_PROVIDER", ImageProvider, defaults.default_image_provider
        ),
        "vision_provider": _env_enum(env, "VISION_PROVIDER", VisionProviderName, defaults.vision_provider),
        "costs": costs,
        "image_prompt_template": env.get("IMAGE_PROMPT_TEMPLATE") or defaults.image_prompt_template,
        "google_api_key": _env_str(env, "GOOGLE_API_KEY", ""),
        "openai_api_key": _env_str(env, "OPENAI_API_KEY", ""),
        "openai_base_url": _env_str(env, "OPENAI_BASE_URL", defaults.openai_base_url).rstrip("/"),
        "openai_vision_model": _env_str(env, "OPENAI_VISION_MODEL", defaults.openai_vision_model),
        "openai_image_model": _env_str(env, "OPENAI_IMAGE_MODEL", defaults.openai_image_model),
        "gemini_vision_model": _env_str(env, "GEMINI_VISION_MODEL", defaults.gemini_vision_model),
        "gemini_vision_fallback_model": _env_str(
            env, "GEMINI_VISION_FALLBACK_MODEL", defaults.gemini_vision_fallback_model
        ),
        "gemini_image_model": _env_str(env, "GEMINI_IMAGE_MODEL", defaults.gemini_image_model),
        "gemini_image_fallback_model": _env_str(
            env, "GEMINI_IMAGE_FALLBACK_MODEL", defaults.gemini_image_fallback_model
        ),
        "image_size": _env_str(env, "IMAGE_SIZE", defaults.image_size),
        "image_quality": _env_str(env, "IMAGE_QUALITY", defaults.image_quality),
        "vision_timeout_seconds": _env_float(env, "VISION_TIMEOUT_SECONDS", defaults.vision_timeout_seconds),
        "image_timeout_seconds": _env_float(env, "IMAGE_TIMEOUT_SECONDS", defaults.image_timeout_seconds),
        "image_max_retries": _env_int(env, "IMAGE_MAX_RETRIES", defaults.image_max_retries),
        "image_retry_backoff_seconds": _env_float(
            env, "IMAGE_RETRY_BACKOFF_SECONDS", defaults.image_retry_backoff_seconds
        ),
        "store_backend": _env_str(env, "STORE_BACKEND", defaults.store_backend).lower(),
        "database_url": env.get("DATABASE_URL") or env.get("APP_DATABASE_URL") or None,
        "gcp_project": env.get("GCP_PROJECT") or None,
        "job_queue": _env_str(env, "JOB_QUEUE", defaults.job_queue).lower(),
        "worker_concurrency": _env_int(env, "WORKER_CONCURRENCY", defaults.worker_concurrency, minimum=1),
        "cloud_tasks_location": _env_str(env, "GCP_LOCATION", defaults.cloud_tasks_location),
        "cloud_tasks_queue": _env_str(env, "CLOUD_TASKS_QUEUE", defaults.cloud_tasks_queue),
        "cloud_tasks_sa_email": _env_str(env, "CLOUD_TASKS_SA_EMAIL", ""),
        "service_base_url": _env_str(env, "CLOUD_RUN_URL", defaults.service_base_url).rstrip("/"),
        "public_base_url": _env_str(env, "PUBLIC_BASE_URL", defaults.public_base_url).rstrip("/"),
        "internal_api_token": _env_str(env, "INTERNAL_API_TOKEN", ""),
        "upload_bucket": _env_str(env, "GCS_UPLOAD_BUCKET", ""),
        "sse_poll_interval_seconds": _env_float(
            env, "SSE_POLL_INTERVAL_SECONDS", defaults.sse_poll_interval_seconds
        ),
        "sse_max_duration_seconds": _env_float(
            env, "SSE_MAX_DURATION_SECONDS", defaults.sse_max_duration_seconds
        ),
    }
    return PipelineConfig(**overrides)  # type: ignore[arg-type]
