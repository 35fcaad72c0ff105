"""Provider base classes, data types, and factories."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict

from ..config import ImageProvider, VisionProviderName
from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..config import PipelineConfig
    from ..schemas import VisionMenuResponse
    from ..uploads import ImageLoader


MENU_PARSER_PROMPT = """You are a menu parser. Extract all menu items from the image into structured JSON.
Return ONLY valid JSON matching this schema:
{schema}

Rules:
- Extract restaurant name if visible
- Group items by section/category if present
- Include price if visible (as string, e.g. "$12.99")
- Include description if visible
- If no clear sections, use a single section named "Menu" or put items in itemsFallback
- Be thorough - extract ALL visible menu items"""


@dataclass
class GeneratedImage:
    data: bytes
    content_type: str
    cost_usd: float
    provider: ImageProvider
    model: str = ""


class VisionProvider(ABC):
    """Turns a menu photo reference into structured menu data."""

    @abstractmethod
    async def extract_menu(self, image_ref: str) -> VisionMenuResponse:
        """Raise ProviderError on failure or malformed output."""


class ImageGenerator(ABC):
    """Turns a prompt into one image plus its unit cost."""

    provider: ImageProvider

    @abstractmethod
    async def generate_image(self, prompt: str) -> GeneratedImage: ...


def create_vision_provider(config: PipelineConfig, loader: ImageLoader) -> VisionProvider:
    """Create a vision provider based on configuration."""
    match config.vision_provider:
        case VisionProviderName.GEMINI:
            from .gemini import GeminiVisionProvider

            return GeminiVisionProvider(
                api_key=config.google_api_key,
                model=config.gemini_vision_model,
                fallback_model=config.gemini_vision_fallback_model,
                loader=loader,
            )
        case VisionProviderName.OPENAI:
            from .openai import OpenAIVisionProvider

            return OpenAIVisionProvider(
                api_key=config.openai_api_key,
                model=config.openai_vision_model,
                base_url=config.openai_base_url,
                loader=loader,
                timeout=config.vision_timeout_seconds,
            )
        case _:
            raise ConfigurationError(f"Unknown vision provider: {config.vision_provider!r}")


def create_image_generator(provider: ImageProvider, config: PipelineConfig) -> ImageGenerator:
    """Create the image generator for one provider variant."""
    match ImageProvider(provider):
        case ImageProvider.OPENAI:
            from .openai import OpenAIImageGenerator

            return OpenAIImageGenerator(
                api_key=config.openai_api_key,
                model=config.openai_image_model,
                size=config.image_size,
                quality=config.image_quality,
                base_url=config.openai_base_url,
                cost_usd=config.image_cost(ImageProvider.OPENAI),
                timeout=config.image_timeout_seconds,
            )
        case ImageProvider.NANO_BANANA:
            from .gemini import GeminiImageGenerator

            return GeminiImageGenerator(
                api_key=config.google_api_key,
                model=config.gemini_image_model,
                fallback_model=config.gemini_image_fallback_model,
                cost_usd=config.image_cost(ImageProvider.NANO_BANANA),
            )
    raise ConfigurationError(f"Unknown image provider: {provider!r}")


def create_image_generators(config: PipelineConfig) -> Dict[ImageProvider, ImageGenerator]:
    return {p: create_image_generator(p, config) for p in ImageProvider}
