from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict

import httpx

from ..config import ImageProvider
from ..errors import ConfigurationError, ProviderError
from ..observability import ErrorCode
from ..schemas import VISION_OUTPUT_SCHEMA, VisionMenuResponse
from . import MENU_PARSER_PROMPT, GeneratedImage, ImageGenerator, VisionProvider
from .jsonparse import parse_model_json

logger = logging.getLogger(__name__)


def _require_key(api_key: str) -> None:
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY not configured")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
        return body.get("error", {}).get("message") or response.text
    except Exception:
        return response.text


class OpenAIVisionProvider(VisionProvider):
    """Chat-completions vision call with the menu photo inlined as a data URL."""

    def __init__(self, *, api_key: str, model: str, base_url: str, loader, timeout: float = 120.0) -> None:
        self._api_key = api_key
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._loader = loader
        self._timeout = timeout

    async def extract_menu(self, image_ref: str) -> VisionMenuResponse:
        _require_key(self._api_key)
        image_bytes, mime_type = await self._loader.load(image_ref)
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {
                    "role": "system",
                    "content": MENU_PARSER_PROMPT.format(schema=json.dumps(VISION_OUTPUT_SCHEMA, indent=2)),
                },
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Extract all menu items from this menu image:"},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
            "max_tokens": 4096,
            "response_format": {"type": "json_object"},
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Vision API error: {e}", code=ErrorCode.VISION_FAILED) from e

        if response.status_code != 200:
            raise ProviderError(
                f"Vision API error: {_error_detail(response)}",
                code=ErrorCode.VISION_FAILED,
                details={"status_code": response.status_code},
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError):
            content = None
        if not content:
            raise ProviderError("No content in Vision API response", code=ErrorCode.VISION_MALFORMED)
        return parse_model_json(content, VisionMenuResponse)


class OpenAIImageGenerator(ImageGenerator):
    """OpenAI Images API, base64 response."""

    provider = ImageProvider.OPENAI

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        size: str,
        quality: str,
        base_url: str,
        cost_usd: float,
        timeout: float = 90.0,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.size = size
        self.quality = quality
        self._base_url = base_url.rstrip("/")
        self.cost_usd = cost_usd
        self._timeout = timeout

    async def generate_image(self, prompt: str) -> GeneratedImage:
        _require_key(self._api_key)

        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": self.size,
            "response_format": "b64_json",
        }
        # Only dall-e-3 accepts a quality setting.
        if self.model == "dall-e-3":
            payload["quality"] = self.quality

        logger.info("Generating image with model=%s, prompt_len=%d", self.model, len(prompt))
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/images/generations",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Image generation failed: {e}", code=ErrorCode.IMAGE_GEN_FAILED) from e

        if response.status_code != 200:
            raise ProviderError(
                f"Image generation failed: {_error_detail(response)}",
                code=ErrorCode.IMAGE_GEN_FAILED,
                details={"status_code": response.status_code},
            )

        try:
            b64 = response.json()["data"][0]["b64_json"]
        except (KeyError, IndexError, TypeError, ValueError):
            b64 = None
        if not b64:
            raise ProviderError("No image data returned", code=ErrorCode.IMAGE_GEN_FAILED)

        return GeneratedImage(
            data=base64.b64decode(b64),
            content_type="image/png",
            cost_usd=self.cost_usd,
            provider=self.provider,
            model=self.model,
        )
