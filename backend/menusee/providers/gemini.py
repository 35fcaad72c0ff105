import base64
import json
import logging
import os
from typing import Any, List, Optional

from ..config import ImageProvider
from ..errors import ConfigurationError, ProviderError
from ..observability import ErrorCode
from ..schemas import VISION_OUTPUT_SCHEMA, VisionMenuResponse
from . import MENU_PARSER_PROMPT, GeneratedImage, ImageGenerator, VisionProvider
from .jsonparse import parse_model_json

logger = logging.getLogger(__name__)


def looks_like_model_access_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(
        s in msg
        for s in [
            "model",
            "not found",
            "does not exist",
            "not available",
            "permission",
            "forbidden",
            "403",
            "404",
        ]
    )


def _collect_text(obj: Any, depth: int = 6) -> List[str]:
    if obj is None or depth <= 0 or isinstance(obj, (str, bytes)):
        return []
    if isinstance(obj, (list, tuple)):
        return [t for it in obj for t in _collect_text(it, depth - 1)]
    out: List[str] = []
    text = obj.get("text") if isinstance(obj, dict) else getattr(obj, "text", None)
    if isinstance(text, str) and text.strip():
        out.append(text)
    for attr in ("candidates", "content", "parts"):
        child = obj.get(attr) if isinstance(obj, dict) else getattr(obj, attr, None)
        if child is not None:
            out.extend(_collect_text(child, depth - 1))
    return out


def extract_text_from_response(response: object) -> Optional[str]:
    try:
        text = getattr(response, "text", None)
    except Exception:
        text = None
    if isinstance(text, str) and text.strip():
        return text
    joined = "".join(_collect_text(getattr(response, "candidates", None))).strip()
    return joined or None


def _response_parts(response: object) -> List[Any]:
    parts = list(getattr(response, "parts", None) or [])
    if parts:
        return parts
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        parts.extend(getattr(content, "parts", None) or [])
    return parts


class _GeminiBase:
    def __init__(self, *, api_key: str) -> None:
        self._api_key = api_key
        self._client = None

    def _get_client(self):
        if not self._api_key:
            raise ConfigurationError("GOOGLE_API_KEY not configured")
        if self._client is None:
            from google import genai

            try:
                timeout_s = float(os.getenv("GENAI_HTTP_TIMEOUT_SECONDS", "300"))
            except Exception:
                timeout_s = 300.0
            timeout_ms = max(1000, int(timeout_s * 1000))
            self._client = genai.Client(api_key=self._api_key, http_options={"timeout": timeout_ms})
        return self._client


class GeminiVisionProvider(_GeminiBase, VisionProvider):
    """Menu extraction with a Gemini vision model, falling back to a cheaper model."""

    def __init__(self, *, api_key: str, model: str, fallback_model: str = "", loader) -> None:
        super().__init__(api_key=api_key)
        self.model = model
        self.fallback_model = fallback_model
        self._loader = loader

    async def _parse(self, model: str, image_bytes: bytes, mime_type: str) -> VisionMenuResponse:
        from google.genai import types

        client = self._get_client()
        prompt = MENU_PARSER_PROMPT.format(schema=json.dumps(VISION_OUTPUT_SCHEMA, indent=2))
        response = await client.aio.models.generate_content(
            model=model,
            contents=[
                types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                "Extract all menu items from this menu image:",
            ],
            config=types.GenerateContentConfig(
                system_instruction=prompt,
                response_mime_type="application/json",
                max_output_tokens=int(os.getenv("VISION_MAX_OUTPUT_TOKENS", "8192")),
                temperature=float(os.getenv("VISION_TEMPERATURE", "0.2")),
            ),
        )
        text = extract_text_from_response(response)
        if text is None:
            raise ProviderError("No content in Vision API response", code=ErrorCode.VISION_MALFORMED)
        return parse_model_json(text, VisionMenuResponse)

    async def extract_menu(self, image_ref: str) -> VisionMenuResponse:
        self._get_client()
        image_bytes, mime_type = await self._loader.load(image_ref)
        try:
            return await self._parse(self.model, image_bytes, mime_type)
        except (ProviderError, ConfigurationError):
            raise
        except Exception as e:
            if not (self.fallback_model and looks_like_model_access_error(e)):
                raise ProviderError(f"Vision API error: {e}", code=ErrorCode.VISION_FAILED) from e
            logger.warning("Vision model %s unavailable, retrying with %s: %s", self.model, self.fallback_model, e)

        try:
            return await self._parse(self.fallback_model, image_bytes, mime_type)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Vision API error: {e}", code=ErrorCode.VISION_FAILED) from e


class GeminiImageGenerator(_GeminiBase, ImageGenerator):
    """Gemini native image generation ("nano banana"), Imagen as fallback."""

    provider = ImageProvider.NANO_BANANA

    def __init__(self, *, api_key: str, model: str, fallback_model: str = "", cost_usd: float) -> None:
        super().__init__(api_key=api_key)
        self.model = model
        self.fallback_model = fallback_model
        self.cost_usd = cost_usd

    async def _generate_bytes(self, model: str, prompt: str) -> bytes:
        from google.genai import types

        client = self._get_client()
        logger.info("Generating image with model=%s, prompt_len=%d", model, len(prompt))

        if model.startswith("imagen-"):
            result = await client.aio.models.generate_images(
                model=model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    aspect_ratio="1:1",
                    safety_filter_level="BLOCK_LOW_AND_ABOVE",
                ),
            )
            if not result.generated_images:
                raise ProviderError("Imagen returned no images", code=ErrorCode.IMAGE_GEN_FAILED)
            return result.generated_images[0].image.image_bytes

        response = await client.aio.models.generate_content(model=model, contents=[prompt])
        for part in _response_parts(response):
            inline = getattr(part, "inline_data", None)
            data = getattr(inline, "data", None) if inline is not None else None
            if data is None:
                continue
            # Depending on SDK version, this may be bytes or a base64 string.
            if isinstance(data, str):
                return base64.b64decode(data)
            return data

        raise ProviderError("Image model returned no inline image data", code=ErrorCode.IMAGE_GEN_FAILED)

    async def generate_image(self, prompt: str) -> GeneratedImage:
        used_model = self.model
        try:
            data = await self._generate_bytes(self.model, prompt)
        except (ProviderError, ConfigurationError):
            raise
        except Exception as e:
            if not (self.fallback_model and looks_like_model_access_error(e)):
                raise ProviderError(f"Gemini image API error: {e}", code=ErrorCode.IMAGE_GEN_FAILED) from e
            logger.warning("Image model %s unavailable, using %s: %s", self.model, self.fallback_model, e)
            used_model = self.fallback_model
            try:
                data = await self._generate_bytes(self.fallback_model, prompt)
            except ProviderError:
                raise
            except Exception as e2:
                raise ProviderError(f"Gemini image API error: {e2}", code=ErrorCode.IMAGE_GEN_FAILED) from e2

        return GeneratedImage(
            data=data,
            content_type="image/png",
            cost_usd=self.cost_usd,
            provider=self.provider,
            model=used_model,
        )
