"""
Menu photo uploads: decoding, signed GCS upload URLs and loading bytes back.

Image references stored on a scan take one of three forms:
- ``asset:<key>``   a blob held by the ImageStore
- ``gs://b/path``   an object in Cloud Storage (direct client upload)
- ``http(s)://...`` a remote URL
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import datetime
import logging
import uuid
from typing import Optional, Tuple

import google.auth
import httpx
from google.auth.transport import requests as auth_requests
from google.cloud import storage

from .errors import MenuSeeError
from .image_store import ImageStore
from .observability import ErrorCode

logger = logging.getLogger(__name__)

ASSET_PREFIX = "asset:"

_SIGNED_URL_TTL = datetime.timedelta(minutes=15)

_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp", "image/heic": "heic"}


class UploadError(MenuSeeError):
    code = ErrorCode.INVALID_IMAGE


def decode_base64_image(image_base64: str) -> Tuple[bytes, str]:
    raw = image_base64.strip()
    mime_type = "image/jpeg"
    if raw.startswith("data:"):
        header, sep, b64 = raw.partition(",")
        if not sep:
            raise UploadError("Invalid data URL: missing comma")
        if ";" in header:
            mime_type = header[5:].split(";", 1)[0] or mime_type
        raw = b64

    raw = raw.replace("\n", "").replace("\r", "")
    try:
        data = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UploadError(f"Invalid base64 image: {e}") from e
    if not data:
        raise UploadError("Image payload is empty")
    return data, mime_type


def split_gcs_uri(uri: str) -> Tuple[str, str]:
    if not uri.startswith("gs://"):
        raise UploadError(f"Invalid GCS URI: {uri}")
    parts = uri[5:].split("/", 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def _guess_mime(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(".png"):
        return "image/png"
    if lowered.endswith(".webp"):
        return "image/webp"
    if lowered.endswith(".heic"):
        return "image/heic"
    return "image/jpeg"


class ImageLoader:
    """Resolves scan image references to bytes."""

    def __init__(self, image_store: ImageStore, storage_client: Optional[storage.Client] = None) -> None:
        self._image_store = image_store
        self._storage_client = storage_client

    def _get_storage_client(self) -> storage.Client:
        if self._storage_client is None:
            self._storage_client = storage.Client()
        return self._storage_client

    async def load(self, ref: str) -> Tuple[bytes, str]:
        if ref.startswith(ASSET_PREFIX):
            key = ref[len(ASSET_PREFIX):]
            data = self._image_store.get(key)
            if data is None:
                raise UploadError(f"Uploaded image not found: {key}", code=ErrorCode.IMAGE_MISSING)
            return data, _guess_mime(key)

        if ref.startswith("gs://"):
            bucket_name, object_name = split_gcs_uri(ref)

            def _download() -> bytes:
                blob = self._get_storage_client().bucket(bucket_name).blob(object_name)
                return blob.download_as_bytes()

            data = await asyncio.to_thread(_download)
            if not data:
                raise UploadError("Downloaded image is empty", code=ErrorCode.IMAGE_MISSING)
            logger.info("Downloaded %d bytes from %s", len(data), ref)
            return data, _guess_mime(object_name)

        if ref.startswith(("http://", "https://")):
            try:
                async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                    response = await client.get(ref)
                    response.raise_for_status()
            except httpx.HTTPError as e:
                raise UploadError(f"Failed to download image: {e}", code=ErrorCode.IMAGE_MISSING) from e
            mime_type = response.headers.get("content-type", "").split(";", 1)[0] or _guess_mime(ref)
            return response.content, mime_type

        raise UploadError(f"Unsupported image reference: {ref}")

    async def release(self, ref: Optional[str]) -> bool:
        """Delete the blob behind a reference we own. Remote URLs are left alone."""
        if not ref:
            return False
        if ref.startswith(ASSET_PREFIX):
            return await asyncio.to_thread(self._image_store.delete, ref[len(ASSET_PREFIX):])
        if ref.startswith("gs://"):
            bucket_name, object_name = split_gcs_uri(ref)

            def _delete() -> None:
                self._get_storage_client().bucket(bucket_name).blob(object_name).delete()

            await asyncio.to_thread(_delete)
            return True
        return False

    def signed_upload_url(self, bucket_name: str, content_type: str) -> Tuple[str, str, datetime.datetime]:
        """v4 PUT URL for a direct client upload. Returns (upload_url, gs_uri, expires_at)."""
        if not bucket_name:
            raise UploadError("GCS_UPLOAD_BUCKET not configured", code=ErrorCode.PROVIDER_NOT_CONFIGURED)

        ext = _EXTENSIONS.get(content_type.lower(), "jpg")
        object_name = f"uploads/{uuid.uuid4().hex}.{ext}"
        expires_at = datetime.datetime.now(datetime.timezone.utc) + _SIGNED_URL_TTL
        signing = {"version": "v4", "expiration": expires_at, "method": "PUT", "content_type": content_type}

        # Cloud Run credentials carry no private key; sign through IAM instead.
        credentials, _ = google.auth.default()
        if hasattr(credentials, "service_account_email"):
            credentials.refresh(auth_requests.Request())
            signing.update(service_account_email=credentials.service_account_email, access_token=credentials.token)

        blob = self._get_storage_client().bucket(bucket_name).blob(object_name)
        return blob.generate_signed_url(**signing), f"gs://{bucket_name}/{object_name}", expires_at
