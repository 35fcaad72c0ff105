from __future__ import annotations

import io
import logging
import os
import uuid
from typing import Dict, Optional

import boto3
from PIL import Image

logger = logging.getLogger(__name__)


def ensure_jpeg_bytes(image_bytes: bytes) -> bytes:
    if image_bytes[:3] == b"\xff\xd8\xff":
        return image_bytes

    img = Image.open(io.BytesIO(image_bytes))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=92)
    return out.getvalue()


def dish_image_key(scan_id: str, dish_id: str, claim_id: Optional[str] = None) -> str:
    # One object per claim, so a superseded job never overwrites a newer image.
    if claim_id:
        return f"gen/{scan_id}/{dish_id}-{claim_id}.jpg"
    return f"gen/{scan_id}/{dish_id}.jpg"


def upload_image_key(scan_id: str) -> str:
    return f"uploads/{scan_id}/{uuid.uuid4().hex}.jpg"


class ImageStore:
    """Blob storage for dish images and menu uploads.

    Writes go to an S3-compatible bucket (Cloudflare R2) when R2_* variables
    are set. Without a bucket, blobs live in process memory; that mode is for
    local runs and tests, so nothing is cached in memory once R2 is on.
    """

    def __init__(self, public_base_url: str = "") -> None:
        self._mem: Dict[str, bytes] = {}
        self._public_base_url = public_base_url.rstrip("/")

        self._bucket = os.getenv("R2_BUCKET")
        self._endpoint = os.getenv("R2_ENDPOINT")
        self._access_key = os.getenv("R2_ACCESS_KEY_ID")
        self._secret_key = os.getenv("R2_SECRET_ACCESS_KEY")
        self._r2_public_url = (os.getenv("R2_PUBLIC_URL") or "").rstrip("/")

        self._s3 = None
        if self._bucket and self._endpoint and self._access_key and self._secret_key:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=self._endpoint,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key,
                region_name="auto",
            )

    @property
    def remote_enabled(self) -> bool:
        return self._s3 is not None and bool(self._bucket)

    def put(self, key: str, data: bytes, *, content_type: str) -> None:
        if not self.remote_enabled:
            self._mem[key] = data
            return

        self._s3.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl="public, max-age=31536000, immutable",
        )

    def get(self, key: str) -> Optional[bytes]:
        if not self.remote_enabled:
            return self._mem.get(key)

        try:
            obj = self._s3.get_object(Bucket=self._bucket, Key=key)
            body = obj.get("Body")
            if body is None:
                return None
            return body.read()
        except Exception:
            logger.warning("Image store read failed for key=%s", key, exc_info=True)
            return None

    def delete(self, key: str) -> bool:
        """Remove a blob. Returns True when anything was removed."""
        if not self.remote_enabled:
            return self._mem.pop(key, None) is not None
        self._s3.delete_object(Bucket=self._bucket, Key=key)
        return True

    def public_url(self, key: str) -> str:
        if self.remote_enabled and self._r2_public_url:
            return f"{self._r2_public_url}/{key}"
        return f"{self._public_base_url}/assets/{key}"
