import base64
import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from menusee import uploads
from menusee.image_store import ImageStore
from menusee.observability import ErrorCode
from menusee.uploads import ImageLoader, UploadError, decode_base64_image


def test_decode_data_url():
    data, mime_type = decode_base64_image("data:image/png;base64," + base64.b64encode(b"png").decode())
    assert data == b"png"
    assert mime_type == "image/png"


@pytest.mark.parametrize("payload", ["data:image/png;base64", "data:", "   "])
def test_decode_rejects_malformed_payloads(payload):
    with pytest.raises(UploadError) as excinfo:
        decode_base64_image(payload)
    assert excinfo.value.code == ErrorCode.INVALID_IMAGE


@pytest.fixture
def storage_client() -> MagicMock:
    client = MagicMock()
    client.bucket.return_value.blob.return_value.generate_signed_url.return_value = "https://signed.example/put"
    return client


def test_signed_upload_url_signs_through_iam_on_cloud_run(monkeypatch, storage_client):
    credentials = SimpleNamespace(service_account_email="run@menusee.iam", token="access-token", refresh=MagicMock())
    monkeypatch.setattr(uploads.google.auth, "default", lambda: (credentials, "menusee-prod"))
    loader = ImageLoader(ImageStore(), storage_client=storage_client)

    url, gs_uri, expires_at = loader.signed_upload_url("menu-uploads", "image/png")

    assert url == "https://signed.example/put"
    assert gs_uri.startswith("gs://menu-uploads/uploads/") and gs_uri.endswith(".png")
    assert expires_at > datetime.datetime.now(datetime.timezone.utc)
    credentials.refresh.assert_called_once()
    storage_client.bucket.assert_called_once_with("menu-uploads")
    kwargs = storage_client.bucket.return_value.blob.return_value.generate_signed_url.call_args.kwargs
    assert kwargs["method"] == "PUT"
    assert kwargs["content_type"] == "image/png"
    assert kwargs["service_account_email"] == "run@menusee.iam"
    assert kwargs["access_token"] == "access-token"


def test_signed_upload_url_with_key_file_credentials(monkeypatch, storage_client):
    monkeypatch.setattr(uploads.google.auth, "default", lambda: (object(), "menusee-dev"))
    loader = ImageLoader(ImageStore(), storage_client=storage_client)

    _, gs_uri, _ = loader.signed_upload_url("menu-uploads", "image/jpeg")

    assert gs_uri.endswith(".jpg")
    kwargs = storage_client.bucket.return_value.blob.return_value.generate_signed_url.call_args.kwargs
    assert "service_account_email" not in kwargs


def test_signed_upload_url_requires_bucket(storage_client):
    with pytest.raises(UploadError) as excinfo:
        ImageLoader(ImageStore(), storage_client=storage_client).signed_upload_url("", "image/jpeg")
    assert excinfo.value.code == ErrorCode.PROVIDER_NOT_CONFIGURED


async def test_gcs_refs_load_and_release(storage_client):
    blob = storage_client.bucket.return_value.blob.return_value
    blob.download_as_bytes.return_value = b"\xff\xd8\xffmenu"
    loader = ImageLoader(ImageStore(), storage_client=storage_client)

    data, mime_type = await loader.load("gs://menu-uploads/uploads/abc.png")

    assert data == b"\xff\xd8\xffmenu"
    assert mime_type == "image/png"
    storage_client.bucket.return_value.blob.assert_called_with("uploads/abc.png")
    assert await loader.release("gs://menu-uploads/uploads/abc.png") is True
    blob.delete.assert_called_once()
    assert await loader.release("https://example.com/menu.jpg") is False
