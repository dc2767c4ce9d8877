from io import BytesIO
from unittest.mock import patch

import pytest
from google.auth.exceptions import TransportError

from fieldsync.services.storage import ArtifactStorageError, StorageClient


@pytest.fixture()
def local_storage(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCAL_STORAGE", "1")
    monkeypatch.setenv("LOCAL_STORAGE_DIR", str(tmp_path / "storage"))
    return StorageClient()


@pytest.fixture()
def gcs_client(monkeypatch):
    monkeypatch.setenv("LOCAL_STORAGE", "0")
    monkeypatch.setenv("GCS_BUCKET", "fieldsync-test")
    with patch("fieldsync.services.storage.storage.Client") as client_cls:
        yield client_cls.return_value


def test_upload_file_streams_and_hashes(local_storage):
    uri, size, digest = local_storage.upload_file(BytesIO(b"abc"), "imports/a.csv", "text/csv", max_bytes=10)
    assert uri.endswith("imports/a.csv")
    assert size == 3
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_oversized_upload_leaves_no_partial_file(local_storage):
    with pytest.raises(ArtifactStorageError):
        local_storage.upload_file(BytesIO(b"x" * 20), "imports/big.csv", "text/csv", max_bytes=10)
    assert not (local_storage.base_dir / "imports" / "big.csv").exists()


def test_gcs_transport_error_becomes_storage_error(gcs_client):
    blob = gcs_client.bucket.return_value.blob.return_value
    blob.upload_from_string.side_effect = TransportError("dns lookup failed")
    with pytest.raises(ArtifactStorageError) as excinfo:
        StorageClient().upload_bytes(b"x", "S10/photo.jpg", "image/jpeg")
    assert "S10/photo.jpg" in str(excinfo.value)


def test_gcs_upload_returns_bucket_uri(gcs_client):
    uri = StorageClient().upload_bytes(b"x", "S10/photo.jpg", "image/jpeg")
    assert uri == "gs://fieldsync-test/S10/photo.jpg"
    gcs_client.bucket.assert_called_with("fieldsync-test")
