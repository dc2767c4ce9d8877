import hashlib
import logging
import os
import pathlib
import tempfile
from typing import BinaryIO, Tuple

import requests
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage

logger = logging.getLogger("fieldsync.storage")

# errors the bucket client raises for API, credential or network failures
GCS_ERRORS = (GoogleAPIError, GoogleAuthError, requests.RequestException)


class ArtifactStorageError(Exception):
    pass


class StorageClient:
    """Downloaded photos, PDFs and uploaded import files.

    Files land on local disk when ``LOCAL_STORAGE=1`` or no ``GCS_BUCKET`` is
    configured, otherwise in the bucket.
    """

    def __init__(self) -> None:
        self.bucket_name = os.getenv("GCS_BUCKET")
        self.use_local = os.getenv("LOCAL_STORAGE", "0") == "1" or not self.bucket_name
        self.base_dir = pathlib.Path(os.getenv("LOCAL_STORAGE_DIR", "storage")).resolve()
        if self.use_local:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self._client = storage.Client() if self.bucket_name and not self.use_local else None

    def _ensure_bucket(self):
        if not self.bucket_name or not self._client:
            raise ArtifactStorageError("GCS_BUCKET non configure.")
        return self._client.bucket(self.bucket_name)

    def upload_bytes(self, content: bytes, dest_path: str, content_type: str) -> str:
        if self.use_local:
            full_path = self.base_dir / dest_path
            try:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                full_path.write_bytes(content)
            except OSError as exc:
                raise ArtifactStorageError(f"Impossible d'ecrire le fichier : {full_path}") from exc
            return full_path.as_uri()
        bucket = self._ensure_bucket()
        blob = bucket.blob(dest_path)
        try:
            blob.upload_from_string(content, content_type=content_type)
        except GCS_ERRORS as exc:
            logger.warning("gcs upload failed path=%s error=%s", dest_path, exc)
            raise ArtifactStorageError(f"Echec envoi GCS : {dest_path}") from exc
        return f"gs://{self.bucket_name}/{dest_path}"

    def upload_file(
        self,
        file_obj: BinaryIO,
        dest_path: str,
        content_type: str,
        max_bytes: int | None = None,
    ) -> Tuple[str, int, str]:
        """Streams ``file_obj`` in 1 MB chunks; an oversized file is not kept."""
        hasher = hashlib.sha256()
        total = 0
        if self.use_local:
            full_path = self.base_dir / dest_path
            try:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                with open(full_path, "wb") as handle:
                    total = _copy_chunks(file_obj, handle, hasher, max_bytes)
            except ArtifactStorageError:
                full_path.unlink(missing_ok=True)
                raise
            except OSError as exc:
                full_path.unlink(missing_ok=True)
                raise ArtifactStorageError(f"Impossible d'ecrire le fichier : {full_path}") from exc
            return full_path.as_uri(), total, hasher.hexdigest()

        bucket = self._ensure_bucket()
        blob = bucket.blob(dest_path)
        try:
            with blob.open("wb") as handle:
                total = _copy_chunks(file_obj, handle, hasher, max_bytes)
            blob.content_type = content_type
            blob.patch()
        except ArtifactStorageError:
            self._discard(blob)
            raise
        except GCS_ERRORS as exc:
            logger.warning("gcs upload failed path=%s error=%s", dest_path, exc)
            raise ArtifactStorageError(f"Echec envoi GCS : {dest_path}") from exc
        return f"gs://{self.bucket_name}/{dest_path}", total, hasher.hexdigest()

    def _discard(self, blob) -> None:
        try:
            blob.delete()
        except NotFound:
            pass
        except GCS_ERRORS as exc:
            logger.warning("gcs cleanup failed path=%s error=%s", blob.name, exc)

    def download_to_temp(self, file_url: str) -> str:
        if file_url.startswith("file://"):
            return pathlib.Path(file_url.replace("file://", "", 1)).as_posix()
        if file_url.startswith("gs://"):
            _, path = file_url.split("gs://", 1)
            bucket_name, blob_path = path.split("/", 1)
            client = self._client or storage.Client()
            blob = client.bucket(bucket_name).blob(blob_path)
            fd, tmp_path = tempfile.mkstemp(suffix=os.path.splitext(blob_path)[1])
            os.close(fd)
            try:
                blob.download_to_filename(tmp_path)
            except GCS_ERRORS as exc:
                os.remove(tmp_path)
                raise ArtifactStorageError(f"Echec lecture GCS : {file_url}") from exc
            return tmp_path
        raise ArtifactStorageError("URL de fichier non supportee.")


def _copy_chunks(file_obj: BinaryIO, handle, hasher, max_bytes: int | None) -> int:
    total = 0
    while True:
        chunk = file_obj.read(1024 * 1024)
        if not chunk:
            break
        handle.write(chunk)
        total += len(chunk)
        hasher.update(chunk)
        if max_bytes and total > max_bytes:
            raise ArtifactStorageError("Fichier trop volumineux.")
    return total
