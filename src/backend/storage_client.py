from __future__ import annotations

"""Google Cloud Storage access for uploaded PDFs and temporary split files."""

from typing import Callable, Optional
import os

from google.api_core import exceptions as gcs_exceptions
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage

from src.backend.config import resolve_project_id
from src.backend.logging_utils import get_logger

logger = get_logger(__name__)

_storage_client: Optional[storage.Client] = None


def _emulator_url() -> Optional[str]:
    host = os.getenv("STORAGE_EMULATOR_HOST") or os.getenv("FIREBASE_STORAGE_EMULATOR_HOST")
    if host and "://" not in host:
        host = f"http://{host}"
    return host or None


def get_storage_client() -> storage.Client:
    """Return a cached client; emulator hosts get anonymous credentials."""
    global _storage_client
    if _storage_client is not None:
        return _storage_client
    emulator_url = _emulator_url()
    if emulator_url:
        os.environ.setdefault("STORAGE_EMULATOR_HOST", emulator_url)
        _storage_client = storage.Client(
            project=resolve_project_id(), credentials=AnonymousCredentials()
        )
    else:
        _storage_client = storage.Client(project=resolve_project_id())
    return _storage_client


def get_bucket(bucket_name: str) -> storage.Bucket:
    if not bucket_name:
        raise ValueError("Storage bucket name is required.")
    return get_storage_client().bucket(bucket_name)


def download_bytes(bucket_name: str, object_path: str) -> bytes:
    return get_bucket(bucket_name).blob(object_path).download_as_bytes()


def delete_file(bucket_name: str, object_path: str) -> bool:
    """Delete one object. A missing object counts as already deleted."""
    blob = get_bucket(bucket_name).blob(object_path)
    try:
        blob.delete()
    except gcs_exceptions.NotFound:
        logger.info("storage_delete_missing bucket=%s key=%s", bucket_name, object_path)
        return False
    return True


def make_file_reader(bucket_name: str) -> Callable[[str], bytes]:
    """Bind download_bytes to a bucket; the pipeline hashes uploads through it."""

    def _read(object_path: str) -> bytes:
        return download_bytes(bucket_name, object_path)

    return _read


def make_file_deleter(bucket_name: str) -> Callable[[str], None]:
    """Bind delete_file to a bucket for collaborators that only know storage keys."""

    def _delete(object_path: str) -> None:
        delete_file(bucket_name, object_path)

    return _delete
