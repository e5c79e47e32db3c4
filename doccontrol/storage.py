"""Pluggable storage backends for finalized documents.

The workflow only needs to write a file and get a URL back (and to remove it
again when the surrounding transaction fails).  Two providers implement
:class:`StorageBackend`: MinIO/S3 and the local filesystem.  The backend is
chosen with ``STORAGE__TYPE`` and created on first use by :func:`get_storage`.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Any

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


def _env(name: str, default: str | None = None) -> str | None:
    """Fetch configuration values using ``storage.foo`` style names.

    Environment variables use ``STORAGE__FOO`` to mirror nested configuration
    (similar to how libraries like Dynaconf expose settings).
    """

    return os.getenv(name.replace(".", "__").upper(), default)


class StorageError(Exception):
    """Raised when a backend cannot store or remove an object."""


class StorageBackend:
    """Simple interface all storage backends must implement."""

    documents_prefix: str = _env("storage.documents_prefix", "documents/") or "documents/"

    def store(self, data: bytes, content_type: str, key: str) -> str:  # pragma: no cover - interface only
        """Persist ``data`` under ``key`` and return its public URL."""
        raise NotImplementedError

    def delete(self, key: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def key_for(self, name: str) -> str:
        return f"{self.documents_prefix}{name}"


class MinIOBackend(StorageBackend):
    """Storage backend backed by MinIO or any S3 compatible service."""

    def __init__(self, client: Any | None = None) -> None:
        self.endpoint = os.getenv("S3_ENDPOINT")
        self.public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT")
        self.access_key = os.getenv("S3_ACCESS_KEY") or os.getenv(
            "S3_ACCESS_KEY_ID"
        )
        self.secret_key = os.getenv("S3_SECRET_KEY") or os.getenv(
            "S3_SECRET_ACCESS_KEY"
        )
        self.bucket = os.getenv("S3_BUCKET_MAIN") or os.getenv("S3_BUCKET") or "documents"

        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            config=Config(signature_version="s3v4"),
        )

    def _url(self, key: str) -> str:
        base = self.public_endpoint or self.endpoint
        if base:
            return f"{base.rstrip('/')}/{self.bucket}/{key}"
        return f"s3://{self.bucket}/{key}"

    def store(self, data: bytes, content_type: str, key: str) -> str:
        md5 = base64.b64encode(hashlib.md5(data).digest()).decode()
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ContentMD5=md5,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Unable to store object '{key}'") from exc
        return self._url(key)

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Unable to delete object '{key}'") from exc


class FSBackend(StorageBackend):
    """Filesystem storage served via an Nginx alias."""

    def __init__(self, base_path: str | None = None, public_url: str | None = None) -> None:
        self.base_path = Path(base_path or _env("storage.fs_path", "/tmp/files")).resolve()
        self.public_url = (public_url or _env("storage.fs_public_url", "/uploads")).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    # helper ------------------------------------------------------------
    def _full_path(self, key: str) -> Path:
        return self.base_path / key

    def store(self, data: bytes, content_type: str, key: str) -> str:
        path = self._full_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as exc:
            raise StorageError(f"Unable to store object '{key}'") from exc
        return f"{self.public_url}/{key}"

    def delete(self, key: str) -> None:
        path = self._full_path(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as exc:
            raise StorageError(f"Unable to delete object '{key}'") from exc


# -- backend loader --------------------------------------------------------
def _load_backend() -> StorageBackend:
    backend_type = (_env("storage.type", "minio") or "minio").lower()
    if backend_type == "fs":
        return FSBackend()
    return MinIOBackend()


_storage_client: StorageBackend | None = None


def get_storage() -> StorageBackend:
    """Return the process wide storage backend, creating it on first use."""
    global _storage_client
    if _storage_client is None:
        _storage_client = _load_backend()
        logger.info("Using %s storage backend", type(_storage_client).__name__)
    return _storage_client


__all__ = [
    "StorageBackend",
    "StorageError",
    "MinIOBackend",
    "FSBackend",
    "get_storage",
]
