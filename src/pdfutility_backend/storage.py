"""
Content store backends for job inputs and outputs.

The job core only sees the ``ContentStore`` protocol: download, upload,
delete, exists. Two backends are provided:

- ``LocalContentStore`` keeps blobs under a directory on local disk
- ``S3ContentStore`` keeps blobs in an S3 bucket via boto3

References are opaque to callers. Both backends generate them as
``<hex uuid>/<sanitized filename>`` so the original name survives in
downloads without ever being trusted as a path.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ContentNotFoundError, StorageError
from .utils import ensure_directory, sanitize_filename

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class ContentStore(Protocol):
    def download(self, ref: str) -> bytes:
        ...

    def upload(self, data: bytes, name: str, content_type: str) -> str:
        ...

    def delete(self, ref: str) -> None:
        ...

    def exists(self, ref: str) -> bool:
        ...


def new_ref(name: str) -> str:
    return f"{uuid4().hex}/{sanitize_filename(name)}"


class LocalContentStore:
    """Blobs stored as files below ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root)).resolve()
        logger.info(f"Local content store initialized at: {self.root}")

    def _path(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        # Refs come from clients; never let one escape the store root.
        if self.root not in path.parents:
            raise ContentNotFoundError(ref)
        return path

    def download(self, ref: str) -> bytes:
        path = self._path(ref)
        if not path.is_file():
            raise ContentNotFoundError(ref)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {ref}: {exc}") from exc

    def upload(self, data: bytes, name: str, content_type: str) -> str:
        ref = new_ref(name)
        path = self._path(ref)
        try:
            ensure_directory(path.parent)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to store {name}: {exc}") from exc
        logger.debug(f"Stored {len(data)} bytes ({content_type}) as {ref}")
        return ref

    def delete(self, ref: str) -> None:
        try:
            path = self._path(ref)
        except ContentNotFoundError:
            return
        try:
            path.unlink(missing_ok=True)
            if path.parent != self.root and not any(path.parent.iterdir()):
                path.parent.rmdir()
        except OSError as exc:
            raise StorageError(f"Failed to delete {ref}: {exc}") from exc
        logger.debug(f"Deleted {ref}")

    def exists(self, ref: str) -> bool:
        try:
            return self._path(ref).is_file()
        except ContentNotFoundError:
            return False


class S3ContentStore:
    """
    Blobs stored as S3 objects under ``prefix`` in ``bucket``.

    Note:
        Credentials come from the standard boto3 chain (environment, shared
        config, instance role). Timeouts are bounded so a hung S3 call fails
        the job instead of pinning a worker.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        client=None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not bucket:
            raise StorageError("S3 bucket name is not configured")
        self.bucket = bucket
        self.prefix = prefix
        self.client = client or boto3.client(
            "s3",
            config=Config(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def _key(self, ref: str) -> str:
        return f"{self.prefix}{ref}"

    def download(self, ref: str) -> bytes:
        key = self._key(ref)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                raise ContentNotFoundError(ref) from exc
            logger.error(f"S3 download failed for s3://{self.bucket}/{key}: {exc}")
            raise StorageError(f"Failed to download {ref}: {exc}") from exc
        except BotoCoreError as exc:
            logger.error(f"S3 download failed for s3://{self.bucket}/{key}: {exc}")
            raise StorageError(f"Failed to download {ref}: {exc}") from exc

    def upload(self, data: bytes, name: str, content_type: str) -> str:
        ref = new_ref(name)
        key = self._key(ref)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for s3://{self.bucket}/{key}: {exc}")
            raise StorageError(f"Failed to upload {name}: {exc}") from exc
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return ref

    def delete(self, ref: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(ref))
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete {ref}: {exc}") from exc

    def exists(self, ref: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(ref))
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"Failed to stat {ref}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to stat {ref}: {exc}") from exc


def build_content_store(
    provider: str,
    local_root: Optional[Path] = None,
    s3_bucket: str = "",
    s3_prefix: str = "",
    timeout_seconds: float = 30.0,
) -> ContentStore:
    """Construct the backend named by ``provider`` ("local" or "s3")."""
    if provider == "local":
        return LocalContentStore(local_root or Path("data/content"))
    if provider == "s3":
        return S3ContentStore(s3_bucket, prefix=s3_prefix, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown storage provider: {provider}")
