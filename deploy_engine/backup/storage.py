# deploy_engine/backup/storage.py
"""Archive storage backends."""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from deploy_engine.core.errors import StorageFailure

logger = logging.getLogger(__name__)


CHUNK_SIZE = 64 * 1024


@dataclass
class StoredObject:
    """Information about a stored archive."""

    path: str
    size_bytes: int
    last_modified: Optional[datetime] = None


class StorageBackend(ABC):
    """
    Where backup archives live.

    Paths are relative, '/'-separated keys. Every failure surfaces as
    StorageFailure.
    """

    @abstractmethod
    def store(self, path: str, stream: BinaryIO) -> int:
        """Write `stream` to `path`. Returns the number of bytes stored."""
        ...

    @abstractmethod
    def retrieve(self, path: str) -> BinaryIO:
        """Open `path` for reading. The caller closes the stream."""
        ...

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Returns False if nothing was stored at `path`."""
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def size(self, path: str) -> int:
        ...

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        ...


# -------------------------
# LOCAL FILESYSTEM
# -------------------------

class LocalStorage(StorageBackend):
    """
    Stores archives under a base directory.

    Writes go to a temporary file in the target directory and are renamed
    into place, so a failed write never leaves a partial archive.
    """

    def __init__(self, base_path: Union[str, Path] = "./data/backups"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"[storage] local storage at {self.base_path}")

    def _resolve_path(self, path: str) -> Path:
        """Resolve a storage path to absolute filesystem path."""
        clean_path = Path(path).as_posix().lstrip("/")
        if not clean_path or clean_path == ".":
            raise StorageFailure("empty storage path")
        full_path = self.base_path / clean_path

        # Must stay inside base_path
        try:
            full_path.resolve().relative_to(self.base_path)
        except ValueError:
            raise StorageFailure(f"Invalid path: {path} (outside base directory)")

        return full_path

    def store(self, path: str, stream: BinaryIO) -> int:
        full_path = self._resolve_path(path)
        tmp_name = None
        written = 0
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=".partial-")
            with os.fdopen(fd, "wb") as out:
                for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                    out.write(chunk)
                    written += len(chunk)
            os.replace(tmp_name, full_path)
            tmp_name = None
        except OSError as e:
            raise StorageFailure(f"failed to store {path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.info(f"[storage] stored {path} ({written} bytes)")
        return written

    def retrieve(self, path: str) -> BinaryIO:
        full_path = self._resolve_path(path)
        try:
            return open(full_path, "rb")
        except FileNotFoundError as e:
            raise StorageFailure(f"File not found: {path}") from e
        except OSError as e:
            raise StorageFailure(f"failed to open {path}: {e}") from e

    def delete(self, path: str) -> bool:
        full_path = self._resolve_path(path)
        try:
            full_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"failed to delete {path}: {e}") from e
        logger.info(f"[storage] deleted {path}")
        return True

    def exists(self, path: str) -> bool:
        full_path = self._resolve_path(path)
        return full_path.is_file()

    def size(self, path: str) -> int:
        full_path = self._resolve_path(path)
        try:
            return full_path.stat().st_size
        except OSError as e:
            raise StorageFailure(f"failed to stat {path}: {e}") from e

    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        for file_path in sorted(self.base_path.rglob("*")):
            if not file_path.is_file() or file_path.name.startswith(".partial-"):
                continue
            rel_path = file_path.relative_to(self.base_path).as_posix()
            if rel_path.startswith(prefix):
                stat = file_path.stat()
                yield StoredObject(
                    path=rel_path,
                    size_bytes=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )


# -------------------------
# S3
# -------------------------

class S3Storage(StorageBackend):
    """
    S3-compatible object storage backend.

    Works with AWS S3, MinIO and other S3-compatible services. Credentials
    come from the standard boto3 chain.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        if not bucket:
            raise ValueError("s3 bucket is required")
        self.bucket = bucket
        self.prefix = prefix.strip("/")

        if client is None:
            client_kwargs = {
                "service_name": "s3",
                "config": Config(signature_version="s3v4"),
            }
            if region:
                client_kwargs["region_name"] = region
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client

        logger.info(f"[storage] s3 storage at s3://{bucket}/{self.prefix}")

    def _key(self, path: str) -> str:
        key = path.lstrip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def store(self, path: str, stream: BinaryIO) -> int:
        key = self._key(path)
        try:
            self.client.upload_fileobj(stream, self.bucket, key)
            size = self.client.head_object(Bucket=self.bucket, Key=key)["ContentLength"]
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"failed to store s3://{self.bucket}/{key}: {e}") from e
        logger.info(f"[storage] stored s3://{self.bucket}/{key} ({size} bytes)")
        return size

    def retrieve(self, path: str) -> BinaryIO:
        key = self._key(path)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"failed to read s3://{self.bucket}/{key}: {e}") from e
        return response["Body"]

    def delete(self, path: str) -> bool:
        if not self.exists(path):
            return False
        key = self._key(path)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"failed to delete s3://{self.bucket}/{key}: {e}") from e
        return True

    def exists(self, path: str) -> bool:
        key = self._key(path)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageFailure(f"failed to check s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"failed to check s3://{self.bucket}/{key}: {e}") from e

    def size(self, path: str) -> int:
        key = self._key(path)
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)["ContentLength"]
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"failed to stat s3://{self.bucket}/{key}: {e}") from e

    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        strip = f"{self.prefix}/" if self.prefix else ""
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
                for obj in page.get("Contents", []):
                    yield StoredObject(
                        path=obj["Key"][len(strip):],
                        size_bytes=obj["Size"],
                        last_modified=obj.get("LastModified"),
                    )
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"failed to list s3://{self.bucket}/{self.prefix}: {e}") from e


def create_storage(settings) -> StorageBackend:
    """Pick the backend once, from configuration."""
    storage_type = settings.backup_storage_type.lower()

    if storage_type == "local":
        return LocalStorage(base_path=settings.backup_storage_path)

    if storage_type == "s3":
        return S3Storage(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )

    raise ValueError(f"Unknown backup storage type: {settings.backup_storage_type}")
