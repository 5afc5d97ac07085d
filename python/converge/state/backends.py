"""
converge/state/backends.py

Defines storage backends for the serialized state document and its lock:
  - MemoryBackend
  - LocalFileBackend
  - MinioBackend

Backends move opaque text only; the StateStore owns the schema. For a
non-existent document or lock, each backend returns None so the caller can
detect "no existing state" / "not locked" and proceed accordingly.
"""

from __future__ import annotations

import asyncio
import io
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Optional

import aiofiles
from minio import Minio
from minio.error import S3Error

_MISSING_CODES = ("NoSuchKey", "NoSuchObject", "NoSuchBucket")


class StateBackend(ABC):
    """Abstract base class for reading/writing the state document and lock."""

    @abstractmethod
    async def read_document(self) -> Optional[str]:
        """
        Read the stored state document.

        Returns:
            Optional[str]: The document text, or None if no state exists yet.
        """

    @abstractmethod
    async def write_document(self, text: str) -> None:
        """
        Write or overwrite the state document.

        Args:
            text (str): The serialized StateDocument.
        """

    @abstractmethod
    async def read_lock(self) -> Optional[str]:
        """Return the serialized lock record, or None if unlocked."""

    @abstractmethod
    async def try_create_lock(self, text: str) -> bool:
        """
        Create the lock record only if none exists.

        Returns:
            bool: True if this call created the lock, False if one was present.
        """

    @abstractmethod
    async def delete_lock(self) -> None:
        """Remove the lock record; a missing lock is not an error."""

    def describe(self) -> str:
        return type(self).__name__


class MemoryBackend(StateBackend):
    """
    Keeps the document and lock in process memory. Used for tests and dry runs.
    """

    def __init__(self, document: Optional[str] = None) -> None:
        self.document = document
        self.lock: Optional[str] = None
        self.writes = 0
        self._mutex = asyncio.Lock()

    async def read_document(self) -> Optional[str]:
        return self.document

    async def write_document(self, text: str) -> None:
        self.document = text
        self.writes += 1

    async def read_lock(self) -> Optional[str]:
        return self.lock

    async def try_create_lock(self, text: str) -> bool:
        async with self._mutex:
            if self.lock is not None:
                return False
            self.lock = text
            return True

    async def delete_lock(self) -> None:
        self.lock = None

    def describe(self) -> str:
        return "memory"


class LocalFileBackend(StateBackend):
    """
    Stores the document as JSON at `path`, with the lock in '<path>.lock'.

    Documents are written to a temporary file in the same directory and then
    renamed over the target, so a crash never leaves a truncated document.
    The lock file is created with O_CREAT|O_EXCL, which is atomic on local
    filesystems.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        self.lock_path = f"{self.path}.lock"

    async def read_document(self) -> Optional[str]:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def write_document(self, text: str) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=".converge-state-", suffix=".tmp"
        )
        os.close(fd)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(text)
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    async def read_lock(self) -> Optional[str]:
        try:
            async with aiofiles.open(self.lock_path, "r", encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def try_create_lock(self, text: str) -> bool:
        os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        return True

    async def delete_lock(self) -> None:
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass

    def describe(self) -> str:
        return self.path


class MinioBackend(StateBackend):
    """
    Stores the document in a Minio bucket => '<key>' and the lock => '<key>.lock'.

    The minio client is blocking, so every call runs in a worker thread via
    asyncio.to_thread. Object stores offer no create-if-absent primitive in
    the minio client, so lock creation is a stat-then-put guarded by a
    process-local mutex; concurrent runs on different hosts are separated by
    the lock record's lock_id being re-read and compared by the StateStore.
    """

    def __init__(
        self,
        bucket_name: str,
        object_key: str = "converge/state.json",
        minio_client: Optional[Minio] = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.object_key = object_key
        self.lock_key = f"{object_key}.lock"
        self._minio_client = minio_client
        self._mutex = asyncio.Lock()

    def _client(self) -> Minio:
        if not self._minio_client:
            raise RuntimeError("MinioBackend requires a minio_client.")
        return self._minio_client

    async def _get(self, key: str) -> Optional[str]:
        client = self._client()

        def do_get_and_read() -> Optional[str]:
            response = None
            try:
                response = client.get_object(self.bucket_name, key)
                return response.read().decode("utf-8")
            except S3Error as ex:
                if ex.code in _MISSING_CODES:
                    return None
                raise
            finally:
                if response is not None:
                    response.close()
                    response.release_conn()

        return await asyncio.to_thread(do_get_and_read)

    async def _put(self, key: str, text: str) -> None:
        client = self._client()
        data_bytes = text.encode("utf-8")

        def do_put_object() -> None:
            client.put_object(
                bucket_name=self.bucket_name,
                object_name=key,
                data=io.BytesIO(data_bytes),
                length=len(data_bytes),
                content_type="application/json",
            )

        await asyncio.to_thread(do_put_object)

    async def read_document(self) -> Optional[str]:
        return await self._get(self.object_key)

    async def write_document(self, text: str) -> None:
        await self._put(self.object_key, text)

    async def read_lock(self) -> Optional[str]:
        return await self._get(self.lock_key)

    async def try_create_lock(self, text: str) -> bool:
        async with self._mutex:
            if await self._get(self.lock_key) is not None:
                return False
            await self._put(self.lock_key, text)
            return True

    async def delete_lock(self) -> None:
        client = self._client()

        def do_remove() -> None:
            try:
                client.remove_object(self.bucket_name, self.lock_key)
            except S3Error as ex:
                if ex.code not in _MISSING_CODES:
                    raise

        await asyncio.to_thread(do_remove)

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.object_key}"


__all__ = ["StateBackend", "MemoryBackend", "LocalFileBackend", "MinioBackend"]
