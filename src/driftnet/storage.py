"""Storage backends for queue journals, state snapshots and error snapshots."""

import aiofiles
import aiofiles.os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Optional
import structlog

logger = structlog.get_logger()


class CheckpointStorage(ABC):
    """Abstract storage backend addressed by a single URI."""

    @abstractmethod
    async def write(self, data: str) -> None:
        """
        Append data to storage.

        Args:
            data: String data to append (should include newline if needed)
        """
        pass

    @abstractmethod
    async def replace(self, data: str) -> None:
        """
        Overwrite the stored object with data.

        Args:
            data: Full new content
        """
        pass

    @abstractmethod
    async def read(self) -> AsyncIterator[str]:
        """
        Read storage line by line.

        Yields:
            Lines from the stored object
        """
        pass

    @abstractmethod
    async def exists(self) -> bool:
        """
        Check if the stored object exists.

        Returns:
            True if it exists, False otherwise
        """
        pass

    @abstractmethod
    async def delete(self) -> None:
        """Remove the stored object if present."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Ensure all buffered data is persisted to storage."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage and release resources."""
        pass

    async def read_text(self) -> Optional[str]:
        """Read the whole object, or None if it does not exist."""
        if not await self.exists():
            return None
        return "".join([line async for line in self.read()])


class MemoryStorage(CheckpointStorage):
    """In-process storage, mostly for tests and ephemeral crawls."""

    def __init__(self):
        self._chunks: Optional[list[str]] = None

    async def write(self, data: str) -> None:
        if self._chunks is None:
            self._chunks = []
        self._chunks.append(data)

    async def replace(self, data: str) -> None:
        self._chunks = [data]

    async def read(self) -> AsyncIterator[str]:
        if self._chunks is None:
            return
        for line in "".join(self._chunks).splitlines(keepends=True):
            yield line

    async def exists(self) -> bool:
        return self._chunks is not None

    async def delete(self) -> None:
        self._chunks = None

    async def flush(self) -> None:
        pass

    async def close(self) -> None:
        pass


class LocalFileStorage(CheckpointStorage):
    """Local filesystem storage backend."""

    def __init__(self, path: str):
        """
        Initialize local file storage.

        Args:
            path: Local file path
        """
        self.path = Path(path)
        self._file_handle: Optional[Any] = None
        logger.debug("local_storage_init", path=str(self.path))

    async def write(self, data: str) -> None:
        """Append data to local file."""
        if self._file_handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Open in append mode, create if doesn't exist
            self._file_handle = await aiofiles.open(self.path, mode="a", encoding="utf-8")

        await self._file_handle.write(data)

    async def replace(self, data: str) -> None:
        """Write to a sibling temp file, then rename over the target."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
            await f.write(data)
            await f.flush()
        await aiofiles.os.replace(tmp_path, self.path)
        logger.debug("local_storage_replace", path=str(self.path), bytes=len(data))

    async def read(self) -> AsyncIterator[str]:
        """Read file line by line."""
        if not await self.exists():
            return

        async with aiofiles.open(self.path, mode="r", encoding="utf-8") as f:
            async for line in f:
                yield line

    async def exists(self) -> bool:
        """Check if file exists."""
        return self.path.exists()

    async def delete(self) -> None:
        await self.close()
        if await self.exists():
            await aiofiles.os.remove(self.path)

    async def flush(self) -> None:
        """Flush file buffer to disk."""
        if self._file_handle is not None:
            await self._file_handle.flush()

    async def close(self) -> None:
        """Close file handle."""
        if self._file_handle is not None:
            await self._file_handle.close()
            self._file_handle = None


class S3Storage(CheckpointStorage):
    """AWS S3 storage backend."""

    def __init__(self, uri: str):
        """
        Initialize S3 storage.

        Args:
            uri: S3 URI in format s3://bucket/key/path
        """
        self.uri = uri
        self._parse_uri(uri)
        self._buffer: list[str] = []
        self._session: Optional[Any] = None
        logger.debug("s3_storage_init", bucket=self.bucket, key=self.key)

    def _parse_uri(self, uri: str) -> None:
        """Parse S3 URI into bucket and key."""
        if not uri.startswith("s3://"):
            raise ValueError(f"Invalid S3 URI: {uri}")

        parts = uri[5:].split("/", 1)
        if len(parts) < 2 or not parts[1]:
            raise ValueError(f"Invalid S3 URI format: {uri}. Expected s3://bucket/key")

        self.bucket = parts[0]
        self.key = parts[1]

    def _client(self):
        """Lazy load an aioboto3 client context."""
        if self._session is None:
            try:
                import aioboto3
            except ImportError:
                raise ImportError(
                    "aioboto3 is required for S3 storage. Install with: pip install 'driftnet[s3]'"
                )
            self._session = aioboto3.Session()
        return self._session.client("s3")

    async def _get_body(self, s3) -> str:
        response = await s3.get_object(Bucket=self.bucket, Key=self.key)
        async with response["Body"] as stream:
            content = await stream.read()
        return content.decode("utf-8")

    async def write(self, data: str) -> None:
        """
        Buffer data for S3 upload.

        Data is buffered locally and uploaded on flush() to minimize S3 API calls.
        """
        self._buffer.append(data)

    async def replace(self, data: str) -> None:
        async with self._client() as s3:
            await s3.put_object(Bucket=self.bucket, Key=self.key, Body=data.encode("utf-8"))
        logger.debug("s3_storage_replace", bucket=self.bucket, key=self.key, bytes=len(data))

    async def read(self) -> AsyncIterator[str]:
        """Read object from S3 line by line."""
        if not await self.exists():
            return

        async with self._client() as s3:
            text = await self._get_body(s3)

        for line in text.splitlines(keepends=True):
            yield line

    async def exists(self) -> bool:
        """Check if S3 object exists."""
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self.bucket, Key=self.key)
                return True
            except s3.exceptions.ClientError as e:
                if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                    return False
                raise

    async def delete(self) -> None:
        self._buffer.clear()
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=self.key)

    async def flush(self) -> None:
        """Append buffered data to the S3 object."""
        if not self._buffer:
            return

        data = "".join(self._buffer)
        existing_data = ""
        if await self.exists():
            async with self._client() as s3:
                existing_data = await self._get_body(s3)

        await self.replace(existing_data + data)
        logger.info(
            "s3_storage_flush",
            bucket=self.bucket,
            key=self.key,
            bytes=len(data),
            lines=len(self._buffer),
        )
        self._buffer.clear()

    async def close(self) -> None:
        """Flush remaining data."""
        if self._buffer:
            await self.flush()
        self._session = None


class StorageFactory:
    """Factory for creating storage backends from URIs."""

    @staticmethod
    def from_uri(uri: str) -> CheckpointStorage:
        """
        Create appropriate storage backend from URI.

        Args:
            uri: Storage URI (file path, s3://, memory://)

        Returns:
            CheckpointStorage instance

        Examples:
            - './queue.jsonl' -> LocalFileStorage
            - 's3://bucket/queue.jsonl' -> S3Storage
            - 'memory://' -> MemoryStorage
        """
        if uri.startswith("s3://"):
            return S3Storage(uri)
        if uri.startswith("memory://"):
            return MemoryStorage()
        return LocalFileStorage(uri)

    @staticmethod
    def join(base_uri: str, *parts: str) -> str:
        """Append path segments to a base URI (local path or s3 prefix)."""
        if "://" in base_uri:
            prefix = base_uri if base_uri.endswith("/") else base_uri + "/"
            return prefix + "/".join(parts)
        return str(Path(base_uri).joinpath(*parts))
