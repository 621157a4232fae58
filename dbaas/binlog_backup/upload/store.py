"""
Object storage backends for backup artifacts.

The capture engine and the backup tools only need three operations:
put, list and get. Each call is a single attempt; callers decide whether
to retry.

Backends:
    - S3ObjectStore: any S3-compatible service through aiobotocore
    - InMemoryObjectStore: dictionary-backed store for tests

Invariants:
    - Keys passed in and returned are relative to the configured prefix
    - put() overwrites existing objects

How to change safely:
    - Keep the protocol minimal; new operations need an in-memory
      implementation for tests
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from aiobotocore.session import get_session

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """An object storage operation failed."""

    pass


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for remote storage of backup artifacts."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Store data under key, replacing any existing object.

        Raises:
            ObjectStoreError: If the upload fails
        """
        ...

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """List keys starting with prefix, sorted.

        Raises:
            ObjectStoreError: If listing fails
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Fetch the object stored under key.

        Raises:
            ObjectStoreError: If the object is missing or the download fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class S3ObjectStore:
    """S3 implementation of ObjectStore.

    The client is created lazily on first use and reused until close().

    Attributes:
        s3_config: S3Config with bucket, region, endpoint and credentials

    Example:
        >>> store = S3ObjectStore(config.s3)
        >>> await store.put("2024/10/20240304_mydb_full_backup.sql", dump)
        >>> await store.close()
    """

    def __init__(self, s3_config: Any) -> None:
        self.s3_config = s3_config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None
        self._client_lock = asyncio.Lock()

    def _full_key(self, key: str) -> str:
        prefix = (self.s3_config.prefix or "").strip("/")
        return f"{prefix}/{key}" if prefix else key

    def _relative_key(self, full_key: str) -> str:
        prefix = (self.s3_config.prefix or "").strip("/")
        if prefix and full_key.startswith(prefix + "/"):
            return full_key[len(prefix) + 1 :]
        return full_key

    async def _client(self) -> Any:
        async with self._client_lock:
            if self._s3_client is None:
                await self._init_s3_client()
            return self._s3_client

    async def _init_s3_client(self) -> None:
        """Initialize S3 client."""
        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def put(self, key: str, data: bytes) -> None:
        client = await self._client()
        try:
            await client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
                Body=data,
            )
        except Exception as e:
            raise ObjectStoreError(f"Failed to upload {key}: {e}") from e

        logger.debug("Uploaded object", extra={"key": key, "size_bytes": len(data)})

    async def list(self, prefix: str) -> list[str]:
        client = await self._client()
        keys = []
        try:
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.s3_config.bucket,
                Prefix=self._full_key(prefix),
            ):
                for obj in page.get("Contents", []):
                    keys.append(self._relative_key(obj["Key"]))
        except Exception as e:
            raise ObjectStoreError(f"Failed to list objects under {prefix}: {e}") from e
        return sorted(keys)

    async def get(self, key: str) -> bytes:
        client = await self._client()
        try:
            response = await client.get_object(
                Bucket=self.s3_config.bucket,
                Key=self._full_key(key),
            )
            return await response["Body"].read()
        except Exception as e:
            raise ObjectStoreError(f"Failed to download {key}: {e}") from e


class InMemoryObjectStore:
    """Dictionary-backed ObjectStore for tests.

    Failures can be injected per key to exercise error handling, and every
    put is recorded in order.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.put_log: list[str] = []
        self._failing_keys: set[str] = set()
        self._fail_all = False
        self.closed = False

    def fail_on(self, key: str | None = None) -> None:
        """Make puts to key (or every put when key is None) fail."""
        if key is None:
            self._fail_all = True
        else:
            self._failing_keys.add(key)

    def clear_failures(self) -> None:
        self._failing_keys.clear()
        self._fail_all = False

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.sleep(0)
        if self._fail_all or key in self._failing_keys:
            raise ObjectStoreError(f"Injected failure for {key}")
        self.objects[key] = bytes(data)
        self.put_log.append(key)

    async def list(self, prefix: str) -> list[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise ObjectStoreError(f"No such object: {key}") from None

    async def close(self) -> None:
        self.closed = True
