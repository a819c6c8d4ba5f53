# download_service/services/storage_service.py
"""
Availability oracle: answers whether a file id has an object in the content store.

Two implementations share one interface:
- MockStorageOracle, used when no bucket is configured: ids divisible by 7
  exist, with a random size.
- S3StorageOracle, which signs a ``HeadObject`` against AWS S3 or any
  S3-compatible store (MinIO) and reads the size from ``ContentLength``.

Lookups are idempotent and may fail transiently; transport problems surface
as StorageError and callers decide how to fold them.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from download_service.core.config import Settings
from download_service.core.exceptions import StorageError
from download_service.core.logging import LoggerMixin
from download_service.schemas.download import Availability


HEALTH_MARKER_KEY = "__health_check_marker__"
MISSING_OBJECT_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def object_key(file_id: int) -> str:
    """Object key for a file id; no caller-controlled path components."""
    return f"{abs(int(file_id))}.zip"


class AvailabilityOracle(ABC):
    @abstractmethod
    async def check(self, file_id: int) -> Availability:
        ...

    @abstractmethod
    async def health(self) -> bool:
        ...

    async def aclose(self) -> None:
        return None


class MockStorageOracle(AvailabilityOracle, LoggerMixin):
    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    async def check(self, file_id: int) -> Availability:
        available = file_id % 7 == 0
        if not available:
            return Availability(available=False)
        return Availability(
            available=True,
            s3Key=object_key(file_id),
            size=self._rng.randint(1000, 10_000_999),
        )

    async def health(self) -> bool:
        return True


class S3StorageOracle(AvailabilityOracle, LoggerMixin):
    """Signed ``HeadObject`` lookups through boto3.

    boto3 is blocking, so each call runs in a worker thread.
    """

    def __init__(self, bucket: str, client: Any):
        self.bucket = bucket
        self.client = client

    def _head(self, key: str) -> Optional[Dict[str, Any]]:
        """HeadObject response, or None when the object does not exist."""
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in MISSING_OBJECT_CODES:
                return None
            self.logger.warning("Storage HEAD rejected", key=key, code=code)
            raise StorageError(
                f"Storage lookup for {key} failed with {code or 'unknown error'}",
                {"code": code},
            ) from e
        except BotoCoreError as e:
            self.logger.warning("Storage HEAD failed", key=key, error=str(e))
            raise StorageError(f"Storage lookup failed for {key}: {e}") from e

    async def check(self, file_id: int) -> Availability:
        key = object_key(file_id)
        head = await asyncio.to_thread(self._head, key)
        if head is None:
            return Availability(available=False)
        return Availability(available=True, s3Key=key, size=head.get("ContentLength"))

    async def health(self) -> bool:
        try:
            # a missing marker still proves the bucket answers
            await asyncio.to_thread(self._head, HEALTH_MARKER_KEY)
        except StorageError:
            return False
        return True

    async def aclose(self) -> None:
        self.client.close()


def build_s3_client(settings: Settings) -> Any:
    credentials = {}
    if settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY:
        credentials = {
            "aws_access_key_id": settings.S3_ACCESS_KEY_ID,
            "aws_secret_access_key": settings.S3_SECRET_ACCESS_KEY,
        }
    return boto3.client(
        "s3",
        region_name=settings.S3_REGION,
        endpoint_url=settings.S3_ENDPOINT,
        config=Config(
            s3={"addressing_style": "path" if settings.S3_FORCE_PATH_STYLE else "auto"},
            connect_timeout=settings.STORAGE_TIMEOUT_SECONDS,
            read_timeout=settings.STORAGE_TIMEOUT_SECONDS,
            retries={"max_attempts": 2},
        ),
        **credentials,
    )


def build_oracle(settings: Settings) -> AvailabilityOracle:
    if settings.mock_storage:
        return MockStorageOracle()
    return S3StorageOracle(bucket=settings.S3_BUCKET_NAME, client=build_s3_client(settings))
