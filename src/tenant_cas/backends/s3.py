"""S3-compatible object storage backend."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tenant_cas.backends.base import Backend, validate_key, validate_namespace
from tenant_cas.errors import BackendUnavailable, BlobNotFound

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404", "NoSuchBucket"})
_ALREADY_EXISTS_CODES = frozenset({"BucketAlreadyOwnedByYou", "BucketAlreadyExists"})
_TRANSIENT_CODES = frozenset(
    {
        "InternalError",
        "ServiceUnavailable",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "Throttling",
        "ThrottlingException",
        "500",
        "502",
        "503",
        "504",
    }
)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_transient(exc: BaseException) -> bool:
    """Retry connection-level failures and 5xx/throttling responses only."""
    if isinstance(exc, ClientError):
        return _error_code(exc) in _TRANSIENT_CODES
    return isinstance(exc, BotoCoreError)


class ObjectStoreBackend(Backend):
    """Blob store on an S3-compatible bucket.

    Two layouts are supported:
        shared bucket:     s3://<bucket>/<namespace>/cas/<key>
        bucket per tenant: s3://<bucket_prefix><namespace>-cas/cas/<key>

    The boto3 client is shared by every caller (boto3 clients are thread-safe)
    and each blocking call runs in the default thread pool. Transient failures
    are retried a bounded number of times with exponential backoff before
    ``BackendUnavailable`` is raised.
    """

    name = "s3"

    def __init__(
        self,
        *,
        bucket: str | None = None,
        bucket_prefix: str = "tenant-cas-",
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        max_attempts: int = 4,
        retry_backoff: float = 0.25,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.bucket_prefix = bucket_prefix
        self.region = region
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff

        if client is None:
            import boto3

            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self._client = client

    # ------------------
    # Key layout
    # ------------------
    def _bucket_for(self, namespace: str) -> str:
        if self.bucket:
            return self.bucket
        return f"{self.bucket_prefix}{self.canonical_namespace(namespace)}-cas".replace("_", "-")

    def canonical_namespace(self, namespace: str) -> str:
        # Bucket names cannot contain underscores
        if self.bucket:
            return validate_namespace(namespace)
        return validate_namespace(namespace).replace("_", "-")

    def locate(self, namespace: str, key: str) -> tuple[str, str]:
        """Return (bucket, object key) for a blob."""
        validate_key(key)
        validate_namespace(namespace)
        if self.bucket:
            return self.bucket, f"{namespace}/cas/{key}"
        return self._bucket_for(namespace), f"cas/{key}"

    def _prefix_for(self, namespace: str) -> str:
        return f"{validate_namespace(namespace)}/" if self.bucket else ""

    # ------------------
    # Client calls
    # ------------------
    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking client call in a worker thread with bounded retries."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=5.0),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await asyncio.to_thread(partial(fn, *args, **kwargs))

    async def _call(self, operation: str, **kwargs: Any) -> Any:
        return await self._run(getattr(self._client, operation), **kwargs)

    def _read_object(self, bucket: str, object_key: str) -> bytes:
        response = self._client.get_object(Bucket=bucket, Key=object_key)
        return response["Body"].read()

    # ------------------
    # Backend contract
    # ------------------
    async def store(self, namespace: str, key: str, data: bytes) -> None:
        bucket, object_key = self.locate(namespace, key)
        try:
            await self._call("put_object", Bucket=bucket, Key=object_key, Body=data)
        except (ClientError, BotoCoreError) as exc:
            raise BackendUnavailable(f"Failed to store s3://{bucket}/{object_key}: {exc}") from exc
        logger.debug("Stored s3://%s/%s (%d bytes)", bucket, object_key, len(data))

    async def retrieve(self, namespace: str, key: str) -> bytes:
        bucket, object_key = self.locate(namespace, key)
        try:
            return await self._run(self._read_object, bucket, object_key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise BlobNotFound(f"Blob s3://{bucket}/{object_key} not found") from exc
            raise BackendUnavailable(f"Failed to read s3://{bucket}/{object_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackendUnavailable(f"Failed to read s3://{bucket}/{object_key}: {exc}") from exc

    async def delete(self, namespace: str, key: str) -> None:
        # DeleteObject succeeds for absent keys; only a missing bucket is NotFound
        bucket, object_key = self.locate(namespace, key)
        try:
            await self._call("delete_object", Bucket=bucket, Key=object_key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                raise BlobNotFound(f"Blob s3://{bucket}/{object_key} not found") from exc
            raise BackendUnavailable(f"Failed to delete s3://{bucket}/{object_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackendUnavailable(f"Failed to delete s3://{bucket}/{object_key}: {exc}") from exc

    async def create_namespace(self, namespace: str) -> None:
        bucket = self._bucket_for(namespace)
        try:
            if self.bucket:
                # Prefixes are implicit; only the shared bucket has to exist
                await self._call("head_bucket", Bucket=bucket)
                return
            kwargs: dict[str, Any] = {"Bucket": bucket}
            if self.region != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            await self._call("create_bucket", **kwargs)
            logger.info("Created bucket %s for namespace %s", bucket, namespace)
        except ClientError as exc:
            if _error_code(exc) in _ALREADY_EXISTS_CODES:
                return
            raise BackendUnavailable(f"Failed to create namespace {namespace}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackendUnavailable(f"Failed to create namespace {namespace}: {exc}") from exc

    async def drop_namespace(self, namespace: str) -> None:
        bucket = self._bucket_for(namespace)
        prefix = self._prefix_for(namespace)
        try:
            token: str | None = None
            while True:
                kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
                if token:
                    kwargs["ContinuationToken"] = token
                page = await self._call("list_objects_v2", **kwargs)
                keys = [{"Key": item["Key"]} for item in page.get("Contents", [])]
                if keys:
                    logger.warning(
                        "Removing %d leftover objects from s3://%s/%s", len(keys), bucket, prefix
                    )
                    await self._call(
                        "delete_objects", Bucket=bucket, Delete={"Objects": keys, "Quiet": True}
                    )
                if not page.get("IsTruncated"):
                    break
                token = page.get("NextContinuationToken")
            if not self.bucket:
                await self._call("delete_bucket", Bucket=bucket)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return
            raise BackendUnavailable(f"Failed to drop namespace {namespace}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackendUnavailable(f"Failed to drop namespace {namespace}: {exc}") from exc

    async def namespace_exists(self, namespace: str) -> bool:
        bucket = self._bucket_for(namespace)
        try:
            await self._call("head_bucket", Bucket=bucket)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise BackendUnavailable(f"Failed to check namespace {namespace}: {exc}") from exc
        except BotoCoreError as exc:
            raise BackendUnavailable(f"Failed to check namespace {namespace}: {exc}") from exc
        return True
