"""Storage backends for tenant-cas."""

from __future__ import annotations

from tenant_cas.backends.base import Backend
from tenant_cas.backends.local import LocalFsBackend
from tenant_cas.backends.s3 import ObjectStoreBackend
from tenant_cas.config import Settings


def build_backend(config: Settings) -> Backend:
    """Construct the backend selected by ``config.cas_backend``."""
    if config.cas_backend == "s3":
        return ObjectStoreBackend(
            bucket=config.s3_bucket,
            bucket_prefix=config.s3_bucket_prefix,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
            max_attempts=config.s3_max_attempts,
            retry_backoff=config.s3_retry_backoff,
        )
    return LocalFsBackend(config.cas_data_root)


__all__ = [
    "Backend",
    "LocalFsBackend",
    "ObjectStoreBackend",
    "build_backend",
]
