"""Shared pytest fixtures for tenant-cas tests."""

from __future__ import annotations

import asyncio
import io
import random
from collections import Counter
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from botocore.exceptions import ClientError

from tenant_cas.backends import LocalFsBackend
from tenant_cas.chunking import ChunkPlanner
from tenant_cas.config import MiB
from tenant_cas.db import build_engine, init_db
from tenant_cas.errors import BackendUnavailable
from tenant_cas.models import Tenant
from tenant_cas.services import CASService, MetadataStore, TenantProvisioner, TenantRegistry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


class CountingBackend(LocalFsBackend):
    """Local backend that records calls and can stall or fail writes.

    - ``delay``: seconds every store sleeps before writing
    - ``gate``: when set, stores block until the event is set
    - ``fail_on_store``: 1-based store call number that raises
    - ``fail_deletes``: how many upcoming deletes raise
    """

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.stores: Counter[str] = Counter()
        self.deletes: Counter[str] = Counter()
        self.retrieves: Counter[str] = Counter()
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.fail_on_store: int | None = None
        self.fail_deletes = 0

    @property
    def store_calls(self) -> int:
        return sum(self.stores.values())

    async def store(self, namespace: str, key: str, data: bytes) -> None:
        self.stores[key] += 1
        if self.fail_on_store is not None and self.store_calls == self.fail_on_store:
            raise BackendUnavailable("Injected store failure")
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        await super().store(namespace, key, data)

    async def retrieve(self, namespace: str, key: str) -> bytes:
        self.retrieves[key] += 1
        return await super().retrieve(namespace, key)

    async def delete(self, namespace: str, key: str) -> None:
        self.deletes[key] += 1
        if self.fail_deletes:
            self.fail_deletes -= 1
            raise BackendUnavailable("Injected delete failure")
        await super().delete(namespace, key)


def make_bytes(size: int, seed: int = 0) -> bytes:
    """Deterministic pseudo-random content."""
    return random.Random(seed).randbytes(size)


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """Just enough of the boto3 S3 client for the backend."""

    def __init__(self) -> None:
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.calls: list[str] = []
        self.failures: list[BaseException] = []

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if self.failures:
            raise self.failures.pop(0)

    def _bucket(self, name: str, operation: str) -> dict[str, bytes]:
        if name not in self.buckets:
            raise client_error("NoSuchBucket", operation)
        return self.buckets[name]

    def create_bucket(self, Bucket: str, **_: Any) -> dict:
        self._record("create_bucket")
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        self.buckets[Bucket] = {}
        return {}

    def head_bucket(self, Bucket: str) -> dict:
        self._record("head_bucket")
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket")
        return {}

    def delete_bucket(self, Bucket: str) -> dict:
        self._record("delete_bucket")
        self._bucket(Bucket, "DeleteBucket")
        del self.buckets[Bucket]
        return {}

    def put_object(self, Bucket: str, Key: str, Body: bytes) -> dict:
        self._record("put_object")
        self._bucket(Bucket, "PutObject")[Key] = Body
        return {}

    def get_object(self, Bucket: str, Key: str) -> dict:
        self._record("get_object")
        objects = self._bucket(Bucket, "GetObject")
        if Key not in objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(objects[Key])}

    def delete_object(self, Bucket: str, Key: str) -> dict:
        self._record("delete_object")
        self._bucket(Bucket, "DeleteObject").pop(Key, None)
        return {}

    def list_objects_v2(self, Bucket: str, Prefix: str = "", **_: Any) -> dict:
        self._record("list_objects_v2")
        keys = sorted(k for k in self._bucket(Bucket, "ListObjectsV2") if k.startswith(Prefix))
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}

    def delete_objects(self, Bucket: str, Delete: dict) -> dict:
        self._record("delete_objects")
        objects = self._bucket(Bucket, "DeleteObjects")
        for item in Delete["Objects"]:
            objects.pop(item["Key"], None)
        return {}


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite metadata database with all tables created."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def backend(tmp_path: Path) -> CountingBackend:
    return CountingBackend(tmp_path / "blobs")


@pytest.fixture
def metadata(engine: AsyncEngine) -> MetadataStore:
    return MetadataStore(engine, claim_timeout=20.0, poll_interval=0.005)


@pytest.fixture
def registry(engine: AsyncEngine) -> TenantRegistry:
    return TenantRegistry(engine, cache_ttl=30.0)


@pytest.fixture
def provisioner(
    registry: TenantRegistry, backend: CountingBackend, metadata: MetadataStore
) -> TenantProvisioner:
    return TenantProvisioner(registry, backend, metadata)


@pytest.fixture
def planner() -> ChunkPlanner:
    return ChunkPlanner(max_inline_size=1 * MiB, chunk_size=5 * MiB)


@pytest.fixture
def cas(
    metadata: MetadataStore,
    backend: CountingBackend,
    registry: TenantRegistry,
    planner: ChunkPlanner,
) -> CASService:
    return CASService(metadata, backend, registry, planner)


@pytest.fixture
async def tenant(provisioner: TenantProvisioner) -> Tenant:
    return await provisioner.provision({"id": "t1", "name": "Tenant One"})


@pytest.fixture
async def other_tenant(provisioner: TenantProvisioner) -> Tenant:
    return await provisioner.provision({"id": "t2", "name": "Tenant Two"})
