"""Sharded local filesystem backend."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

from tenant_cas.backends.base import Backend, validate_key, validate_namespace
from tenant_cas.errors import BackendUnavailable, BlobNotFound

logger = logging.getLogger(__name__)


class LocalFsBackend(Backend):
    """Filesystem-backed blob store.

    Layout: <root>/<namespace>/cas/<key[:2]>/<key>

    The two-character shard keeps directory fan-out bounded. Shard
    directories are created lazily; writes go to a temp file in the shard
    and are moved into place with ``os.replace`` so readers never observe a
    partial blob.
    """

    name = "local"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _namespace_dir(self, namespace: str) -> Path:
        return self.root / validate_namespace(namespace)

    def path_for(self, namespace: str, key: str) -> Path:
        validate_key(key)
        return self._namespace_dir(namespace) / "cas" / key[:2] / key

    async def store(self, namespace: str, key: str, data: bytes) -> None:
        path = self.path_for(namespace, key)
        try:
            await asyncio.to_thread(self._write_atomic, path, data)
        except OSError as exc:
            raise BackendUnavailable(f"Failed to write {key} to {path.parent}: {exc}") from exc
        logger.debug("Stored %s (%d bytes) at %s", key[:12], len(data), path)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        if path.exists() and path.stat().st_size == len(data):
            # Same key, same length: content-addressed, so same bytes
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def retrieve(self, namespace: str, key: str) -> bytes:
        path = self.path_for(namespace, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob {key} not found in namespace {namespace}") from exc
        except OSError as exc:
            raise BackendUnavailable(f"Failed to read {path}: {exc}") from exc

    async def delete(self, namespace: str, key: str) -> None:
        path = self.path_for(namespace, key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob {key} not found in namespace {namespace}") from exc
        except OSError as exc:
            raise BackendUnavailable(f"Failed to delete {path}: {exc}") from exc
        logger.debug("Deleted %s from %s", key[:12], namespace)

    async def create_namespace(self, namespace: str) -> None:
        cas_dir = self._namespace_dir(namespace) / "cas"
        try:
            await asyncio.to_thread(cas_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendUnavailable(f"Failed to create {cas_dir}: {exc}") from exc

    async def drop_namespace(self, namespace: str) -> None:
        ns_dir = self._namespace_dir(namespace)
        try:
            await asyncio.to_thread(shutil.rmtree, ns_dir, ignore_errors=False)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise BackendUnavailable(f"Failed to remove {ns_dir}: {exc}") from exc

    async def namespace_exists(self, namespace: str) -> bool:
        return await asyncio.to_thread((self._namespace_dir(namespace) / "cas").is_dir)
