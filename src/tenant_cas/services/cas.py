"""Content-addressable storage service.

The public façade over the metadata store, the chunk planner and a storage
backend. Every operation is scoped to a provisioned tenant; identical
content stored N times by one tenant costs one physical write and N
reference increments.

Write path (``put``):
    1. Hash the bytes.
    2. Live object already recorded -> increment its count, touch no bytes.
    3. Otherwise plan a strategy. Inline bytes go straight into the row;
       single and chunked content is written blob by blob, each blob under
       its own reference-counted claim, and the object row is inserted only
       once every blob is confirmed.

Delete path: decrement; at zero, flip the row to PURGING, release every
blob it references, delete the row, and finally delete the backend keys
whose last reference went away.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from datetime import timedelta, timezone
from pathlib import Path
from typing import Any

from tenant_cas.backends.base import Backend
from tenant_cas.chunking import ChunkPlanner
from tenant_cas.errors import BackendUnavailable, ContentCorrupted, ContentNotFound, InvalidInput
from tenant_cas.hashing import StreamHasher, hash_bytes, is_content_hash
from tenant_cas.models import ContentObject, RowState, StorageType, Tenant
from tenant_cas.schemas import ChunkRef, ContentRef, ReclaimReport, StatsReport
from tenant_cas.services.metadata_store import Claim, MetadataStore, utcnow
from tenant_cas.services.tenants import TenantRegistry
from tenant_cas.utils.mime import guess_mime_type

logger = logging.getLogger(__name__)

ByteStream = Iterable[bytes] | AsyncIterable[bytes]


def _to_ref(row: ContentObject) -> ContentRef:
    stored_at = row.created_at
    if stored_at.tzinfo is None:
        # SQLite hands back naive datetimes; they were written as UTC
        stored_at = stored_at.replace(tzinfo=timezone.utc)
    return ContentRef(
        hash=row.hash,
        size=row.size,
        mime_type=row.mime_type,
        filename=row.filename,
        stored_at=stored_at,
    )


def _is_live(row: ContentObject | None) -> bool:
    return row is not None and row.state is RowState.READY and row.reference_count > 0


def _blob_hashes(row: ContentObject) -> list[str]:
    """Backend keys referenced by an object, one entry per occurrence."""
    if row.storage_type is StorageType.SINGLE:
        return [row.hash]
    if row.storage_type is StorageType.CHUNKED:
        return [chunk["hash"] for chunk in sorted(row.chunks or [], key=lambda c: c["index"])]
    return []


async def _aiter_pieces(stream: ByteStream) -> AsyncIterator[bytes]:
    if isinstance(stream, AsyncIterable):
        async for piece in stream:
            yield _as_bytes(piece)
    else:
        for piece in stream:
            yield _as_bytes(piece)


async def _read_file(path: Path, block_size: int) -> AsyncIterator[bytes]:
    f = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            block = await asyncio.to_thread(f.read, block_size)
            if not block:
                break
            yield block
    finally:
        f.close()


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    raise InvalidInput(f"Content must be bytes, got {type(data).__name__}")


class CASService:
    """Tenant-scoped put/get/delete over deduplicated, reference-counted content.

    Usage:
        service = CASService(metadata, backend, registry)
        ref = await service.put("t1", b"Hello World", mime_type="text/plain")
        data = await service.get("t1", ref.hash)
        remaining = await service.delete("t1", ref.hash)
    """

    def __init__(
        self,
        metadata: MetadataStore,
        backend: Backend,
        tenants: TenantRegistry,
        planner: ChunkPlanner | None = None,
        *,
        max_content_size: int | None = None,
        reclaim_grace_seconds: float = 3600.0,
    ) -> None:
        self._metadata = metadata
        self._backend = backend
        self._tenants = tenants
        self._planner = planner or ChunkPlanner()
        self._max_content_size = max_content_size
        self._reclaim_grace = timedelta(seconds=reclaim_grace_seconds)

    @property
    def backend(self) -> Backend:
        return self._backend

    # ------------------
    # Writes
    # ------------------
    async def put(
        self,
        tenant_id: str,
        data: bytes,
        *,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ContentRef:
        """Store ``data`` for a tenant and return its reference.

        A dedup hit returns the existing reference unchanged: the first
        writer's mime_type and filename stick (see ``update_metadata``).
        """
        tenant = await self._tenants.require(tenant_id)
        data = _as_bytes(data)
        self._check_size(len(data))
        content_hash = hash_bytes(data)
        partition = tenant.metadata_partition

        if await self._metadata.increment(partition, content_hash) is not None:
            logger.debug("Dedup hit for %s in tenant %s", content_hash[:12], tenant.slug)
            return await self._describe_live(tenant, content_hash)

        storage_type = self._planner.plan_storage(len(data))
        if storage_type is StorageType.INLINE:
            await self._metadata.upsert_increment(
                partition,
                content_hash,
                size=len(data),
                storage_type=storage_type,
                mime_type=mime_type,
                filename=filename,
                inline_data=data,
            )
            return await self._describe_live(tenant, content_hash)

        if storage_type is StorageType.SINGLE:
            pieces = [(content_hash, data)]
        else:
            pieces = [(hash_bytes(piece), piece) for piece in self._planner.split_into_chunks(data)]

        acquired: list[str] = []
        claim: Claim | None = None
        try:
            for blob_hash, piece in pieces:
                await self._store_blob(tenant, blob_hash, piece)
                acquired.append(blob_hash)
            claim = await self._metadata.upsert_increment(
                partition,
                content_hash,
                size=len(data),
                storage_type=storage_type,
                mime_type=mime_type,
                filename=filename,
                chunks=self._chunk_list(pieces) if storage_type is StorageType.CHUNKED else None,
            )
        finally:
            await self._release_unrecorded(tenant, claim, acquired)

        return await self._settle(tenant, content_hash, claim, acquired, storage_type)

    async def put_stream(
        self,
        tenant_id: str,
        stream: ByteStream,
        *,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ContentRef:
        """Store content arriving as a (sync or async) iterable of byte pieces.

        Pieces are re-sliced into chunks; each chunk is written as soon as
        it is complete, so at most two chunks are held in memory. Content
        that turns out to fit a single chunk goes through ``put``.
        """
        tenant = await self._tenants.require(tenant_id)
        partition = tenant.metadata_partition
        chunks = self._planner.asplit_stream_into_chunks(_aiter_pieces(stream))

        first = await anext(chunks, None)
        second = await anext(chunks, None) if first is not None else None
        if second is None:
            return await self.put(tenant_id, first or b"", mime_type=mime_type, filename=filename)

        hasher = StreamHasher()
        chunk_list: list[dict[str, Any]] = []
        acquired: list[str] = []
        claim: Claim | None = None

        async def _store(piece: bytes) -> None:
            hasher.update(piece)
            self._check_size(hasher.size)
            blob_hash = hash_bytes(piece)
            await self._store_blob(tenant, blob_hash, piece)
            acquired.append(blob_hash)
            chunk_list.append(
                ChunkRef(index=len(chunk_list), hash=blob_hash, size=len(piece)).model_dump()
            )

        try:
            await _store(first)
            await _store(second)
            del first, second
            async for piece in chunks:
                await _store(piece)

            content_hash = hasher.hexdigest()
            claim = await self._metadata.upsert_increment(
                partition,
                content_hash,
                size=hasher.size,
                storage_type=StorageType.CHUNKED,
                mime_type=mime_type,
                filename=filename,
                chunks=chunk_list,
            )
        finally:
            await self._release_unrecorded(tenant, claim, acquired)

        return await self._settle(tenant, content_hash, claim, acquired, StorageType.CHUNKED)

    async def put_file(
        self,
        tenant_id: str,
        path: str | Path,
        *,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ContentRef:
        """Store a file, deriving filename and MIME type from the path.

        Files up to one chunk are read whole; larger ones are streamed.
        """
        path = Path(path)
        if not await asyncio.to_thread(path.is_file):
            raise InvalidInput(f"Not a readable file: {path}")

        filename = filename or path.name
        mime_type = mime_type or await asyncio.to_thread(guess_mime_type, path)
        size = (await asyncio.to_thread(path.stat)).st_size
        self._check_size(size)

        try:
            if size <= self._planner.chunk_size:
                data = await asyncio.to_thread(path.read_bytes)
                return await self.put(tenant_id, data, mime_type=mime_type, filename=filename)
            return await self.put_stream(
                tenant_id,
                _read_file(path, self._planner.chunk_size),
                mime_type=mime_type,
                filename=filename,
            )
        except OSError as exc:
            raise InvalidInput(f"Failed to read {path}: {exc}") from exc

    async def add_reference(self, tenant_id: str, content_hash: str) -> int:
        """Take one more reference on existing content without re-sending bytes."""
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        count = await self._metadata.increment(tenant.metadata_partition, content_hash)
        if count is None:
            raise ContentNotFound(f"Content {content_hash} not found for tenant {tenant_id}")
        return count

    async def update_metadata(
        self,
        tenant_id: str,
        content_hash: str,
        *,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ContentRef:
        """Replace the descriptive fields of stored content. Bytes never change."""
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        row = await self._metadata.merge_metadata(
            tenant.metadata_partition, content_hash, mime_type=mime_type, filename=filename
        )
        if not _is_live(row):
            raise ContentNotFound(f"Content {content_hash} not found for tenant {tenant_id}")
        return _to_ref(row)

    # ------------------
    # Reads
    # ------------------
    async def get(self, tenant_id: str, content_hash: str) -> bytes:
        """Return the bytes stored under ``content_hash``.

        Every backend blob is checked against its own hash on the way out.

        Raises:
            ContentNotFound: No live content, or a backend key is missing.
            ContentCorrupted: Stored bytes no longer match their address.
            BackendUnavailable: The storage driver failed.
        """
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        row = await self._metadata.find_by_hash(tenant.metadata_partition, content_hash)
        if not _is_live(row):
            raise ContentNotFound(f"Content {content_hash} not found for tenant {tenant_id}")

        if row.storage_type is StorageType.INLINE:
            data = row.inline_data or b""
            if hash_bytes(data) != content_hash:
                raise ContentCorrupted(f"Inline content {content_hash} failed verification")
        else:
            pieces = [await self._fetch_blob(tenant, blob_hash) for blob_hash in _blob_hashes(row)]
            data = self._planner.reassemble(pieces)

        if len(data) != row.size:
            raise ContentCorrupted(
                f"Content {content_hash} reassembled to {len(data)} bytes, expected {row.size}"
            )
        return data

    async def exists(self, tenant_id: str, content_hash: str) -> bool:
        """Metadata lookup only; never touches the backend."""
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        return _is_live(await self._metadata.find_by_hash(tenant.metadata_partition, content_hash))

    async def describe(self, tenant_id: str, content_hash: str) -> ContentRef:
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        return await self._describe_live(tenant, content_hash)

    async def stats(self, tenant_id: str) -> StatsReport:
        tenant = await self._tenants.require(tenant_id)
        return await self._metadata.stats(tenant.metadata_partition)

    # ------------------
    # Deletes
    # ------------------
    async def delete(self, tenant_id: str, content_hash: str) -> int:
        """Drop one reference and return how many remain.

        Reaching zero removes the metadata row and then the backend bytes
        (every chunk no other object shares). Above zero nothing but the
        counter changes.
        """
        tenant = await self._tenants.require(tenant_id)
        self._check_hash(content_hash)
        count = await self._metadata.decrement_or_delete(tenant.metadata_partition, content_hash)
        if count == 0:
            await self._purge(tenant, content_hash)
        return count

    async def reclaim(self, tenant_id: str) -> ReclaimReport:
        """Garbage-collect what interrupted deletes and writes left behind.

        - objects at zero references whose purge never ran are purged;
        - blobs whose backend delete failed during a purge are deleted again;
        - object rows stuck in PURGING past the grace period are dropped;
        - blobs stuck in PENDING or PURGING past the grace period have their
          backend bytes deleted and their rows removed.
        """
        tenant = await self._tenants.require(tenant_id)
        partition = tenant.metadata_partition
        report = ReclaimReport()

        for content_hash in await self._metadata.unreferenced_objects(partition):
            purged_blobs = await self._purge(tenant, content_hash)
            if purged_blobs is not None:
                report.purged_objects += 1
                report.purged_blobs += purged_blobs

        retry = [
            blob_hash
            for blob_hash in await self._metadata.unreferenced_blobs(partition)
            if await self._metadata.begin_blob_purge(partition, blob_hash)
        ]
        report.purged_blobs += await self._purge_blobs(tenant, retry)

        cutoff = utcnow() - self._reclaim_grace
        report.cleared_stale_objects = await self._metadata.clear_stale_purges(partition, cutoff)
        stale = await self._metadata.take_over_stale_blobs(partition, cutoff)
        await self._purge_blobs(tenant, stale)
        report.cleared_stale_blobs = len(stale)

        logger.info(
            "Reclaimed tenant %s: %d objects, %d blobs, %d stale objects, %d stale blobs",
            tenant.slug,
            report.purged_objects,
            report.purged_blobs,
            report.cleared_stale_objects,
            report.cleared_stale_blobs,
        )
        return report

    # ------------------
    # Internals
    # ------------------
    def _check_size(self, size: int) -> None:
        if self._max_content_size is not None and size > self._max_content_size:
            raise InvalidInput(
                f"Content of {size} bytes exceeds the limit of {self._max_content_size} bytes"
            )

    @staticmethod
    def _check_hash(content_hash: str) -> None:
        if not is_content_hash(content_hash):
            raise InvalidInput(f"Malformed content hash: {content_hash!r}")

    @staticmethod
    def _chunk_list(pieces: list[tuple[str, bytes]]) -> list[dict[str, Any]]:
        return [
            ChunkRef(index=index, hash=blob_hash, size=len(piece)).model_dump()
            for index, (blob_hash, piece) in enumerate(pieces)
        ]

    async def _describe_live(self, tenant: Tenant, content_hash: str) -> ContentRef:
        row = await self._metadata.find_by_hash(tenant.metadata_partition, content_hash)
        if not _is_live(row):
            raise ContentNotFound(
                f"Content {content_hash} not found for tenant {tenant.tenant_id}"
            )
        return _to_ref(row)

    async def _settle(
        self,
        tenant: Tenant,
        content_hash: str,
        claim: Claim,
        acquired: list[str],
        storage_type: StorageType,
    ) -> ContentRef:
        if claim.created:
            logger.info(
                "Stored %s (%s, %d blobs) for tenant %s",
                content_hash[:12],
                storage_type.value,
                len(acquired),
                tenant.slug,
            )
        return await self._describe_live(tenant, content_hash)

    async def _release_unrecorded(
        self, tenant: Tenant, claim: Claim | None, acquired: list[str]
    ) -> None:
        """Give back blob references that no object row ended up holding.

        That is every reference when the put failed before its object row was
        recorded, and all of them when a concurrent put of the same content
        recorded the row first (that row holds its own references).
        """
        if claim is not None and claim.created:
            return
        await asyncio.shield(self._release_blobs(tenant, acquired))

    async def _store_blob(self, tenant: Tenant, blob_hash: str, data: bytes) -> None:
        """Take a reference on a backend key, writing the bytes if we are first."""
        partition = tenant.metadata_partition
        claim = await self._metadata.acquire_blob(partition, blob_hash, len(data))
        if not claim.created:
            return

        try:
            await self._backend.store(tenant.storage_namespace, blob_hash, data)
            await self._metadata.mark_blob_ready(partition, blob_hash, claim.claim_token)
        except BaseException:
            await asyncio.shield(
                self._metadata.abandon_blob(partition, blob_hash, claim.claim_token)
            )
            raise

    async def _fetch_blob(self, tenant: Tenant, blob_hash: str) -> bytes:
        data = await self._backend.retrieve(tenant.storage_namespace, blob_hash)
        if hash_bytes(data) != blob_hash:
            raise ContentCorrupted(
                f"Blob {blob_hash} in namespace {tenant.storage_namespace} failed verification"
            )
        return data

    async def _release_blobs(self, tenant: Tenant, blob_hashes: list[str]) -> int:
        """Drop one reference per entry; purge keys that lost their last one."""
        partition = tenant.metadata_partition
        doomed = [h for h in blob_hashes if await self._metadata.release_blob(partition, h)]
        return await self._purge_blobs(tenant, doomed)

    async def _purge_blobs(self, tenant: Tenant, blob_hashes: list[str]) -> int:
        """Delete the backend keys of PURGING blob rows, then the rows.

        A key whose delete fails has its row put back to READY at zero
        references, so the next ``reclaim`` retries it and new puts are not
        blocked. Every key is tried before the first failure is re-raised.
        """
        partition = tenant.metadata_partition
        purged = 0
        failure: BackendUnavailable | None = None
        for blob_hash in blob_hashes:
            try:
                await self._backend.delete(tenant.storage_namespace, blob_hash)
            except ContentNotFound:
                logger.debug(
                    "Blob %s already absent from %s", blob_hash[:12], tenant.storage_namespace
                )
            except BackendUnavailable as exc:
                logger.warning(
                    "Could not delete blob %s from %s, left for reclaim: %s",
                    blob_hash[:12],
                    tenant.storage_namespace,
                    exc,
                )
                await self._metadata.restore_blob(partition, blob_hash)
                failure = failure or exc
                continue
            await self._metadata.finish_blob_purge(partition, blob_hash)
            purged += 1

        if failure is not None:
            raise failure
        return purged

    async def _drop_object(self, tenant: Tenant, row: ContentObject) -> list[str]:
        """Release a PURGING object's blob references and delete its row.

        Returns the blobs that lost their last reference and are now PURGING.
        """
        partition = tenant.metadata_partition
        doomed = [h for h in _blob_hashes(row) if await self._metadata.release_blob(partition, h)]
        await self._metadata.finish_purge(partition, row.hash)
        return doomed

    async def _purge(self, tenant: Tenant, content_hash: str) -> int | None:
        """Physically remove a zero-reference object.

        Returns the number of backend keys deleted, or None when the object
        was re-referenced or is already being purged by someone else.
        """
        row = await self._metadata.begin_purge(tenant.metadata_partition, content_hash)
        if row is None:
            return None

        # Metadata first: once the row is gone a failed delete only strands
        # an unreferenced blob, which reclaim retries.
        doomed = await asyncio.shield(self._drop_object(tenant, row))
        purged = await self._purge_blobs(tenant, doomed)
        logger.info(
            "Purged %s (%s, %d blobs deleted) for tenant %s",
            content_hash[:12],
            row.storage_type.value,
            purged,
            tenant.slug,
        )
        return purged
