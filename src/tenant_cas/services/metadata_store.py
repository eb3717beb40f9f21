"""Metadata persistence for content objects and their backend blobs.

Every mutation here is a single SQL statement in its own short transaction:

- ``upsert_increment`` is ``INSERT ... ON CONFLICT DO UPDATE SET
  reference_count = reference_count + 1 ... RETURNING claim_token``. The
  caller whose own token comes back created the row; everyone else
  incremented it.
- ``decrement_or_delete`` is ``UPDATE ... SET reference_count =
  reference_count - 1 WHERE reference_count > 0 RETURNING reference_count``.
- Purges flip a row to PURGING in the same statement that observes a zero
  count, and increments never apply to a PURGING row. A caller racing a
  purge waits for the row to disappear and then starts over.

No transaction is held across backend I/O. Statements whose outcome the
caller has to act on (claims, releases, purge starts) run to completion even
when the calling task is cancelled; the cancellation is re-delivered at the
caller's next await, once the outcome is known.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Coroutine, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import uuid4

from sqlalchemy import and_, case, delete, func, literal, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from tenant_cas.db import build_session_factory, dialect_insert
from tenant_cas.errors import ContentNotFound, MetadataConflict, MetadataUnavailable
from tenant_cas.models import Blob, ContentObject, RowState, StorageType
from tenant_cas.schemas import StatsReport

logger = logging.getLogger(__name__)

_RefCounted = type[ContentObject] | type[Blob]

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def run_to_completion(coro: Coroutine[Any, Any, T]) -> T:
    """Await ``coro`` without letting a cancellation separate it from its result.

    If the calling task is cancelled meanwhile, ``coro`` still finishes, its
    result is returned, and the cancellation is requested again so that it
    surfaces at the caller's next await.
    """
    task = asyncio.ensure_future(coro)
    interrupted = False
    try:
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                interrupted = True
    finally:
        current = asyncio.current_task()
        if interrupted and current is not None:
            current.uncancel()
            current.cancel()


@dataclass(frozen=True)
class Claim:
    """Outcome of an insert-or-increment.

    ``created`` is True only for the caller whose insert created the row;
    that caller owns any follow-up work (e.g. the physical write of a blob).
    """

    created: bool
    claim_token: str
    reference_count: int
    state: RowState


class MetadataStore:
    """Tenant-scoped table of content objects and reference-counted blobs.

    Usage:
        store = MetadataStore(engine)
        claim = await store.upsert_increment("t1", content_hash, size=11, ...)
        count = await store.decrement_or_delete("t1", content_hash)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        claim_timeout: float = 30.0,
        poll_interval: float = 0.02,
    ) -> None:
        self._engine = engine
        self._sessions = build_session_factory(engine)
        self._claim_timeout = claim_timeout
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except (OperationalError, InterfaceError) as exc:
            raise MetadataUnavailable(f"Metadata store unavailable: {exc}") from exc

    # ------------------
    # Shared claim protocol
    # ------------------
    async def _get(self, model: _RefCounted, tenant_id: str, content_hash: str) -> Any:
        async with self._session() as session:
            return await session.get(model, (tenant_id, content_hash), populate_existing=True)

    async def _scalar_write(self, stmt: Any) -> Any:
        async with self._session() as session:
            value = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return value

    async def _try_upsert(
        self,
        model: _RefCounted,
        tenant_id: str,
        content_hash: str,
        state: RowState,
        values: dict[str, Any],
    ) -> Claim | None:
        """One atomic insert-or-increment. None means the row is being purged."""
        token = uuid4().hex
        now = utcnow()
        stmt = dialect_insert(self._engine, model).values(
            tenant_id=tenant_id,
            hash=content_hash,
            reference_count=1,
            state=state,
            claim_token=token,
            created_at=now,
            updated_at=now,
            **values,
        )
        changes: dict[str, Any] = {"reference_count": model.reference_count + 1, "updated_at": now}
        if model is Blob:
            # A READY blob at zero references is left over from a purge whose
            # delete failed; its bytes may be gone, so the claimant rewrites them
            orphaned = and_(model.reference_count == 0, model.state == RowState.READY)
            changes["state"] = case(
                (orphaned, literal(RowState.PENDING, model.state.type)), else_=model.state
            )
            changes["claim_token"] = case((orphaned, literal(token)), else_=model.claim_token)
        stmt = stmt.on_conflict_do_update(
            index_elements=[model.tenant_id, model.hash],
            set_=changes,
            where=model.state != RowState.PURGING,
        ).returning(model.claim_token, model.reference_count, model.state)

        async with self._session() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None:
            return None
        return Claim(
            created=row.claim_token == token,
            claim_token=row.claim_token,
            reference_count=row.reference_count,
            state=row.state,
        )

    async def _claim(
        self,
        model: _RefCounted,
        tenant_id: str,
        content_hash: str,
        state: RowState,
        values: dict[str, Any],
    ) -> Claim:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._claim_timeout

        while True:
            claim = await run_to_completion(
                self._try_upsert(model, tenant_id, content_hash, state, values)
            )
            if claim is None:
                # A purge of this hash is in flight; retry once it is gone
                await self._pause(deadline, model, content_hash, "purge")
                continue
            if claim.created or claim.state is RowState.READY:
                return claim

            # Another caller's physical write is in flight and our reference
            # now sits on its row. Wait for it to settle.
            try:
                ready = await self._await_ready(
                    model, tenant_id, content_hash, claim.claim_token, deadline
                )
            except BaseException:
                await asyncio.shield(
                    self._unclaim(model, tenant_id, content_hash, claim.claim_token)
                )
                raise
            if ready:
                return Claim(
                    created=False,
                    claim_token=claim.claim_token,
                    reference_count=claim.reference_count,
                    state=RowState.READY,
                )
            logger.debug(
                "Writer of %s %s abandoned its claim, retrying",
                model.__tablename__,
                content_hash[:12],
            )

    async def _await_ready(
        self,
        model: _RefCounted,
        tenant_id: str,
        content_hash: str,
        claim_token: str,
        deadline: float,
    ) -> bool:
        """True once the row is READY; False if its writer gave up on it.

        Raises ``MetadataConflict`` at the deadline; the caller still holds
        its reference on the row and must give it back.
        """
        loop = asyncio.get_running_loop()
        while True:
            row = await self._get(model, tenant_id, content_hash)
            if row is None or row.claim_token != claim_token:
                return False
            if row.state is RowState.READY:
                return True
            if loop.time() >= deadline:
                raise MetadataConflict(
                    f"Timed out waiting for the in-flight write of {content_hash}"
                )
            await asyncio.sleep(self._poll_interval)

    async def _unclaim(
        self, model: _RefCounted, tenant_id: str, content_hash: str, claim_token: str
    ) -> None:
        """Give back a reference taken on a row that never became READY."""
        stmt = (
            update(model)
            .where(
                model.tenant_id == tenant_id,
                model.hash == content_hash,
                model.claim_token == claim_token,
                model.reference_count > 0,
            )
            .values(reference_count=model.reference_count - 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def _pause(
        self, deadline: float, model: _RefCounted, content_hash: str, waiting_for: str
    ) -> None:
        if asyncio.get_running_loop().time() >= deadline:
            raise MetadataConflict(
                f"Timed out waiting for the in-flight {waiting_for} of "
                f"{model.__tablename__} {content_hash}"
            )
        await asyncio.sleep(self._poll_interval)

    # ------------------
    # Content objects
    # ------------------
    async def find_by_hash(self, tenant_id: str, content_hash: str) -> ContentObject | None:
        return await self._get(ContentObject, tenant_id, content_hash)

    async def upsert_increment(
        self,
        tenant_id: str,
        content_hash: str,
        *,
        size: int,
        storage_type: StorageType,
        mime_type: str | None = None,
        filename: str | None = None,
        inline_data: bytes | None = None,
        chunks: Sequence[dict[str, Any]] | None = None,
    ) -> Claim:
        """Insert the object with reference_count = 1, or increment an existing row.

        The caller must have confirmed every referenced blob before calling
        this: an inserted row is immediately READY.
        """
        values = {
            "size": size,
            "storage_type": storage_type,
            "mime_type": mime_type,
            "filename": filename,
            "inline_data": inline_data,
            "chunks": list(chunks) if chunks is not None else None,
        }
        return await self._claim(ContentObject, tenant_id, content_hash, RowState.READY, values)

    async def increment(self, tenant_id: str, content_hash: str) -> int | None:
        """Add a reference to a live object. None if there is no live object."""
        stmt = (
            update(ContentObject)
            .where(
                ContentObject.tenant_id == tenant_id,
                ContentObject.hash == content_hash,
                ContentObject.state == RowState.READY,
            )
            .values(reference_count=ContentObject.reference_count + 1, updated_at=utcnow())
            .returning(ContentObject.reference_count)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            count = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return count

    async def decrement_or_delete(self, tenant_id: str, content_hash: str) -> int:
        """Atomically drop one reference and return the new count.

        A row reaching zero is kept (state READY, count 0) so that the purge
        that follows, or a later reclamation pass, can find it. The count
        never goes below zero; an absent object raises ``ContentNotFound``.
        """
        stmt = (
            update(ContentObject)
            .where(
                ContentObject.tenant_id == tenant_id,
                ContentObject.hash == content_hash,
                ContentObject.state == RowState.READY,
                ContentObject.reference_count > 0,
            )
            .values(reference_count=ContentObject.reference_count - 1, updated_at=utcnow())
            .returning(ContentObject.reference_count)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            count = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if count is not None:
            return count

        row = await self.find_by_hash(tenant_id, content_hash)
        if row is None or row.state is not RowState.READY:
            raise ContentNotFound(f"Content {content_hash} not found for tenant {tenant_id}")
        return row.reference_count

    async def begin_purge(self, tenant_id: str, content_hash: str) -> ContentObject | None:
        """Flip a zero-reference object to PURGING and return it.

        Returns None when the object is gone or someone re-referenced it first.
        """
        stmt = (
            update(ContentObject)
            .where(
                ContentObject.tenant_id == tenant_id,
                ContentObject.hash == content_hash,
                ContentObject.state == RowState.READY,
                ContentObject.reference_count == 0,
            )
            .values(state=RowState.PURGING, updated_at=utcnow())
            .returning(ContentObject)
            .execution_options(synchronize_session=False)
        )
        return await run_to_completion(self._scalar_write(stmt))

    async def finish_purge(self, tenant_id: str, content_hash: str) -> None:
        stmt = delete(ContentObject).where(
            ContentObject.tenant_id == tenant_id,
            ContentObject.hash == content_hash,
            ContentObject.state == RowState.PURGING,
        )
        async with self._session() as session:
            await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()

    async def merge_metadata(
        self,
        tenant_id: str,
        content_hash: str,
        *,
        mime_type: str | None = None,
        filename: str | None = None,
    ) -> ContentObject | None:
        """Overwrite the descriptive fields that were supplied; bytes never change."""
        changes: dict[str, Any] = {"updated_at": utcnow()}
        if mime_type is not None:
            changes["mime_type"] = mime_type
        if filename is not None:
            changes["filename"] = filename

        stmt = (
            update(ContentObject)
            .where(
                ContentObject.tenant_id == tenant_id,
                ContentObject.hash == content_hash,
                ContentObject.state == RowState.READY,
            )
            .values(**changes)
            .returning(ContentObject)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return row

    async def stats(self, tenant_id: str) -> StatsReport:
        """Aggregate live (referenced) objects for one tenant."""
        stmt = (
            select(
                ContentObject.storage_type,
                func.count(),
                func.coalesce(func.sum(ContentObject.size), 0),
                func.coalesce(func.sum(ContentObject.reference_count), 0),
            )
            .where(
                ContentObject.tenant_id == tenant_id,
                ContentObject.state == RowState.READY,
                ContentObject.reference_count > 0,
            )
            .group_by(ContentObject.storage_type)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        total_objects = sum(int(row[1]) for row in rows)
        total_bytes = sum(int(row[2]) for row in rows)
        total_references = sum(int(row[3]) for row in rows)
        return StatsReport(
            total_objects=total_objects,
            total_bytes=total_bytes,
            avg_size=total_bytes / total_objects if total_objects else 0.0,
            total_references=total_references,
            deduplication_ratio=total_references / total_objects if total_objects else 1.0,
            by_storage_type={row[0].value: int(row[1]) for row in rows},
        )

    async def count_rows(self, tenant_id: str) -> int:
        """Objects plus blobs held for a tenant, in any state."""
        async with self._session() as session:
            objects = await session.scalar(
                select(func.count()).where(ContentObject.tenant_id == tenant_id)
            )
            blobs = await session.scalar(select(func.count()).where(Blob.tenant_id == tenant_id))
        return int(objects or 0) + int(blobs or 0)

    async def unreferenced_objects(self, tenant_id: str) -> list[str]:
        """Hashes of READY objects whose count reached zero without a purge."""
        stmt = select(ContentObject.hash).where(
            ContentObject.tenant_id == tenant_id,
            ContentObject.state == RowState.READY,
            ContentObject.reference_count == 0,
        )
        async with self._session() as session:
            return list((await session.scalars(stmt)).all())

    async def clear_stale_purges(self, tenant_id: str, older_than: datetime) -> int:
        """Drop object rows stuck in PURGING since before ``older_than``.

        Their blob references may or may not have been released already, so
        they are left alone: a leaked blob is preferable to a lost one.
        """
        stmt = delete(ContentObject).where(
            ContentObject.tenant_id == tenant_id,
            ContentObject.state == RowState.PURGING,
            ContentObject.updated_at < older_than,
        )
        async with self._session() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        return result.rowcount or 0

    # ------------------
    # Blobs
    # ------------------
    async def acquire_blob(self, tenant_id: str, blob_hash: str, size: int) -> Claim:
        """Take a reference on a backend key.

        ``created`` means the caller must write the bytes and then call
        ``mark_blob_ready`` (or ``abandon_blob`` on failure). Otherwise the
        bytes are already confirmed in the backend.
        """
        return await self._claim(Blob, tenant_id, blob_hash, RowState.PENDING, {"size": size})

    async def mark_blob_ready(self, tenant_id: str, blob_hash: str, claim_token: str) -> None:
        stmt = (
            update(Blob)
            .where(
                Blob.tenant_id == tenant_id,
                Blob.hash == blob_hash,
                Blob.claim_token == claim_token,
                Blob.state == RowState.PENDING,
            )
            .values(state=RowState.READY, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        if not result.rowcount:
            raise MetadataConflict(f"Lost the write claim on blob {blob_hash}")

    async def abandon_blob(self, tenant_id: str, blob_hash: str, claim_token: str) -> None:
        """Drop a PENDING blob row after a failed or cancelled write.

        Callers who incremented it while waiting notice the row vanish and retry.
        """
        stmt = delete(Blob).where(
            Blob.tenant_id == tenant_id,
            Blob.hash == blob_hash,
            Blob.claim_token == claim_token,
            Blob.state == RowState.PENDING,
        )
        async with self._session() as session:
            await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()

    async def release_blob(self, tenant_id: str, blob_hash: str) -> bool:
        """Drop one blob reference. True if it was the last one.

        The decrement and the switch to PURGING happen in one statement; when
        True is returned the caller must delete the backend key and then call
        ``finish_blob_purge``.
        """
        stmt = (
            update(Blob)
            .where(
                Blob.tenant_id == tenant_id,
                Blob.hash == blob_hash,
                Blob.state == RowState.READY,
                Blob.reference_count > 0,
            )
            .values(
                reference_count=Blob.reference_count - 1,
                state=case(
                    (Blob.reference_count == 1, literal(RowState.PURGING, Blob.state.type)),
                    else_=Blob.state,
                ),
                updated_at=utcnow(),
            )
            .returning(Blob.state)
            .execution_options(synchronize_session=False)
        )
        state = await run_to_completion(self._scalar_write(stmt))
        if state is None:
            logger.warning(
                "Released blob %s for tenant %s had no live references", blob_hash, tenant_id
            )
            return False
        return state is RowState.PURGING

    async def finish_blob_purge(self, tenant_id: str, blob_hash: str) -> None:
        stmt = delete(Blob).where(
            Blob.tenant_id == tenant_id,
            Blob.hash == blob_hash,
            Blob.state == RowState.PURGING,
        )
        async with self._session() as session:
            await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()

    async def restore_blob(self, tenant_id: str, blob_hash: str) -> None:
        """Put a PURGING blob whose backend delete failed back to READY at zero.

        Such a row is picked up by the next ``reclaim``; a put that needs the
        key before then rewrites the bytes (see ``acquire_blob``).
        """
        stmt = (
            update(Blob)
            .where(
                Blob.tenant_id == tenant_id,
                Blob.hash == blob_hash,
                Blob.state == RowState.PURGING,
            )
            .values(state=RowState.READY, reference_count=0, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def unreferenced_blobs(self, tenant_id: str) -> list[str]:
        """Hashes of READY blobs at zero references (purges whose delete failed)."""
        stmt = select(Blob.hash).where(
            Blob.tenant_id == tenant_id,
            Blob.state == RowState.READY,
            Blob.reference_count == 0,
        )
        async with self._session() as session:
            return list((await session.scalars(stmt)).all())

    async def begin_blob_purge(self, tenant_id: str, blob_hash: str) -> bool:
        """Flip an unreferenced READY blob to PURGING. False if someone claimed it first."""
        stmt = (
            update(Blob)
            .where(
                Blob.tenant_id == tenant_id,
                Blob.hash == blob_hash,
                Blob.state == RowState.READY,
                Blob.reference_count == 0,
            )
            .values(state=RowState.PURGING, updated_at=utcnow())
            .returning(Blob.hash)
            .execution_options(synchronize_session=False)
        )
        return await run_to_completion(self._scalar_write(stmt)) is not None

    async def find_blob(self, tenant_id: str, blob_hash: str) -> Blob | None:
        return await self._get(Blob, tenant_id, blob_hash)

    async def take_over_stale_blobs(self, tenant_id: str, older_than: datetime) -> list[str]:
        """Claim blobs stuck in PENDING or PURGING for a purge by the caller.

        A PENDING blob older than the grace period belongs to a writer that
        died mid-write; a PURGING one to a purger that died before finishing.
        Either way the bytes are unreferenced.
        """
        candidates = select(Blob.hash).where(
            Blob.tenant_id == tenant_id,
            Blob.state.in_([RowState.PENDING, RowState.PURGING]),
            Blob.updated_at < older_than,
        )
        async with self._session() as session:
            hashes = list((await session.scalars(candidates)).all())

        taken: list[str] = []
        for blob_hash in hashes:
            stmt = (
                update(Blob)
                .where(
                    Blob.tenant_id == tenant_id,
                    Blob.hash == blob_hash,
                    Blob.state.in_([RowState.PENDING, RowState.PURGING]),
                    Blob.updated_at < older_than,
                )
                .values(state=RowState.PURGING, claim_token=uuid4().hex, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            async with self._session() as session:
                result = await session.execute(stmt)
                await session.commit()
            if result.rowcount:
                taken.append(blob_hash)
        return taken
