"""ContentObject model: one row per unique content hash per tenant."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, LargeBinary, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tenant_cas.models.base import Base
from tenant_cas.models.enums import RowState, StorageType


class ContentObject(Base):
    """Metadata for a content-addressed object within one tenant.

    The (tenant_id, hash) pair is the identity. Everything except the
    descriptive metadata (mime_type, filename) and the reference count is
    immutable once the row exists.
    """

    __tablename__ = "cas_objects"
    __table_args__ = (Index("ix_cas_objects_tenant_state", "tenant_id", "state"),)

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    """Lowercase hex SHA-256 of the full (unchunked) content."""

    size: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str | None] = mapped_column(String(255))
    filename: Mapped[str | None] = mapped_column(String(1024))

    storage_type: Mapped[StorageType]
    inline_data: Mapped[bytes | None] = mapped_column(LargeBinary)
    """Raw content, only for storage_type = inline."""

    chunks: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON().with_variant(JSONB, "postgresql")
    )
    """Ordered [{index, hash, size}], only for storage_type = chunked."""

    reference_count: Mapped[int] = mapped_column(Integer, default=1)
    state: Mapped[RowState] = mapped_column(default=RowState.READY)
    claim_token: Mapped[str] = mapped_column(String(32))
    """Token of the caller whose insert created this row."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
