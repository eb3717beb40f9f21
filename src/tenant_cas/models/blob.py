"""Blob model: reference-counted backend keys."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from tenant_cas.models.base import Base
from tenant_cas.models.enums import RowState


class Blob(Base):
    """One physical object in a tenant's backend namespace.

    A ``single`` ContentObject owns one reference to the blob keyed by its
    own hash; a ``chunked`` ContentObject owns one reference per chunk.
    Identical chunks (within one object or across objects) share a blob, so
    bytes are only removed from the backend when the last reference goes.
    """

    __tablename__ = "cas_blobs"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    """Backend key: lowercase hex SHA-256 of the blob bytes."""

    size: Mapped[int] = mapped_column(BigInteger)
    reference_count: Mapped[int] = mapped_column(Integer, default=1)
    state: Mapped[RowState] = mapped_column(default=RowState.PENDING)
    claim_token: Mapped[str] = mapped_column(String(32))
    """Token of the caller responsible for the physical write."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
