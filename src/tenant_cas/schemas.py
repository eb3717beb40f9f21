"""Value objects exchanged with callers of the CAS core."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ContentRef(BaseModel):
    """What a caller gets back from put/describe.

    Carries no storage-location detail; ``stored_at`` serializes as RFC 3339.
    """

    model_config = ConfigDict(frozen=True)

    hash: str = Field(min_length=64, max_length=64)
    size: int = Field(ge=0)
    mime_type: str | None = None
    filename: str | None = None
    stored_at: datetime


class ChunkRef(BaseModel):
    """One entry of a chunked object's ordered chunk list."""

    index: int = Field(ge=0)
    hash: str
    size: int = Field(ge=0)


class StatsReport(BaseModel):
    """Per-tenant storage statistics. Chunks are not counted as objects."""

    total_objects: int = 0
    total_bytes: int = 0
    avg_size: float = 0.0
    total_references: int = 0
    deduplication_ratio: float = 1.0
    """total_references / total_objects; 1.0 means no duplicate puts."""

    by_storage_type: dict[str, int] = Field(default_factory=dict)


class TenantAttrs(BaseModel):
    """Input to tenant provisioning."""

    id: str | None = None
    """Tenant id; generated when omitted."""

    name: str | None = None
    slug: str | None = None
    """Derived from ``name`` (or the id) when omitted."""

    email: str | None = None
    plan: str = "free"


class ReclaimReport(BaseModel):
    """Outcome of one reclamation pass over a tenant."""

    purged_objects: int = 0
    purged_blobs: int = 0
    cleared_stale_objects: int = 0
    cleared_stale_blobs: int = 0
