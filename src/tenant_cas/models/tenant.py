"""Tenant model: the persisted tenant registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from tenant_cas.models.base import Base
from tenant_cas.models.enums import TenantStatus


class Tenant(Base):
    """A provisioned tenant and the namespaces that isolate its content."""

    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(320))
    plan: Mapped[str] = mapped_column(String(64), default="free")

    storage_namespace: Mapped[str] = mapped_column(String(255), unique=True)
    """Directory under the local root, key prefix, or bucket stem, in the
    backend's canonical form."""

    metadata_partition: Mapped[str] = mapped_column(String(64))
    """Partition key of this tenant's rows in cas_objects / cas_blobs."""

    status: Mapped[TenantStatus] = mapped_column(default=TenantStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @property
    def id(self) -> str:
        return self.tenant_id
