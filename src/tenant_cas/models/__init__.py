"""Database models for tenant-cas."""

from tenant_cas.models.base import Base
from tenant_cas.models.blob import Blob
from tenant_cas.models.content_object import ContentObject
from tenant_cas.models.enums import RowState, StorageType, TenantStatus
from tenant_cas.models.tenant import Tenant

__all__ = [
    "Base",
    "Blob",
    "ContentObject",
    "RowState",
    "StorageType",
    "Tenant",
    "TenantStatus",
]
