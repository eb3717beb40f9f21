"""Business logic services for tenant-cas."""

from tenant_cas.services.cas import CASService
from tenant_cas.services.metadata_store import Claim, MetadataStore
from tenant_cas.services.tenants import (
    TenantProvisioner,
    TenantRegistry,
    generate_slug,
    validate_tenant_id,
)

__all__ = [
    "CASService",
    "Claim",
    "generate_slug",
    "MetadataStore",
    "TenantProvisioner",
    "TenantRegistry",
    "validate_tenant_id",
]
