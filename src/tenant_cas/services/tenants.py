"""Tenant registry and per-tenant storage provisioning.

The registry lives in the metadata database (``tenants`` table) so every
process resolves tenant -> namespace the same way and nothing has to
survive a restart in memory. Lookups go through a short cache-aside TTL.
"""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from tenant_cas.backends.base import Backend
from tenant_cas.db import build_session_factory, dialect_insert
from tenant_cas.errors import InvalidInput, TenantNotEmpty, TenantNotProvisioned
from tenant_cas.models import Tenant, TenantStatus
from tenant_cas.schemas import TenantAttrs
from tenant_cas.services.metadata_store import MetadataStore, utcnow

logger = logging.getLogger(__name__)

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")


def validate_tenant_id(tenant_id: object) -> str:
    if not isinstance(tenant_id, str) or not _TENANT_ID_RE.match(tenant_id):
        raise InvalidInput(f"Malformed tenant id: {tenant_id!r}")
    return tenant_id


def generate_slug(name: str) -> str:
    """Derive a namespace-safe slug from a display name.

    Examples:
        "Acme Corp"      -> "acme_corp"
        "  ACME--Corp  " -> "acme_corp"
        "Ünïcode Ltd."   -> "n_code_ltd"
    """
    name = unicodedata.normalize("NFKC", name).lower().strip()
    name = re.sub(r"[^a-z0-9]+", "_", name)
    return name.strip("_")[:63]


class TenantRegistry:
    """Tenant-to-namespace resolution backed by the ``tenants`` table."""

    def __init__(self, engine: AsyncEngine, *, cache_ttl: float = 30.0) -> None:
        self._engine = engine
        self._sessions = build_session_factory(engine)
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, Tenant]] = {}

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)

    async def get(self, tenant_id: str, *, use_cache: bool = True) -> Tenant | None:
        if use_cache and self._cache_ttl > 0:
            cached = self._cache.get(tenant_id)
            if cached and cached[0] > time.monotonic():
                return cached[1]

        async with self._sessions() as session:
            tenant = await session.get(Tenant, tenant_id)

        if tenant is not None and tenant.status is TenantStatus.ACTIVE and self._cache_ttl > 0:
            self._cache[tenant_id] = (time.monotonic() + self._cache_ttl, tenant)
        else:
            self.invalidate(tenant_id)
        return tenant

    async def get_by_slug(self, slug: str) -> Tenant | None:
        async with self._sessions() as session:
            result = await session.execute(select(Tenant).where(Tenant.slug == slug))
            return result.scalar_one_or_none()

    async def get_by_namespace(self, namespace: str) -> Tenant | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Tenant).where(Tenant.storage_namespace == namespace)
            )
            return result.scalar_one_or_none()

    async def lookup(self, identifier: str) -> Tenant | None:
        """Find a tenant by id, falling back to slug."""
        return await self.get(identifier, use_cache=False) or await self.get_by_slug(identifier)

    async def require(self, tenant_id: str) -> Tenant:
        """Return the ACTIVE tenant or raise ``TenantNotProvisioned``."""
        tenant = await self.get(validate_tenant_id(tenant_id))
        if tenant is None or tenant.status is not TenantStatus.ACTIVE:
            raise TenantNotProvisioned(f"Tenant {tenant_id} is not provisioned")
        return tenant

    async def register(self, **values: Any) -> tuple[Tenant, bool]:
        """Insert a tenant row unless one with this id exists.

        Returns (tenant, created).
        """
        stmt = (
            dialect_insert(self._engine, Tenant)
            .values(created_at=utcnow(), **values)
            .on_conflict_do_nothing(index_elements=[Tenant.tenant_id])
            .returning(Tenant.tenant_id)
        )
        try:
            async with self._sessions() as session:
                inserted = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
        except IntegrityError as exc:
            raise InvalidInput(
                f"Tenant slug {values.get('slug')!r} or its storage namespace is already taken"
            ) from exc

        tenant = await self.get(values["tenant_id"], use_cache=False)
        if tenant is None:
            raise TenantNotProvisioned(f"Tenant {values['tenant_id']} vanished during provisioning")
        return tenant, inserted is not None

    async def set_status(self, tenant_id: str, status: TenantStatus) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(Tenant).where(Tenant.tenant_id == tenant_id).values(status=status)
            )
            await session.commit()
        self.invalidate(tenant_id)

    async def remove(self, tenant_id: str) -> None:
        async with self._sessions() as session:
            await session.execute(delete(Tenant).where(Tenant.tenant_id == tenant_id))
            await session.commit()
        self.invalidate(tenant_id)

    async def list(
        self, *, status: TenantStatus | None = None, plan: str | None = None
    ) -> list[Tenant]:
        stmt = select(Tenant).order_by(Tenant.created_at, Tenant.slug)
        if status is not None:
            stmt = stmt.where(Tenant.status == status)
        if plan is not None:
            stmt = stmt.where(Tenant.plan == plan)
        async with self._sessions() as session:
            return list((await session.scalars(stmt)).all())


class TenantProvisioner:
    """Creates and destroys the storage namespace and metadata partition of a tenant.

    Usage:
        provisioner = TenantProvisioner(registry, backend, metadata)
        tenant = await provisioner.provision({"name": "Acme Corp"})
        ...
        await provisioner.deprovision(tenant.tenant_id)
    """

    def __init__(self, registry: TenantRegistry, backend: Backend, metadata: MetadataStore) -> None:
        self._registry = registry
        self._backend = backend
        self._metadata = metadata

    async def provision(self, attrs: TenantAttrs | dict[str, Any]) -> Tenant:
        """Provision a tenant. Safe to retry: an existing tenant is returned as-is.

        The backend namespace is created (idempotently) before the registry
        row, so a registered tenant never points at a missing namespace.
        """
        if not isinstance(attrs, TenantAttrs):
            attrs = TenantAttrs.model_validate(attrs)

        tenant_id = validate_tenant_id(attrs.id or uuid4().hex)
        slug = attrs.slug or generate_slug(attrs.name or "") or tenant_id.lower()
        if not _SLUG_RE.match(slug):
            raise InvalidInput(f"Invalid tenant slug: {slug!r}")

        existing = await self._registry.get(tenant_id, use_cache=False)
        if existing is not None:
            if existing.slug != slug:
                raise InvalidInput(
                    f"Tenant {tenant_id} is already provisioned with slug {existing.slug!r}"
                )
            await self._backend.create_namespace(existing.storage_namespace)
            if existing.status is not TenantStatus.ACTIVE:
                await self._registry.set_status(tenant_id, TenantStatus.ACTIVE)
                existing.status = TenantStatus.ACTIVE
            logger.info("Tenant already provisioned: %s (%s)", slug, tenant_id)
            return existing

        clash = await self._registry.get_by_slug(slug)
        if clash is not None:
            raise InvalidInput(f"Tenant slug {slug!r} is already taken by {clash.tenant_id}")
        namespace = self._backend.canonical_namespace(slug)
        clash = await self._registry.get_by_namespace(namespace)
        if clash is not None:
            raise InvalidInput(
                f"Tenant slug {slug!r} maps to storage namespace {namespace!r}, "
                f"already used by {clash.tenant_id}"
            )

        await self._backend.create_namespace(namespace)
        tenant, created = await self._registry.register(
            tenant_id=tenant_id,
            slug=slug,
            name=attrs.name,
            email=attrs.email,
            plan=attrs.plan,
            storage_namespace=namespace,
            metadata_partition=tenant_id,
            status=TenantStatus.ACTIVE,
        )
        if not created and tenant.slug != slug:
            raise InvalidInput(
                f"Tenant {tenant_id} was concurrently provisioned as {tenant.slug!r}"
            )

        logger.info("Tenant provisioned: %s (%s) on %s", slug, tenant_id, self._backend.name)
        return tenant

    async def deprovision(self, tenant_id: str) -> None:
        """Tear down an empty tenant.

        Refuses (``TenantNotEmpty``) while any content object or blob row
        remains; callers delete their content and run a reclamation pass
        first. Nothing is cascaded implicitly.
        """
        tenant = await self._registry.get(validate_tenant_id(tenant_id), use_cache=False)
        if tenant is None:
            raise TenantNotProvisioned(f"Tenant {tenant_id} is not provisioned")

        await self._ensure_empty(tenant)
        await self._registry.set_status(tenant_id, TenantStatus.DEPROVISIONING)
        try:
            # A put may have slipped in before the status flip
            await self._ensure_empty(tenant)
        except TenantNotEmpty:
            await self._registry.set_status(tenant_id, TenantStatus.ACTIVE)
            raise

        await self._backend.drop_namespace(tenant.storage_namespace)
        await self._registry.remove(tenant_id)
        logger.info("Tenant deprovisioned: %s (%s)", tenant.slug, tenant_id)

    async def _ensure_empty(self, tenant: Tenant) -> None:
        remaining = await self._metadata.count_rows(tenant.metadata_partition)
        if remaining:
            raise TenantNotEmpty(
                f"Tenant {tenant.tenant_id} still holds {remaining} content rows; "
                "delete its content and run reclaim before deprovisioning"
            )

    async def get_tenant(self, identifier: str) -> Tenant | None:
        return await self._registry.lookup(identifier)

    async def list_tenants(
        self, *, status: TenantStatus | None = None, plan: str | None = None
    ) -> list[Tenant]:
        return await self._registry.list(status=status, plan=plan)
