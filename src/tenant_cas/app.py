"""Component wiring for tenant-cas."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from tenant_cas.backends import Backend, build_backend
from tenant_cas.chunking import ChunkPlanner
from tenant_cas.config import Settings, settings
from tenant_cas.db import build_engine, init_db
from tenant_cas.services import CASService, MetadataStore, TenantProvisioner, TenantRegistry


@dataclass
class CASApp:
    """Everything a caller needs, built from one ``Settings``.

    The engine and backend are shared by all tenants and safe for
    concurrent use.
    """

    engine: AsyncEngine
    backend: Backend
    metadata: MetadataStore
    tenants: TenantRegistry
    provisioner: TenantProvisioner
    cas: CASService

    async def init_db(self) -> None:
        await init_db(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()


def build_app(
    config: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    backend: Backend | None = None,
) -> CASApp:
    config = config or settings
    engine = engine or build_engine(config.database_url, echo=config.database_echo)
    backend = backend or build_backend(config)

    metadata = MetadataStore(
        engine,
        claim_timeout=config.cas_claim_timeout,
        poll_interval=config.cas_poll_interval,
    )
    tenants = TenantRegistry(engine, cache_ttl=config.tenant_cache_ttl)
    service = CASService(
        metadata,
        backend,
        tenants,
        ChunkPlanner(config.cas_max_inline_size, config.cas_chunk_size),
        max_content_size=config.cas_max_content_size,
        reclaim_grace_seconds=config.cas_reclaim_grace_seconds,
    )
    return CASApp(
        engine=engine,
        backend=backend,
        metadata=metadata,
        tenants=tenants,
        provisioner=TenantProvisioner(tenants, backend, metadata),
        cas=service,
    )
