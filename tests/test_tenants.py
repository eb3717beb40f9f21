"""Tests for tenant provisioning and the tenant registry."""

from __future__ import annotations

import pytest

from tenant_cas.backends import ObjectStoreBackend
from tenant_cas.errors import InvalidInput, TenantNotEmpty, TenantNotProvisioned
from tenant_cas.models import TenantStatus
from tenant_cas.schemas import TenantAttrs
from tenant_cas.services import (
    CASService,
    MetadataStore,
    TenantProvisioner,
    TenantRegistry,
    generate_slug,
)

from tests.conftest import CountingBackend, FakeS3Client


class TestGenerateSlug:
    @pytest.mark.parametrize(
        ("name", "slug"),
        [
            ("Acme Corp", "acme_corp"),
            ("  ACME--Corp  ", "acme_corp"),
            ("Ünïcode Ltd.", "n_code_ltd"),
            ("already_slugged", "already_slugged"),
            ("!!!", ""),
        ],
    )
    def test_examples(self, name: str, slug: str) -> None:
        assert generate_slug(name) == slug


class TestProvision:
    async def test_creates_namespace_and_partition(
        self, provisioner: TenantProvisioner, backend: CountingBackend
    ) -> None:
        tenant = await provisioner.provision(
            TenantAttrs(id="acme", name="Acme Corp", email="ops@acme.test", plan="pro")
        )

        assert tenant.id == "acme"
        assert tenant.slug == "acme_corp"
        assert tenant.storage_namespace == "acme_corp"
        assert tenant.metadata_partition == "acme"
        assert tenant.plan == "pro"
        assert tenant.status is TenantStatus.ACTIVE
        assert await backend.namespace_exists("acme_corp")

    async def test_is_idempotent(self, provisioner: TenantProvisioner) -> None:
        first = await provisioner.provision({"id": "acme", "name": "Acme Corp"})
        again = await provisioner.provision({"id": "acme", "name": "Acme Corp"})
        assert again.tenant_id == first.tenant_id
        assert again.slug == first.slug
        assert len(await provisioner.list_tenants()) == 1

    async def test_reprovision_keeps_content(
        self, provisioner: TenantProvisioner, cas: CASService
    ) -> None:
        await provisioner.provision({"id": "acme", "name": "Acme"})
        ref = await cas.put("acme", b"keep me")

        await provisioner.provision({"id": "acme", "name": "Acme"})
        assert await cas.get("acme", ref.hash) == b"keep me"

    async def test_generates_id(self, provisioner: TenantProvisioner) -> None:
        tenant = await provisioner.provision({"name": "Nameless"})
        assert len(tenant.tenant_id) == 32
        assert tenant.slug == "nameless"

    async def test_slug_defaults_to_id(self, provisioner: TenantProvisioner) -> None:
        tenant = await provisioner.provision({"id": "Tenant-42"})
        assert tenant.slug == "tenant-42"

    async def test_slug_taken_by_other_tenant(self, provisioner: TenantProvisioner) -> None:
        await provisioner.provision({"id": "a", "name": "Acme"})
        with pytest.raises(InvalidInput):
            await provisioner.provision({"id": "b", "name": "Acme"})

    async def test_conflicting_slug_for_same_id(self, provisioner: TenantProvisioner) -> None:
        await provisioner.provision({"id": "a", "slug": "first"})
        with pytest.raises(InvalidInput):
            await provisioner.provision({"id": "a", "slug": "second"})

    async def test_storage_namespace_clash_is_rejected(
        self, registry: TenantRegistry, metadata: MetadataStore
    ) -> None:
        client = FakeS3Client()
        backend = ObjectStoreBackend(bucket_prefix="przma-", client=client, retry_backoff=0)
        provisioner = TenantProvisioner(registry, backend, metadata)

        first = await provisioner.provision({"id": "ta", "slug": "acme_corp"})
        assert first.storage_namespace == "acme-corp"

        with pytest.raises(InvalidInput):
            await provisioner.provision({"id": "tb", "slug": "acme-corp"})
        assert await provisioner.get_tenant("tb") is None
        assert list(client.buckets) == ["przma-acme-corp-cas"]

    @pytest.mark.parametrize("tenant_id", ["../x", "-lead", "a" * 65, "with space"])
    async def test_malformed_id(self, provisioner: TenantProvisioner, tenant_id: str) -> None:
        with pytest.raises(InvalidInput):
            await provisioner.provision({"id": tenant_id, "name": "x"})

    async def test_invalid_slug(self, provisioner: TenantProvisioner) -> None:
        with pytest.raises(InvalidInput):
            await provisioner.provision({"id": "a", "slug": "Not A Slug"})

    async def test_resumes_interrupted_deprovision(
        self, provisioner: TenantProvisioner, registry: TenantRegistry
    ) -> None:
        await provisioner.provision({"id": "acme", "name": "Acme"})
        await registry.set_status("acme", TenantStatus.DEPROVISIONING)

        tenant = await provisioner.provision({"id": "acme", "name": "Acme"})
        assert tenant.status is TenantStatus.ACTIVE
        assert (await registry.require("acme")).tenant_id == "acme"


class TestLookup:
    async def test_get_tenant_by_id_or_slug(self, provisioner: TenantProvisioner) -> None:
        await provisioner.provision({"id": "acme", "name": "Acme Corp"})

        assert (await provisioner.get_tenant("acme")).slug == "acme_corp"
        assert (await provisioner.get_tenant("acme_corp")).tenant_id == "acme"
        assert await provisioner.get_tenant("nobody") is None

    async def test_list_filters(
        self, provisioner: TenantProvisioner, registry: TenantRegistry
    ) -> None:
        await provisioner.provision({"id": "a", "name": "Alpha", "plan": "pro"})
        await provisioner.provision({"id": "b", "name": "Beta"})
        await provisioner.provision({"id": "c", "name": "Gamma", "plan": "pro"})
        await registry.set_status("c", TenantStatus.DEPROVISIONING)

        pro = await provisioner.list_tenants(plan="pro")
        assert sorted(t.tenant_id for t in pro) == ["a", "c"]
        active_pro = await provisioner.list_tenants(plan="pro", status=TenantStatus.ACTIVE)
        assert [t.tenant_id for t in active_pro] == ["a"]

    async def test_require_rejects_inactive(
        self, provisioner: TenantProvisioner, registry: TenantRegistry
    ) -> None:
        await provisioner.provision({"id": "acme"})
        await registry.set_status("acme", TenantStatus.DEPROVISIONING)
        with pytest.raises(TenantNotProvisioned):
            await registry.require("acme")


class TestDeprovision:
    async def test_refuses_while_content_remains(
        self, provisioner: TenantProvisioner, registry: TenantRegistry, cas: CASService
    ) -> None:
        await provisioner.provision({"id": "acme"})
        await cas.put("acme", b"still here")

        with pytest.raises(TenantNotEmpty):
            await provisioner.deprovision("acme")
        assert (await registry.require("acme")).status is TenantStatus.ACTIVE

    async def test_refuses_unpurged_zero_count_rows(
        self, provisioner: TenantProvisioner, metadata: MetadataStore, cas: CASService
    ) -> None:
        await provisioner.provision({"id": "acme"})
        ref = await cas.put("acme", b"pending purge")
        await metadata.decrement_or_delete("acme", ref.hash)

        with pytest.raises(TenantNotEmpty):
            await provisioner.deprovision("acme")

        await cas.reclaim("acme")
        await provisioner.deprovision("acme")

    async def test_tears_down_empty_tenant(
        self, provisioner: TenantProvisioner, backend: CountingBackend, cas: CASService
    ) -> None:
        await provisioner.provision({"id": "acme", "name": "Acme"})
        ref = await cas.put("acme", b"x" * 2_000_000)
        await cas.delete("acme", ref.hash)

        await provisioner.deprovision("acme")

        assert not await backend.namespace_exists("acme")
        assert await provisioner.get_tenant("acme") is None
        with pytest.raises(TenantNotProvisioned):
            await cas.put("acme", b"too late")

    async def test_unknown_tenant(self, provisioner: TenantProvisioner) -> None:
        with pytest.raises(TenantNotProvisioned):
            await provisioner.deprovision("nobody")

    async def test_provision_after_deprovision(self, provisioner: TenantProvisioner) -> None:
        await provisioner.provision({"id": "acme", "name": "Acme"})
        await provisioner.deprovision("acme")
        tenant = await provisioner.provision({"id": "acme", "name": "Acme"})
        assert tenant.status is TenantStatus.ACTIVE
