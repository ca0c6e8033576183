"""
Tests for storefront_checkout.resolver.

Tests cover:
- Pass-through of lines that already carry a platform reference
- Per-item not-found / unlinked outcomes
- Ordering under concurrent resolution
- Catalog outages failing the whole call
"""
from __future__ import annotations

import asyncio
import random

import pytest

from storefront_checkout.catalog import InMemoryCatalogStore
from storefront_checkout.errors import NotFoundError, UnlinkedVariantError, UpstreamUnavailableError
from storefront_checkout.models import CartLineItem
from storefront_checkout.resolver import VariantIdentifierResolver


class SlowCatalog(InMemoryCatalogStore):
    """Catalog whose reads finish in random order."""

    async def get_variant(self, tenant, product_id, variant_id):
        await asyncio.sleep(random.random() / 100)
        return await super().get_variant(tenant, product_id, variant_id)


class BrokenCatalog(InMemoryCatalogStore):

    async def get_variant(self, tenant, product_id, variant_id):
        raise UpstreamUnavailableError("catalog")


class TestResolveOne:

    @pytest.mark.asyncio
    async def test_existing_reference_is_not_looked_up(self, catalog):
        resolver = VariantIdentifierResolver(catalog)
        item = CartLineItem("P1", "V1", 1, platform_variant_ref="9999")

        line = await resolver.resolve_one("LUNERA", 0, item)

        assert line.ok
        assert line.item.platform_variant_ref == "9999"
        assert catalog.reads == 0

    @pytest.mark.asyncio
    async def test_reference_from_catalog(self, catalog):
        resolver = VariantIdentifierResolver(catalog)
        line = await resolver.resolve_one("LUNERA", 0, CartLineItem("P1", "V1", 2))

        assert line.item.platform_variant_ref == "4411"
        assert line.item.quantity == 2
        assert line.original.platform_variant_ref is None

    @pytest.mark.asyncio
    async def test_missing_variant(self, catalog):
        resolver = VariantIdentifierResolver(catalog)
        line = await resolver.resolve_one("LUNERA", 3, CartLineItem("P1", "V404", 1))

        assert not line.ok
        assert isinstance(line.error, NotFoundError)
        assert line.error.message == "Variant V404 not found for product P1 in storefront LUNERA"

    @pytest.mark.asyncio
    async def test_variant_without_reference_is_unlinked(self, catalog):
        catalog.put_variant("LUNERA", "P1", "MANUAL", {"title": "Hand made", "stock": 3})
        resolver = VariantIdentifierResolver(catalog)

        line = await resolver.resolve_one("LUNERA", 0, CartLineItem("P1", "MANUAL", 1))

        assert isinstance(line.error, UnlinkedVariantError)
        assert not line.error.retryable

    @pytest.mark.asyncio
    async def test_variants_are_tenant_scoped(self, catalog):
        resolver = VariantIdentifierResolver(catalog)
        line = await resolver.resolve_one("GIFTSHOP", 0, CartLineItem("P1", "V1", 1))
        assert isinstance(line.error, NotFoundError)


class TestResolve:

    @pytest.mark.asyncio
    async def test_order_preserved(self):
        catalog = SlowCatalog()
        for n in range(20):
            catalog.put_variant("LUNERA", "P", f"V{n}", {"shopifyVariantId": 1000 + n})
        resolver = VariantIdentifierResolver(catalog, max_concurrency=4)

        cart = [CartLineItem("P", f"V{n}", 1) for n in range(20)]
        results = await resolver.resolve("LUNERA", cart)

        assert [r.index for r in results] == list(range(20))
        assert [r.item.platform_variant_ref for r in results] == [str(1000 + n) for n in range(20)]

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, catalog):
        catalog.put_variant("LUNERA", "P1", "MANUAL", {})
        resolver = VariantIdentifierResolver(catalog)
        cart = [
            CartLineItem("P1", "V1", 1),
            CartLineItem("P1", "MANUAL", 1),
            CartLineItem("P1", "V1", 1, platform_variant_ref="77"),
        ]

        results = await resolver.resolve("LUNERA", cart)

        assert [r.ok for r in results] == [True, False, True]
        assert catalog.reads == 2

    @pytest.mark.asyncio
    async def test_catalog_outage_fails_call(self):
        resolver = VariantIdentifierResolver(BrokenCatalog())
        with pytest.raises(UpstreamUnavailableError):
            await resolver.resolve("LUNERA", [CartLineItem("P1", "V1", 1)])
