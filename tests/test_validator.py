"""
Tests for storefront_checkout.validator.

Tests cover:
- Market eligibility per product
- Market-scoped inventory, combined quantities and backorder
- Unlinked and missing variants reported per line
- Shipping feasibility and the effective market
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import DE_WAREHOUSE, US_WAREHOUSE
from storefront_checkout.errors import InvalidCartError, UpstreamUnavailableError
from storefront_checkout.models import (
    BackorderPolicy,
    CartLineItem,
    CheckoutContext,
    FailureKind,
    ShippingAddress,
)

DE = CheckoutContext(tenant="LUNERA", market="DE")


class TestVerdict:

    @pytest.mark.asyncio
    async def test_valid_cart(self, validator):
        verdict = await validator.validate([CartLineItem("P1", "V1", 2)], ShippingAddress("DE"), DE)

        assert verdict.valid
        assert verdict.market == "DE"
        assert verdict.inventory.items[0].available == 5
        assert verdict.inventory.items[0].requested == 2
        assert verdict.line_items[0].platform_variant_ref == "4411"
        assert verdict.to_dict()["checks"]["shipping"]["currency"] == "EUR"

    @pytest.mark.asyncio
    async def test_empty_cart_rejected(self, validator):
        with pytest.raises(InvalidCartError):
            await validator.validate([], None, DE)

    @pytest.mark.asyncio
    async def test_destination_country_is_the_effective_market(self, validator, platform):
        platform.stock("4411", [(DE_WAREHOUSE, 5), (US_WAREHOUSE, 50)])
        verdict = await validator.validate(
            [CartLineItem("P1", "V1", 1)],
            ShippingAddress("US"),
            DE,
        )
        assert verdict.market == "US"
        assert not verdict.valid


class TestMarketEligibility:

    @pytest.mark.asyncio
    async def test_ineligible_market_names_product(self, validator):
        verdict = await validator.validate(
            [CartLineItem("P1", "V1", 1)], None, CheckoutContext("LUNERA", "US")
        )

        issues = [i for i in verdict.issues if i.kind == FailureKind.MARKET_INELIGIBLE]
        assert len(issues) == 1
        assert issues[0].product_id == "P1"
        assert issues[0].message == "Linen Dress is not available in US"

    @pytest.mark.asyncio
    async def test_missing_market_data_fails_closed(self, validator, catalog):
        catalog.put_product("LUNERA", "P2", {"name": "Scarf"})
        catalog.put_variant("LUNERA", "P2", "V1", {"shopifyVariantId": 4411})

        verdict = await validator.validate([CartLineItem("P2", "V1", 1)], None, DE)

        assert not verdict.eligibility.valid

    @pytest.mark.asyncio
    async def test_inactive_product(self, validator, catalog):
        catalog.put_product(
            "LUNERA", "P1", {"name": "Linen Dress", "status": "archived", "markets": ["DE"]}
        )
        verdict = await validator.validate([CartLineItem("P1", "V1", 1)], None, DE)
        assert verdict.eligibility.issues[0].message == "Linen Dress is no longer available"

    @pytest.mark.asyncio
    async def test_missing_product(self, validator):
        verdict = await validator.validate([CartLineItem("P404", "V1", 1)], None, DE)
        assert verdict.eligibility.issues[0].kind == FailureKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_product_reported_once(self, validator, catalog, platform):
        cart = [CartLineItem("P404", "V404", 1), CartLineItem("P1", "V1", 1)]
        verdict = await validator.validate(cart, None, DE)

        assert [(i.kind, i.index) for i in verdict.issues] == [(FailureKind.NOT_FOUND, 0)]
        assert verdict.inventory.items[0].checked is False
        assert verdict.inventory.items[1].purchasable
        assert catalog.reads == 1
        assert platform.inventory_calls == ["4411"]

    @pytest.mark.asyncio
    async def test_each_product_loaded_once(self, validator, catalog):
        await validator.validate([CartLineItem("P1", "V1", 1), CartLineItem("P1", "V1", 1)], None, DE)
        assert catalog.product_reads == 1


class TestInventory:

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, validator):
        verdict = await validator.validate([CartLineItem("P1", "V1", 10)], None, DE)

        assert not verdict.valid
        issue = verdict.inventory.issues[0]
        assert issue.kind == FailureKind.OUT_OF_STOCK
        assert issue.details["available"] == 5
        assert issue.details["requested"] == 10
        assert issue.message == "Only 5 available in your region (requested 10)"

    @pytest.mark.asyncio
    async def test_stock_at_ineligible_location_does_not_count(self, validator, platform):
        platform.stock("4411", [(US_WAREHOUSE, 100)])
        verdict = await validator.validate([CartLineItem("P1", "V1", 1)], None, DE)
        assert verdict.inventory.issues[0].details["available"] == 0

    @pytest.mark.asyncio
    async def test_quantities_combined_per_variant(self, validator):
        cart = [CartLineItem("P1", "V1", 3), CartLineItem("P1", "V1", 3)]
        verdict = await validator.validate(cart, None, DE)

        assert len(verdict.inventory.issues) == 2
        assert verdict.inventory.issues[0].details["requested"] == 6

    @pytest.mark.asyncio
    async def test_backorder_allows_oversell(self, validator, platform):
        platform.stock("4411", [], policy=BackorderPolicy.CONTINUE)
        verdict = await validator.validate([CartLineItem("P1", "V1", 40)], None, DE)
        assert verdict.inventory.valid
        assert verdict.inventory.items[0].backorder

    @pytest.mark.asyncio
    async def test_untracked_variant_needs_no_stock(self, validator, platform):
        platform.stock("4411", [], tracked=False)
        verdict = await validator.validate([CartLineItem("P1", "V1", 40)], None, DE)

        assert verdict.valid
        assert verdict.inventory.items[0].purchasable
        assert verdict.inventory.items[0].tracked is False
        assert not verdict.inventory.items[0].backorder

    @pytest.mark.asyncio
    async def test_unlinked_variant_reported_at_its_index(self, validator, catalog, platform):
        catalog.put_variant("LUNERA", "P1", "MANUAL", {"title": "Hand made"})
        cart = [CartLineItem("P1", "V1", 1) for _ in range(4)]
        cart.insert(2, CartLineItem("P1", "MANUAL", 1))

        verdict = await validator.validate(cart, None, DE)

        unlinked = [i for i in verdict.issues if i.kind == FailureKind.UNLINKED_VARIANT]
        assert len(unlinked) == 1
        assert unlinked[0].index == 2
        assert verdict.inventory.items[2].checked is False
        assert len(verdict.line_items) == 4

    @pytest.mark.asyncio
    async def test_variant_missing_on_platform(self, validator):
        verdict = await validator.validate(
            [CartLineItem("P1", "V1", 1, platform_variant_ref="999")], None, DE
        )
        assert verdict.inventory.issues[0].kind == FailureKind.NOT_FOUND
        assert verdict.inventory.issues[0].platform_variant_ref == "999"

    @pytest.mark.asyncio
    async def test_platform_outage_propagates(self, validator, platform):
        platform.get_variant_inventory = AsyncMock(side_effect=UpstreamUnavailableError("shopify-admin"))
        with pytest.raises(UpstreamUnavailableError):
            await validator.validate([CartLineItem("P1", "V1", 1)], None, DE)


class TestShipping:

    @pytest.mark.asyncio
    async def test_unsupported_destination(self, validator):
        verdict = await validator.validate(
            [CartLineItem("P1", "V1", 1)], ShippingAddress("US"), DE
        )
        assert FailureKind.SHIPPING_UNAVAILABLE in [i.kind for i in verdict.issues]

    @pytest.mark.asyncio
    async def test_issues_ordered_by_check(self, validator):
        verdict = await validator.validate(
            [CartLineItem("P1", "V1", 1)], ShippingAddress("US"), DE
        )
        kinds = [i.kind for i in verdict.issues]
        assert kinds[0] == FailureKind.MARKET_INELIGIBLE
        assert kinds[-1] == FailureKind.SHIPPING_UNAVAILABLE
