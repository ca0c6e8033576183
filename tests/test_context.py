"""
Tests for storefront_checkout.context.

Tests cover:
- Precedence: pin > path > geolocation > default
- Pin idempotence
- Checkout sub-flow preservation
- Unsupported geolocation handling
"""
from __future__ import annotations

import pytest

from storefront_checkout.context import ContextResolver, RequestMetadata


@pytest.fixture
def resolver(settings, markets) -> ContextResolver:
    return ContextResolver(settings, markets)


class TestTenantResolution:

    def test_path_segment_becomes_tenant(self, resolver):
        resolved = resolver.resolve(RequestMetadata(path="/giftshop/dresses"))
        assert resolved.tenant == "GIFTSHOP"
        assert resolved.tenant_source == "path"
        assert resolved.pins["tenant"] == "GIFTSHOP"

    def test_pinned_tenant_wins_over_path(self, resolver):
        resolved = resolver.resolve(RequestMetadata(path="/GIFTSHOP", pinned_tenant="LUNERA"))
        assert resolved.tenant == "LUNERA"
        assert "tenant" not in resolved.pins

    def test_excluded_segments_never_yield_tenant(self, resolver):
        for path in ("/api/checkout", "/admin/products", "/_next/static/x.js", "/thank-you"):
            resolved = resolver.resolve(RequestMetadata(path=path))
            assert resolved.tenant == "LUNERA"
            assert resolved.tenant_source == "default"

    def test_unknown_tenant_falls_back_to_default(self, resolver):
        resolved = resolver.resolve(RequestMetadata(path="/about"))
        assert resolved.tenant == "LUNERA"

    def test_referer_url(self, resolver):
        resolved = resolver.resolve(
            RequestMetadata(path="/api/checkout", referer="https://shop.example.com/GIFTSHOP/bags?x=1")
        )
        assert resolved.tenant == "GIFTSHOP"
        assert resolved.tenant_source == "referer"


class TestSubflow:
    """Cart and checkout paths keep the pinned tenant."""

    def test_cart_preserves_pin(self, resolver):
        resolved = resolver.resolve(
            RequestMetadata(path="/cart", pinned_tenant="GIFTSHOP", referer="https://x/LUNERA/shoes")
        )
        assert resolved.tenant == "GIFTSHOP"
        assert resolved.pins == {}

    def test_subflow_never_derives_from_referer(self, resolver):
        resolved = resolver.resolve(
            RequestMetadata(path="/checkout/payment", referer="https://x/GIFTSHOP/shoes")
        )
        assert resolved.tenant == "LUNERA"
        assert resolved.tenant_source == "default"


class TestMarketResolution:

    def test_pinned_market(self, resolver):
        resolved = resolver.resolve(RequestMetadata(pinned_market="de", geo_country="SE"))
        assert resolved.market == "DE"
        assert resolved.market_source == "pinned"

    def test_geo_market_is_pinned(self, resolver):
        resolved = resolver.resolve(RequestMetadata(geo_country="se"))
        assert resolved.market == "SE"
        assert resolved.pins["market"] == "SE"

    def test_unsupported_pin_is_rederived(self, resolver):
        resolved = resolver.resolve(RequestMetadata(pinned_market="US", geo_country="DE"))
        assert resolved.market == "DE"
        assert resolved.market_source == "geo"

    def test_unsupported_geo_is_flagged_and_not_pinned(self, resolver):
        resolved = resolver.resolve(RequestMetadata(geo_country="US"))
        assert resolved.market_supported is False
        assert resolved.market == "FI"
        assert "market" not in resolved.pins

    def test_default_market(self, resolver):
        resolved = resolver.resolve(RequestMetadata())
        assert resolved.market == "FI"
        assert resolved.market_source == "default"
        assert resolved.pins == {"tenant": "LUNERA", "market": "FI"}


class TestIdempotence:

    @pytest.mark.parametrize(
        "metadata",
        [
            RequestMetadata(path="/GIFTSHOP", geo_country="DE"),
            RequestMetadata(path="/", geo_country=None),
            RequestMetadata(path="/LUNERA/dresses", geo_country="SE"),
        ],
    )
    def test_reresolving_with_pins_is_stable(self, resolver, metadata):
        first = resolver.resolve(metadata)
        second = resolver.resolve(
            RequestMetadata(
                path="/GIFTSHOP/other",
                pinned_tenant=first.pins.get("tenant", metadata.pinned_tenant),
                pinned_market=first.pins.get("market", metadata.pinned_market),
                geo_country="CH",
            )
        )
        assert (second.tenant, second.market) == (first.tenant, first.market)
        assert second.pins == {}
