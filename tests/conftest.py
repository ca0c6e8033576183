"""
Pytest configuration for storefront-checkout tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

os.environ.setdefault("STOREFRONT_CHECKOUT_ENVIRONMENT", "dev")

from storefront_checkout.catalog import InMemoryCatalogStore
from storefront_checkout.config import CheckoutSettings, LocationSettings
from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.errors import NotFoundError, PlatformRejectedError
from storefront_checkout.inventory import LocationMarketTable, MarketInventoryAggregator
from storefront_checkout.markets import MarketRegistry
from storefront_checkout.models import (
    BackorderPolicy,
    CheckoutSession,
    InventoryLevel,
    ProductPublication,
    SessionRequest,
    ShippingAddress,
    VariantInventory,
    VariantVisibility,
)
from storefront_checkout.orchestrator import CheckoutSessionOrchestrator
from storefront_checkout.resolver import VariantIdentifierResolver
from storefront_checkout.shipping import ShippingChecker
from storefront_checkout.validator import CheckoutValidator

DE_WAREHOUSE = "100"
US_WAREHOUSE = "200"
DROPSHIP = "300"


class FakePlatform(CommercePlatformConnector):
    """Scriptable commerce platform double.

    Inventory, read-API visibility and create/update behaviour are set per
    test; every call is recorded.
    """

    def __init__(self) -> None:
        self.inventory: Dict[str, VariantInventory] = {}
        self.visibility: Dict[str, VariantVisibility] = {}
        self.create_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.verify_calls: List[List[str]] = []
        self.create_calls: List[SessionRequest] = []
        self.update_calls: List[str] = []
        self.inventory_calls: List[str] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def stock(
        self,
        ref: str,
        levels: Iterable[tuple],
        policy: BackorderPolicy = BackorderPolicy.DENY,
        tracked: bool = True,
    ) -> None:
        self.inventory[ref] = VariantInventory(
            platform_variant_ref=ref,
            levels=[InventoryLevel(location_id=loc, available=qty) for loc, qty in levels],
            backorder_policy=policy,
            tracked=tracked,
        )
        self.visibility.setdefault(ref, VariantVisibility.ACCESSIBLE)

    async def verify_variants(self, refs: Sequence[str]) -> Dict[str, VariantVisibility]:
        self.verify_calls.append(list(refs))
        return {ref: self.visibility.get(ref, VariantVisibility.NOT_FOUND) for ref in refs}

    async def create_session(self, request: SessionRequest) -> CheckoutSession:
        self.create_calls.append(request)
        if self.create_error is not None:
            raise self.create_error
        return CheckoutSession(
            session_id=f"cart-{len(self.create_calls)}",
            redirect_url=f"https://shop.example.com/cart/c/cart-{len(self.create_calls)}?key=abc",
            line_items=list(request.line_items),
            market=request.market,
            tenant=request.tenant,
        )

    async def update_buyer_identity(
        self, session_id: str, address: ShippingAddress, market: str
    ) -> CheckoutSession:
        self.update_calls.append(session_id)
        if self.update_error is not None:
            raise self.update_error
        return CheckoutSession(
            session_id=session_id,
            redirect_url=f"https://shop.example.com/cart/c/{session_id}?key=updated",
            market=market,
            enriched=True,
        )

    async def get_variant_inventory(self, ref: str) -> VariantInventory:
        self.inventory_calls.append(ref)
        if ref not in self.inventory:
            raise NotFoundError("platform_variant", ref)
        return self.inventory[ref]

    async def get_product_markets(self, product_ref: str, markets: Iterable[str]) -> ProductPublication:
        raise PlatformRejectedError("not used in tests")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings() -> CheckoutSettings:
    return CheckoutSettings(
        _env_file=None,
        environment="dev",
        default_tenant="LUNERA",
        default_market="FI",
        known_tenants=["LUNERA", "GIFTSHOP"],
        locations=[
            LocationSettings(location_id=DE_WAREHOUSE, name="de-warehouse", markets=["DE", "AT"], priority=1),
            LocationSettings(location_id=US_WAREHOUSE, name="us-warehouse", markets=["US"], priority=1),
            LocationSettings(location_id=DROPSHIP, name="dropship", markets=["GLOBAL"], priority=5),
        ],
        json_logs=False,
    )


@pytest.fixture
def markets(settings) -> MarketRegistry:
    return MarketRegistry.from_settings(settings)


@pytest.fixture
def location_table(settings) -> LocationMarketTable:
    return LocationMarketTable.from_settings(settings)


@pytest.fixture
def aggregator(location_table) -> MarketInventoryAggregator:
    return MarketInventoryAggregator(location_table)


@pytest.fixture
def catalog() -> InMemoryCatalogStore:
    store = InMemoryCatalogStore()
    store.put_product("LUNERA", "P1", {"name": "Linen Dress", "marketsObject": {"DE": {"available": True}}})
    store.put_variant("LUNERA", "P1", "V1", {"title": "M / Sand", "stock": 5, "shopifyVariantId": 4411})
    return store


@pytest.fixture
def platform() -> FakePlatform:
    fake = FakePlatform()
    fake.stock("4411", [(DE_WAREHOUSE, 5)])
    return fake


@pytest.fixture
def validator(catalog, platform, aggregator, markets) -> CheckoutValidator:
    return CheckoutValidator(
        catalog=catalog,
        platform=platform,
        aggregator=aggregator,
        shipping=ShippingChecker(markets),
        resolver=VariantIdentifierResolver(catalog, max_concurrency=3),
        max_concurrency=3,
    )


@pytest.fixture
def orchestrator(validator, platform) -> CheckoutSessionOrchestrator:
    return CheckoutSessionOrchestrator(
        validator=validator,
        platform=platform,
        verify_batch_size=2,
        max_concurrency=2,
        indexing_retry_after=30,
        checkout_domain="checkout.example.com",
    )
