"""
Checkout validation.

A cart is checked three ways, independently:

1. market eligibility - every product may be sold in the effective market
2. inventory - the effective market's fulfillment locations hold enough
   stock (or the variant may be backordered)
3. shipping - the destination can be shipped to

The verdict is valid only when all three are. Missing market data, missing
records and unlinked variants all fail closed.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from storefront_checkout.catalog import CatalogStore
from storefront_checkout.concurrency import bounded_gather
from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.errors import InvalidCartError, NotFoundError
from storefront_checkout.inventory import MarketInventoryAggregator
from storefront_checkout.models import (
    BackorderPolicy,
    CartLineItem,
    CheckoutContext,
    CheckoutIssue,
    CheckoutVerdict,
    EligibilityItemResult,
    EligibilityResult,
    FailureKind,
    InventoryItemResult,
    InventoryResult,
    ProductRecord,
    ShippingAddress,
    VariantInventory,
)
from storefront_checkout.resolver import ResolvedLine, VariantIdentifierResolver
from storefront_checkout.shipping import ShippingChecker

logger = logging.getLogger(__name__)


class CheckoutValidator:
    """Validates a cart for a destination under a tenant/market context."""

    def __init__(
        self,
        catalog: CatalogStore,
        platform: CommercePlatformConnector,
        aggregator: MarketInventoryAggregator,
        shipping: ShippingChecker,
        resolver: Optional[VariantIdentifierResolver] = None,
        max_concurrency: int = 5,
    ) -> None:
        self.catalog = catalog
        self.platform = platform
        self.aggregator = aggregator
        self.shipping = shipping
        self.max_concurrency = max_concurrency
        self.resolver = resolver or VariantIdentifierResolver(catalog, max_concurrency)

    @staticmethod
    def effective_market(
        destination: Optional[ShippingAddress], context: CheckoutContext
    ) -> str:
        if destination is not None and destination.country_code:
            return destination.country_code
        return context.market

    async def validate(
        self,
        cart: Sequence[CartLineItem],
        destination: Optional[ShippingAddress],
        context: CheckoutContext,
    ) -> CheckoutVerdict:
        if not cart:
            raise InvalidCartError("Cart is required and must not be empty")

        market = self.effective_market(destination, context)

        products = await self._load_products(context.tenant, cart)
        eligibility = self.check_eligibility(cart, products, market)

        # a missing product is reported once, by eligibility
        missing = [product_id for product_id, record in products.items() if record is None]
        resolved = await self.resolver.resolve(context.tenant, cart, skip_products=missing)
        inventory = await self.check_inventory(resolved, market)

        shipping = await self.shipping.check(destination)

        verdict = CheckoutVerdict(
            market=market,
            eligibility=eligibility,
            inventory=inventory,
            shipping=shipping,
            line_items=[r.item for r in resolved if r.item is not None],
        )
        logger.info(
            f"Validated cart of {len(cart)} line(s) for {context.tenant}/{market}: "
            f"{'valid' if verdict.valid else 'invalid'}",
            extra={"issue_kinds": [issue.kind.value for issue in verdict.issues]},
        )
        return verdict

    async def _load_products(
        self, tenant: str, cart: Sequence[CartLineItem]
    ) -> Dict[str, Optional[ProductRecord]]:
        product_ids = list(OrderedDict.fromkeys(item.product_id for item in cart))
        records = await bounded_gather(
            product_ids,
            lambda product_id: self.catalog.get_product(tenant, product_id),
            self.max_concurrency,
        )
        return dict(zip(product_ids, records))

    def check_eligibility(
        self,
        cart: Sequence[CartLineItem],
        products: Dict[str, Optional[ProductRecord]],
        market: str,
    ) -> EligibilityResult:
        result = EligibilityResult(market=market)
        for index, item in enumerate(cart):
            product = products.get(item.product_id)
            reason: Optional[str] = None
            kind = FailureKind.MARKET_INELIGIBLE

            if product is None:
                kind = FailureKind.NOT_FOUND
                reason = f"Product {item.product_id} not found"
            elif not product.active:
                reason = f"{product.name or item.product_id} is no longer available"
            elif not product.availability.is_eligible(market):
                reason = f"{product.name or item.product_id} is not available in {market}"

            result.items.append(
                EligibilityItemResult(
                    index=index,
                    product_id=item.product_id,
                    eligible=reason is None,
                    reason=reason,
                )
            )
            if reason is not None:
                result.issues.append(
                    CheckoutIssue(
                        kind=kind,
                        message=reason,
                        index=index,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        details={"market": market},
                    )
                )
        return result

    async def check_inventory(
        self,
        resolved: Sequence[ResolvedLine],
        market: str,
    ) -> InventoryResult:
        result = InventoryResult(market=market)

        requested: Dict[str, int] = {}
        for line in resolved:
            if line.item is not None:
                ref = line.item.platform_variant_ref
                requested[ref] = requested.get(ref, 0) + line.item.quantity

        refs = list(requested)
        snapshots = await bounded_gather(refs, self._read_inventory, self.max_concurrency)
        inventory: Dict[str, Optional[VariantInventory]] = dict(zip(refs, snapshots))

        for line in resolved:
            item = line.item or line.original
            if not line.ok:
                result.items.append(
                    InventoryItemResult(
                        index=line.index,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        requested=item.quantity,
                        checked=False,
                    )
                )
                if line.error is not None:
                    result.issues.append(
                        line.error.to_issue(
                            index=line.index,
                            product_id=item.product_id,
                            variant_id=item.variant_id,
                        )
                    )
                continue

            ref = item.platform_variant_ref
            snapshot = inventory.get(ref)
            if snapshot is None:
                result.items.append(
                    InventoryItemResult(
                        index=line.index,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        requested=item.quantity,
                        checked=False,
                        platform_variant_ref=ref,
                    )
                )
                result.issues.append(
                    CheckoutIssue(
                        kind=FailureKind.NOT_FOUND,
                        message=f"{item.title or item.variant_id} is not available on the store",
                        index=line.index,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        platform_variant_ref=ref,
                    )
                )
                continue

            total = requested[ref]
            available = self.aggregator.available_quantity(snapshot, market)
            backorder = snapshot.backorder_policy == BackorderPolicy.CONTINUE
            purchasable = self.aggregator.can_fulfil(snapshot, market, total)
            result.items.append(
                InventoryItemResult(
                    index=line.index,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested=item.quantity,
                    available=available,
                    backorder=backorder,
                    purchasable=purchasable,
                    platform_variant_ref=ref,
                    tracked=snapshot.tracked,
                )
            )
            if not purchasable:
                result.issues.append(
                    CheckoutIssue(
                        kind=FailureKind.OUT_OF_STOCK,
                        message=f"Only {available} available in your region (requested {total})",
                        index=line.index,
                        product_id=item.product_id,
                        variant_id=item.variant_id,
                        platform_variant_ref=ref,
                        details={"available": available, "requested": total, "market": market},
                    )
                )
        return result

    async def _read_inventory(self, ref: str) -> Optional[VariantInventory]:
        try:
            return await self.platform.get_variant_inventory(ref)
        except NotFoundError:
            logger.warning(f"Platform has no variant {ref}")
            return None
