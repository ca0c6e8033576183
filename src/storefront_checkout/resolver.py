"""Catalog variant -> platform variant reference resolution."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from storefront_checkout.catalog import CatalogStore
from storefront_checkout.concurrency import bounded_gather
from storefront_checkout.errors import CheckoutError, NotFoundError, UnlinkedVariantError
from storefront_checkout.models import CartLineItem

logger = logging.getLogger(__name__)


@dataclass
class ResolvedLine:
    """Outcome for one cart line: an annotated item or a per-item error."""
    index: int
    original: CartLineItem
    item: Optional[CartLineItem] = None
    error: Optional[CheckoutError] = None

    @property
    def ok(self) -> bool:
        return self.item is not None


class VariantIdentifierResolver:
    """Annotates cart lines with platform variant references.

    Lines that already carry a reference pass through without a catalog
    read. Per-item failures (missing record, missing reference) are
    returned; an unavailable catalog store fails the whole call.
    """

    def __init__(self, catalog: CatalogStore, max_concurrency: int = 5) -> None:
        self.catalog = catalog
        self.max_concurrency = max_concurrency

    async def resolve_one(self, tenant: str, index: int, item: CartLineItem) -> ResolvedLine:
        if item.platform_variant_ref:
            return ResolvedLine(index=index, original=item, item=item)

        variant = await self.catalog.get_variant(tenant, item.product_id, item.variant_id)
        if variant is None:
            return ResolvedLine(
                index=index,
                original=item,
                error=NotFoundError(
                    "variant",
                    item.variant_id,
                    message=(
                        f"Variant {item.variant_id} not found for product "
                        f"{item.product_id} in storefront {tenant}"
                    ),
                    details={"product_id": item.product_id},
                ),
            )
        if not variant.platform_variant_ref:
            return ResolvedLine(
                index=index,
                original=item,
                error=UnlinkedVariantError(tenant, item.product_id, item.variant_id),
            )
        return ResolvedLine(
            index=index,
            original=item,
            item=item.with_ref(variant.platform_variant_ref),
        )

    async def resolve(
        self,
        tenant: str,
        items: Sequence[CartLineItem],
        skip_products: Iterable[str] = (),
    ) -> List[ResolvedLine]:
        """Resolve every line; results are in original cart order.

        Lines whose product is in ``skip_products`` come back unresolved and
        without an error.
        """
        skip = set(skip_products)

        async def resolve_indexed(entry: Tuple[int, CartLineItem]) -> ResolvedLine:
            index, item = entry
            if item.product_id in skip:
                return ResolvedLine(index=index, original=item)
            return await self.resolve_one(tenant, index, item)

        results = await bounded_gather(list(enumerate(items)), resolve_indexed, self.max_concurrency)

        failed = [r for r in results if r.error is not None]
        if failed:
            logger.info(
                f"Resolved {len(results) - len(failed)}/{len(results)} cart lines for {tenant}",
                extra={"failed_indexes": [r.index for r in failed]},
            )
        return results
