"""
Checkout session orchestration.

The platform's management API and its storefront read API are not
consistent in real time: a variant created or re-linked moments ago may be
invisible to the read API, and a session created against it fails with an
"item does not exist" error. The orchestrator therefore runs

    validate -> verify -> create -> finalize

and reports a lagging read API as ``IndexingDelayError`` (retryable, with a
suggested wait) rather than as a hard failure. It never retries on its own;
scheduling a retry is the caller's decision.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from storefront_checkout.concurrency import bounded_gather
from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.errors import (
    CheckoutError,
    CheckoutValidationFailed,
    IndexingDelayError,
    PlatformItemNotFoundError,
    PlatformRejectedError,
    VariantsNotForSaleError,
)
from storefront_checkout.idempotency import IdempotencyManager
from storefront_checkout.models import (
    CartLineItem,
    CheckoutContext,
    CheckoutSession,
    SessionRequest,
    ShippingAddress,
    VariantVisibility,
)
from storefront_checkout.validator import CheckoutValidator

logger = logging.getLogger(__name__)

RESERVED_ATTRIBUTES = ("_market", "_storefront", "storefront_return", "storefront_market", "storefront_name")


class CheckoutSessionOrchestrator:
    """
    Creates platform checkout sessions for validated carts.

    Outcomes of ``create_session``:
    - a ``CheckoutSession`` with a redirect target
    - ``IndexingDelayError``: retry after ``retry_after`` seconds
    - ``CheckoutValidationFailed`` / ``VariantsNotForSaleError`` /
      ``PlatformRejectedError``: will not succeed as-is
    - ``UpstreamUnavailableError``: retry with backoff
    """

    def __init__(
        self,
        validator: CheckoutValidator,
        platform: CommercePlatformConnector,
        idempotency_manager: Optional[IdempotencyManager] = None,
        verify_batch_size: int = 50,
        max_concurrency: int = 5,
        indexing_retry_after: int = 30,
        checkout_domain: str = "",
        return_url: str = "",
        return_path_prefix: str = "",
    ):
        self.validator = validator
        self.platform = platform
        self.idempotency_manager = idempotency_manager
        self.verify_batch_size = verify_batch_size
        self.max_concurrency = max_concurrency
        self.indexing_retry_after = indexing_retry_after
        self.checkout_domain = checkout_domain
        self.return_url = return_url
        self.return_path_prefix = return_path_prefix

    async def create_session(
        self,
        cart: Sequence[CartLineItem],
        destination: Optional[ShippingAddress],
        context: CheckoutContext,
        custom_attributes: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        if not idempotency_key or self.idempotency_manager is None:
            return await self._create_session(cart, destination, context, custom_attributes)

        request_data = {
            "tenant": context.tenant,
            "market": context.market,
            "cart": [item.to_dict() for item in cart],
            "destination": vars(destination) if destination else None,
            "attributes": custom_attributes or {},
        }
        session, is_duplicate = await self.idempotency_manager.execute(
            idempotency_key=f"{context.tenant}:{idempotency_key}",
            operation="create_session",
            request_data=request_data,
            execute_fn=lambda: self._create_session(cart, destination, context, custom_attributes),
            serialize_fn=CheckoutSession.to_dict,
            deserialize_fn=CheckoutSession.from_dict,
            tenant=context.tenant,
        )
        session.idempotency_key = idempotency_key
        session.is_duplicate = is_duplicate
        return session

    async def _create_session(
        self,
        cart: Sequence[CartLineItem],
        destination: Optional[ShippingAddress],
        context: CheckoutContext,
        custom_attributes: Optional[Dict[str, str]],
    ) -> CheckoutSession:
        started = time.monotonic()

        verdict = await self.validator.validate(cart, destination, context)
        if not verdict.valid:
            logger.info(
                f"Checkout rejected by validation for {context.tenant}/{verdict.market}",
                extra={"issue_kinds": [issue.kind.value for issue in verdict.issues]},
            )
            raise CheckoutValidationFailed(verdict)

        items = verdict.line_items
        market = verdict.market

        await self.verify(items)

        request = SessionRequest(
            line_items=items,
            market=market,
            tenant=context.tenant,
            buyer_country=market,
            attributes=self.build_attributes(context.tenant, market, custom_attributes),
        )
        logger.info(
            f"Creating checkout session for {context.tenant}/{market}",
            extra={"line_items": len(items), "state": "create"},
        )
        try:
            session = await self.platform.create_session(request)
        except PlatformItemNotFoundError as e:
            logger.warning(
                f"Session creation failed after verification, treating as indexing delay: {e.message}",
                extra={"state": "create"},
            )
            raise IndexingDelayError(
                message=(
                    "Unable to create checkout. The products may still be indexing. "
                    "Please try again in a moment."
                ),
                items=[self._item_ref(i, item) for i, item in enumerate(items)],
                retry_after=self.indexing_retry_after,
                details={"user_errors": e.user_errors},
            ) from e
        except PlatformRejectedError as e:
            logger.error(
                f"Platform rejected session creation for {context.tenant}/{market}: {e.message}",
                extra={"state": "create", "details": e.details},
            )
            raise

        session = await self.finalize(session, destination, market)
        session.redirect_url = self.decorate_redirect(session.redirect_url, context.tenant)
        session.tenant = context.tenant
        session.market = market

        logger.info(
            f"Checkout session {session.session_id} created "
            f"({(time.monotonic() - started) * 1000:.0f}ms)",
            extra={"state": "done", "enriched": session.enriched},
        )
        return session

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(self, items: Sequence[CartLineItem]) -> None:
        """
        Confirm every variant is visible and for sale on the read API.

        Raises:
            IndexingDelayError: at least one variant is not visible yet
            VariantsNotForSaleError: variants exist but cannot be sold
        """
        refs = list(dict.fromkeys(item.platform_variant_ref for item in items))
        batches = [
            refs[start:start + self.verify_batch_size]
            for start in range(0, len(refs), self.verify_batch_size)
        ]
        results = await bounded_gather(batches, self.platform.verify_variants, self.max_concurrency)

        visibility: Dict[str, VariantVisibility] = {}
        for batch_result in results:
            visibility.update(batch_result)

        not_indexed: List[Dict[str, Any]] = []
        not_for_sale: List[Dict[str, Any]] = []
        for index, item in enumerate(items):
            status = visibility.get(item.platform_variant_ref, VariantVisibility.NOT_FOUND)
            if status == VariantVisibility.NOT_FOUND:
                not_indexed.append(self._item_ref(index, item, reason="not_indexed"))
            elif status == VariantVisibility.NOT_FOR_SALE:
                not_for_sale.append(self._item_ref(index, item, reason="not_available"))

        if not_indexed:
            logger.warning(
                f"{len(not_indexed)} variant(s) not yet visible on the storefront API",
                extra={"state": "verify", "items": not_indexed},
            )
            raise IndexingDelayError(items=not_indexed, retry_after=self.indexing_retry_after)

        if not_for_sale:
            logger.warning(
                f"{len(not_for_sale)} variant(s) exist but are not for sale",
                extra={"state": "verify", "items": not_for_sale},
            )
            raise VariantsNotForSaleError(not_for_sale)

        logger.info(f"All {len(refs)} variant(s) verified", extra={"state": "verify"})

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(
        self,
        session: CheckoutSession,
        destination: Optional[ShippingAddress],
        market: str,
    ) -> CheckoutSession:
        """Attach the delivery address when known; failures keep the original session."""
        if destination is None or not destination.has_street_address:
            return session
        try:
            updated = await self.platform.update_buyer_identity(
                session.session_id, destination, market
            )
        except CheckoutError as e:
            logger.warning(
                f"Failed to update buyer identity for session {session.session_id}, "
                f"keeping original redirect: {e.message}",
                extra={"state": "finalize"},
            )
            return session

        session.redirect_url = updated.redirect_url or session.redirect_url
        session.enriched = True
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def storefront_return(self, tenant: str) -> str:
        return f"{self.return_path_prefix}/{tenant}" if self.return_path_prefix else tenant

    def build_attributes(
        self,
        tenant: str,
        market: str,
        custom_attributes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        attributes = {
            key: str(value)
            for key, value in (custom_attributes or {}).items()
            if key not in RESERVED_ATTRIBUTES
        }
        attributes.update(
            {
                "storefront_market": market,
                "storefront_name": tenant,
                "_market": market,
                "_storefront": tenant,
                "storefront_return": self.storefront_return(tenant),
            }
        )
        return attributes

    def decorate_redirect(self, redirect_url: str, tenant: str) -> str:
        """Point the redirect at the checkout domain and add return routing."""
        parts = urlsplit(redirect_url)
        if not parts.scheme or not parts.netloc:
            return redirect_url

        query = dict(parse_qsl(parts.query, keep_blank_values=True))
        return_to = self._return_to(tenant)
        if return_to:
            query["return_to"] = return_to
        query["storefront_return"] = self.storefront_return(tenant)

        netloc = self.checkout_domain or parts.netloc
        scheme = "https" if self.checkout_domain else parts.scheme
        return urlunsplit((scheme, netloc, parts.path, urlencode(query), parts.fragment))

    def _return_to(self, tenant: str) -> Optional[str]:
        if self.return_url:
            return self.return_url.format(tenant=tenant)
        if self.checkout_domain:
            return f"https://{self.checkout_domain}/pages/redirect?{urlencode({'storefront': tenant})}"
        return None

    @staticmethod
    def _item_ref(index: int, item: CartLineItem, reason: Optional[str] = None) -> Dict[str, Any]:
        ref: Dict[str, Any] = {
            "index": index,
            "productId": item.product_id,
            "variantId": item.variant_id,
            "platformVariantRef": item.platform_variant_ref,
        }
        if reason:
            ref["reason"] = reason
        return ref
