"""Shopify commerce platform connector."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.errors import (
    NotFoundError,
    PlatformItemNotFoundError,
    PlatformRejectedError,
    UpstreamUnavailableError,
)
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

logger = logging.getLogger(__name__)

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"
PRODUCT_GID_PREFIX = "gid://shopify/Product/"
CART_GID_PREFIX = "gid://shopify/Cart/"

_COUNTRY_CODE = re.compile(r"^[A-Z]{2}$")
_ITEM_MISSING_MARKERS = ("does not exist", "not found")

VERIFY_VARIANTS_QUERY = """
query checkVariants($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on ProductVariant {
      id
      title
      availableForSale
      product {
        id
        title
        availableForSale
      }
    }
  }
}
"""

CART_CREATE_MUTATION = """
mutation cartCreate($input: CartInput!) {
  cartCreate(input: $input) {
    cart {
      id
      checkoutUrl
    }
    userErrors {
      field
      message
      code
    }
  }
}
"""

CART_BUYER_IDENTITY_MUTATION = """
mutation cartBuyerIdentityUpdate($cartId: ID!, $buyerIdentity: CartBuyerIdentityInput!) {
  cartBuyerIdentityUpdate(cartId: $cartId, buyerIdentity: $buyerIdentity) {
    cart {
      id
      checkoutUrl
    }
    userErrors {
      field
      message
      code
    }
  }
}
"""


def variant_gid(ref: str) -> str:
    """Normalise a numeric or GID variant reference to GID form."""
    ref = str(ref).strip()
    if ref.startswith(VARIANT_GID_PREFIX):
        return ref
    if not ref.isdigit():
        raise PlatformRejectedError(
            f"Invalid Shopify variant ID: {ref!r}. Expected GID format or numeric ID."
        )
    return f"{VARIANT_GID_PREFIX}{ref}"


def product_gid(ref: str) -> str:
    ref = str(ref).strip()
    if ref.startswith(PRODUCT_GID_PREFIX):
        return ref
    return f"{PRODUCT_GID_PREFIX}{ref}"


def numeric_id(ref: str) -> str:
    """Strip any GID prefix, leaving the bare id."""
    return str(ref).strip().rsplit("/", 1)[-1]


def strip_cart_gid(cart_id: str) -> str:
    return cart_id[len(CART_GID_PREFIX):] if cart_id.startswith(CART_GID_PREFIX) else cart_id


def cart_gid(session_id: str) -> str:
    return session_id if session_id.startswith(CART_GID_PREFIX) else f"{CART_GID_PREFIX}{session_id}"


def build_publication_query(markets: Iterable[str]) -> str:
    """Admin query asking publishedInContext once per market."""
    fields = []
    for code in markets:
        code = code.upper()
        if not _COUNTRY_CODE.match(code):
            raise ValueError(f"Invalid market code: {code!r}")
        fields.append(f"    published_{code}: publishedInContext(context: {{country: {code}}})")
    aliases = "\n".join(fields)
    return (
        "query getProductMarkets($id: ID!) {\n"
        "  product(id: $id) {\n"
        "    id\n"
        "    title\n"
        f"{aliases}\n"
        "    resourcePublications(first: 10) {\n"
        "      edges { node { isPublished publication { id name } } }\n"
        "    }\n"
        "  }\n"
        "}\n"
    )


class ShopifyConnector(CommercePlatformConnector):
    """Shopify storefront (GraphQL) and admin (GraphQL + REST) connector."""

    def __init__(
        self,
        store_domain: str,
        storefront_token: str,
        admin_token: Optional[str] = None,
        api_version: str = "2025-10",
        timeout: float = 15.0,
        retry_after: int = 2,
        online_store_publication: str = "Online Store",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store_domain = store_domain
        self.storefront_token = storefront_token
        self.admin_token = admin_token
        self.api_version = api_version
        self.retry_after = retry_after
        self.online_store_publication = online_store_publication
        self._client = httpx.AsyncClient(
            base_url=f"https://{store_domain}",
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "shopify"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _storefront_headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Storefront-Access-Token": self.storefront_token,
            "Content-Type": "application/json",
        }

    def _admin_headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.admin_token or "",
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, url: str, api: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Shopify {api} request failed: {e}")
            raise UpstreamUnavailableError(
                f"shopify-{api}", retry_after=self.retry_after
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"shopify-{api}",
                retry_after=self.retry_after,
                details={"status_code": response.status_code},
            )
        return response

    def _decode(self, response: httpx.Response, api: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"Shopify {api} returned a non-JSON body ({response.status_code})")
            raise UpstreamUnavailableError(
                f"shopify-{api}",
                message=f"Shopify {api} API returned an unreadable response",
                retry_after=self.retry_after,
                details={"status_code": response.status_code, "body": response.text[:200]},
            ) from e

    async def _graphql(
        self,
        api: str,
        query: str,
        variables: Dict[str, Any],
    ) -> Dict[str, Any]:
        if api == "storefront":
            url = f"/api/{self.api_version}/graphql.json"
            headers = self._storefront_headers()
        else:
            url = f"/admin/api/{self.api_version}/graphql.json"
            headers = self._admin_headers()

        response = await self._send(
            "POST", url, api, json={"query": query, "variables": variables}, headers=headers
        )
        if response.is_error:
            raise PlatformRejectedError(
                f"Shopify {api} API error: {response.status_code}",
                status_code=response.status_code,
                details={"body": response.text[:500]},
            )

        payload = self._decode(response, api)
        if not isinstance(payload, dict):
            raise PlatformRejectedError(f"Shopify {api} API returned an unexpected payload")
        if payload.get("errors"):
            raise PlatformRejectedError(
                f"Shopify {api} GraphQL errors",
                details={"errors": payload["errors"]},
            )
        return payload.get("data") or {}

    @staticmethod
    def _raise_for_user_errors(operation: str, user_errors: List[Dict[str, Any]]) -> None:
        if not user_errors:
            return
        summary = ", ".join(
            f"{'.'.join(err.get('field') or []) or 'input'}: {err.get('message', '')}"
            for err in user_errors
        )
        message = f"{operation} errors: {summary}"
        if any(
            marker in (err.get("message") or "").lower()
            for err in user_errors
            for marker in _ITEM_MISSING_MARKERS
        ):
            raise PlatformItemNotFoundError(message, user_errors=user_errors)
        raise PlatformRejectedError(message, user_errors=user_errors)

    # ------------------------------------------------------------------
    # Storefront API
    # ------------------------------------------------------------------

    async def verify_variants(
        self,
        refs: Sequence[str],
    ) -> Dict[str, VariantVisibility]:
        if not refs:
            return {}

        data = await self._graphql(
            "storefront",
            VERIFY_VARIANTS_QUERY,
            {"ids": [variant_gid(ref) for ref in refs]},
        )
        nodes = data.get("nodes") or []

        result: Dict[str, VariantVisibility] = {}
        for position, ref in enumerate(refs):
            node = nodes[position] if position < len(nodes) else None
            if not node:
                result[ref] = VariantVisibility.NOT_FOUND
            elif node.get("availableForSale") and (node.get("product") or {}).get("availableForSale"):
                result[ref] = VariantVisibility.ACCESSIBLE
            else:
                result[ref] = VariantVisibility.NOT_FOR_SALE
        return result

    async def create_session(
        self,
        request: SessionRequest,
    ) -> CheckoutSession:
        variables = {
            "input": {
                "lines": [
                    {
                        "merchandiseId": variant_gid(item.platform_variant_ref or ""),
                        "quantity": item.quantity,
                    }
                    for item in request.line_items
                ],
                "attributes": [
                    {"key": key, "value": str(value)}
                    for key, value in request.attributes.items()
                ],
                "buyerIdentity": {"countryCode": request.buyer_country or request.market},
            }
        }

        data = await self._graphql("storefront", CART_CREATE_MUTATION, variables)
        payload = data.get("cartCreate") or {}
        self._raise_for_user_errors("Cart creation", payload.get("userErrors") or [])

        cart = payload.get("cart") or {}
        if not cart.get("id") or not cart.get("checkoutUrl"):
            raise PlatformRejectedError("Failed to create cart: no checkout URL returned")

        return CheckoutSession(
            session_id=strip_cart_gid(cart["id"]),
            redirect_url=cart["checkoutUrl"],
            line_items=list(request.line_items),
            market=request.market,
            tenant=request.tenant,
        )

    async def update_buyer_identity(
        self,
        session_id: str,
        address: ShippingAddress,
        market: str,
    ) -> CheckoutSession:
        variables = {
            "cartId": cart_gid(session_id),
            "buyerIdentity": {
                "countryCode": market,
                "deliveryAddressPreferences": [
                    {
                        "deliveryAddress": {
                            "address1": address.address1 or "",
                            "address2": address.address2 or "",
                            "city": address.city or "",
                            "country": market,
                            "zip": address.zip or "",
                            "firstName": address.first_name or "",
                            "lastName": address.last_name or "",
                            "phone": address.phone or "",
                        }
                    }
                ],
            },
        }

        data = await self._graphql("storefront", CART_BUYER_IDENTITY_MUTATION, variables)
        payload = data.get("cartBuyerIdentityUpdate") or {}
        self._raise_for_user_errors("Cart buyer identity update", payload.get("userErrors") or [])

        cart = payload.get("cart")
        if not cart or not cart.get("checkoutUrl"):
            raise PlatformRejectedError("Failed to update cart buyer identity: no cart returned")

        return CheckoutSession(
            session_id=strip_cart_gid(cart.get("id") or session_id),
            redirect_url=cart["checkoutUrl"],
            market=market,
            enriched=True,
        )

    # ------------------------------------------------------------------
    # Admin API
    # ------------------------------------------------------------------

    async def _admin_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        response = await self._send(
            "GET",
            f"/admin/api/{self.api_version}{path}",
            "admin",
            params=params,
            headers=self._admin_headers(),
        )
        if response.status_code == 404:
            return None
        if response.is_error:
            raise PlatformRejectedError(
                f"Shopify admin API error: {response.status_code}",
                status_code=response.status_code,
            )
        data = self._decode(response, "admin")
        if not isinstance(data, dict):
            raise PlatformRejectedError(f"Shopify admin API returned an unexpected payload for {path}")
        return data

    async def get_variant_inventory(self, ref: str) -> VariantInventory:
        variant_id = numeric_id(ref)
        data = await self._admin_get(f"/variants/{variant_id}.json")
        variant = (data or {}).get("variant")
        if not variant:
            raise NotFoundError("platform_variant", variant_id)

        policy = BackorderPolicy.parse(variant.get("inventory_policy"))
        # an explicit null means the platform does not track stock for this variant
        tracked = variant.get("inventory_management", "shopify") is not None
        inventory_item_id = variant.get("inventory_item_id")
        levels: List[InventoryLevel] = []
        if inventory_item_id:
            level_data = await self._admin_get(
                "/inventory_levels.json",
                params={"inventory_item_ids": str(inventory_item_id)},
            )
            for level in (level_data or {}).get("inventory_levels") or []:
                if level.get("location_id") is None:
                    continue
                levels.append(
                    InventoryLevel(
                        location_id=str(level["location_id"]),
                        available=int(level.get("available") or 0),
                    )
                )

        return VariantInventory(
            platform_variant_ref=str(ref),
            levels=levels,
            backorder_policy=policy,
            title=variant.get("title"),
            tracked=tracked,
        )

    async def get_product_markets(
        self,
        product_ref: str,
        markets: Iterable[str],
    ) -> ProductPublication:
        codes = [code.upper() for code in markets]
        query = build_publication_query(codes)
        data = await self._graphql("admin", query, {"id": product_gid(product_ref)})

        product = data.get("product")
        if not product:
            raise NotFoundError("platform_product", numeric_id(product_ref))

        online_store = False
        for edge in (product.get("resourcePublications") or {}).get("edges") or []:
            node = edge.get("node") or {}
            if (node.get("publication") or {}).get("name") == self.online_store_publication:
                online_store = bool(node.get("isPublished"))
                break

        publication = ProductPublication(
            platform_product_ref=numeric_id(product_ref),
            markets={code: bool(product.get(f"published_{code}")) for code in codes},
            online_store=online_store,
            title=product.get("title"),
        )
        if not online_store:
            logger.warning(
                f"Product {publication.platform_product_ref} is not published to "
                f"{self.online_store_publication}; the storefront API will not see it"
            )
        return publication

    async def close(self) -> None:
        await self._client.aclose()
