"""Checkout domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


GLOBAL_MARKET = "GLOBAL"
DEFAULT_IDEMPOTENCY_TTL_HOURS = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_code(value: Any) -> str:
    return str(value).strip().upper()


def _stringify_ref(value: Any) -> Optional[str]:
    # Catalog documents store platform ids as numbers or strings.
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    ref = str(value).strip()
    return ref or None


class FailureKind(str, Enum):
    """Reason an item (or a request) cannot proceed to checkout."""
    NOT_FOUND = "not_found"
    UNLINKED_VARIANT = "unlinked_variant"
    MARKET_INELIGIBLE = "market_ineligible"
    OUT_OF_STOCK = "out_of_stock"
    SHIPPING_UNAVAILABLE = "shipping_unavailable"
    INDEXING_DELAY = "indexing_delay"
    NOT_FOR_SALE = "not_for_sale"
    PLATFORM_REJECTED = "platform_rejected"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


class BackorderPolicy(str, Enum):
    """Whether a variant may be sold with no stock on hand."""
    DENY = "deny"
    CONTINUE = "continue"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BackorderPolicy":
        if value and str(value).lower() == cls.CONTINUE.value:
            return cls.CONTINUE
        return cls.DENY


class VariantVisibility(str, Enum):
    """Read-API view of a platform variant."""
    ACCESSIBLE = "accessible"
    NOT_FOUND = "not_found"
    NOT_FOR_SALE = "not_for_sale"


# =============================================================================
# Reference data
# =============================================================================

@dataclass(frozen=True)
class MarketConfig:
    """Immutable market reference entry."""
    code: str
    name: str
    currency: str
    locale: str
    shipping_estimate: Decimal = Decimal("2.90")
    delivery_estimate_days: str = "7-10"
    supported: bool = True


@dataclass(frozen=True)
class LocationEligibility:
    """Which markets a fulfillment location may serve, and at what rank."""
    location_id: str
    name: str
    markets: FrozenSet[str]
    priority: int

    def serves(self, market: str) -> bool:
        return GLOBAL_MARKET in self.markets or market in self.markets


# =============================================================================
# Catalog records
# =============================================================================

@dataclass(frozen=True)
class MarketAvailability:
    """Normalised market-eligibility data for a product.

    Catalog documents carry either a list of market codes or a map of
    ``{code: {"available": bool}}``. Both shapes are folded into one set of
    eligible codes here; no other module inspects the raw shapes.
    """
    markets: FrozenSet[str] = frozenset()
    overrides: Mapping[str, bool] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "MarketAvailability":
        markets_object = document.get("marketsObject")
        if isinstance(markets_object, Mapping) and markets_object:
            overrides: Dict[str, bool] = {}
            for code, entry in markets_object.items():
                available = True
                if isinstance(entry, Mapping):
                    available = entry.get("available") is not False
                elif isinstance(entry, bool):
                    available = entry
                overrides[_normalize_code(code)] = available
            eligible = frozenset(code for code, ok in overrides.items() if ok)
            return cls(markets=eligible, overrides=overrides)

        markets_list = document.get("markets")
        if isinstance(markets_list, (list, tuple, set, frozenset)):
            return cls(markets=frozenset(_normalize_code(c) for c in markets_list if c))

        return cls()

    def is_eligible(self, market: str) -> bool:
        return _normalize_code(market) in self.markets


@dataclass
class ProductRecord:
    """Product document from the catalog store."""
    product_id: str
    name: str = ""
    availability: MarketAvailability = field(default_factory=MarketAvailability)
    active: bool = True
    platform_product_ref: Optional[str] = None

    @classmethod
    def from_document(cls, product_id: str, document: Mapping[str, Any]) -> "ProductRecord":
        status = document.get("status")
        active = document.get("active", True) is not False
        if status is not None and str(status).lower() not in ("active", "published"):
            active = False
        return cls(
            product_id=str(product_id),
            name=str(document.get("name") or document.get("title") or ""),
            availability=MarketAvailability.from_document(document),
            active=active,
            platform_product_ref=_stringify_ref(
                document.get("platformProductRef", document.get("shopifyProductId"))
            ),
        )


@dataclass
class VariantRecord:
    """Variant document from the catalog store."""
    variant_id: str
    product_id: str
    title: str = ""
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = 0  # informational; the platform holds authoritative stock
    platform_variant_ref: Optional[str] = None

    @classmethod
    def from_document(
        cls, product_id: str, variant_id: str, document: Mapping[str, Any]
    ) -> "VariantRecord":
        ref = document.get("platformVariantRef")
        if ref is None:
            ref = document.get("shopifyVariantId")
        try:
            stock = int(document.get("stock") or 0)
        except (TypeError, ValueError):
            stock = 0
        return cls(
            variant_id=str(variant_id),
            product_id=str(product_id),
            title=str(document.get("title") or ""),
            size=document.get("size"),
            color=document.get("color"),
            stock=stock,
            platform_variant_ref=_stringify_ref(ref),
        )


# =============================================================================
# Platform inventory
# =============================================================================

@dataclass(frozen=True)
class InventoryLevel:
    """Stock at one location."""
    location_id: str
    available: int
    location_name: Optional[str] = None


@dataclass
class VariantInventory:
    """Platform-side inventory snapshot for one variant."""
    platform_variant_ref: str
    levels: List[InventoryLevel] = field(default_factory=list)
    backorder_policy: BackorderPolicy = BackorderPolicy.DENY
    title: Optional[str] = None
    tracked: bool = True


@dataclass
class ProductPublication:
    """Per-market publication status of a platform product."""
    platform_product_ref: str
    markets: Dict[str, bool] = field(default_factory=dict)
    online_store: bool = False
    title: Optional[str] = None

    @property
    def published_markets(self) -> List[str]:
        return sorted(code for code, published in self.markets.items() if published)


# =============================================================================
# Requests
# =============================================================================

@dataclass
class CartLineItem:
    """One cart line as submitted by the client."""
    product_id: str
    variant_id: str
    quantity: int
    platform_variant_ref: Optional[str] = None
    title: Optional[str] = None

    def __post_init__(self) -> None:
        from storefront_checkout.errors import InvalidCartError

        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise InvalidCartError(
                f"Quantity for variant {self.variant_id} must be an integer",
                items=[{"productId": self.product_id, "variantId": self.variant_id}],
            )
        if self.quantity <= 0:
            raise InvalidCartError(
                f"Quantity for variant {self.variant_id} must be positive "
                f"(got {self.quantity})",
                items=[{"productId": self.product_id, "variantId": self.variant_id}],
            )
        self.product_id = str(self.product_id)
        self.variant_id = str(self.variant_id)
        self.platform_variant_ref = _stringify_ref(self.platform_variant_ref)

    def with_ref(self, platform_variant_ref: str) -> "CartLineItem":
        return CartLineItem(
            product_id=self.product_id,
            variant_id=self.variant_id,
            quantity=self.quantity,
            platform_variant_ref=platform_variant_ref,
            title=self.title,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "variantId": self.variant_id,
            "quantity": self.quantity,
            "platformVariantRef": self.platform_variant_ref,
            "title": self.title,
        }


@dataclass
class ShippingAddress:
    """Destination for a checkout."""
    country_code: str
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    province: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    def __post_init__(self) -> None:
        self.country_code = _normalize_code(self.country_code) if self.country_code else ""

    @property
    def has_street_address(self) -> bool:
        return bool(self.address1 and self.city)


@dataclass(frozen=True)
class CheckoutContext:
    """Tenant and market a request is served under."""
    tenant: str
    market: str

    def __post_init__(self) -> None:
        if not self.tenant or not self.market:
            raise ValueError("tenant and market must both be non-empty")
        object.__setattr__(self, "tenant", _normalize_code(self.tenant))
        object.__setattr__(self, "market", _normalize_code(self.market))


# =============================================================================
# Verdicts
# =============================================================================

@dataclass
class CheckoutIssue:
    """A single reason the cart cannot proceed."""
    kind: FailureKind
    message: str
    index: Optional[int] = None
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    platform_variant_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def item_ref(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "productId": self.product_id,
            "variantId": self.variant_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "kind": self.kind.value,
            "message": self.message,
            "index": self.index,
            "productId": self.product_id,
            "variantId": self.variant_id,
            "platformVariantRef": self.platform_variant_ref,
        }
        if self.details:
            result["details"] = self.details
        return result


@dataclass
class EligibilityItemResult:
    index: int
    product_id: str
    eligible: bool
    reason: Optional[str] = None


@dataclass
class EligibilityResult:
    """Market eligibility per cart line."""
    market: str
    items: List[EligibilityItemResult] = field(default_factory=list)
    issues: List[CheckoutIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "market": self.market,
            "items": [
                {"index": i.index, "productId": i.product_id, "eligible": i.eligible, "reason": i.reason}
                for i in self.items
            ],
            "errors": [issue.message for issue in self.issues],
        }


@dataclass
class InventoryItemResult:
    index: int
    product_id: str
    variant_id: str
    requested: int
    available: int = 0
    backorder: bool = False
    purchasable: bool = False
    checked: bool = True
    platform_variant_ref: Optional[str] = None
    tracked: bool = True


@dataclass
class InventoryResult:
    """Per-market stock check per cart line."""
    market: str
    items: List[InventoryItemResult] = field(default_factory=list)
    issues: List[CheckoutIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "market": self.market,
            "items": [
                {
                    "index": i.index,
                    "productId": i.product_id,
                    "variantId": i.variant_id,
                    "requested": i.requested,
                    "available": i.available,
                    "backorder": i.backorder,
                    "purchasable": i.purchasable,
                    "checked": i.checked,
                    "tracked": i.tracked,
                }
                for i in self.items
            ],
            "errors": [issue.message for issue in self.issues],
        }


@dataclass
class ShippingResult:
    """Destination shipping feasibility."""
    skipped: bool = False
    country: Optional[str] = None
    estimate: Optional[Decimal] = None
    currency: Optional[str] = None
    delivery_estimate_days: Optional[str] = None
    source: Optional[str] = None
    issues: List[CheckoutIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "skipped": self.skipped,
            "country": self.country,
            "estimate": str(self.estimate) if self.estimate is not None else None,
            "currency": self.currency,
            "deliveryEstimateDays": self.delivery_estimate_days,
            "errors": [issue.message for issue in self.issues],
        }


@dataclass
class CheckoutVerdict:
    """Combined outcome of validating one cart. Never persisted."""
    market: str
    eligibility: EligibilityResult
    inventory: InventoryResult
    shipping: ShippingResult
    line_items: List[CartLineItem] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.eligibility.valid and self.inventory.valid and self.shipping.valid

    @property
    def issues(self) -> List[CheckoutIssue]:
        return [*self.eligibility.issues, *self.inventory.issues, *self.shipping.issues]

    @property
    def messages(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "market": self.market,
            "errors": self.messages,
            "issues": [issue.to_dict() for issue in self.issues],
            "checks": {
                "marketEligibility": self.eligibility.to_dict(),
                "inventory": self.inventory.to_dict(),
                "shipping": self.shipping.to_dict(),
            },
        }


# =============================================================================
# Sessions
# =============================================================================

@dataclass
class SessionRequest:
    """What the platform needs to open a checkout session."""
    line_items: List[CartLineItem]
    market: str
    tenant: str
    buyer_country: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    """A transactable session created on the commerce platform."""
    session_id: str
    redirect_url: str
    line_items: List[CartLineItem] = field(default_factory=list)
    market: str = ""
    tenant: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    enriched: bool = False
    is_duplicate: bool = False
    idempotency_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "redirectUrl": self.redirect_url,
            "market": self.market,
            "tenant": self.tenant,
            "createdAt": self.created_at.isoformat(),
            "enriched": self.enriched,
            "lineItems": [item.to_dict() for item in self.line_items],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckoutSession":
        created_at = data.get("createdAt")
        return cls(
            session_id=data["sessionId"],
            redirect_url=data["redirectUrl"],
            market=data.get("market", ""),
            tenant=data.get("tenant", ""),
            created_at=datetime.fromisoformat(created_at) if created_at else _utcnow(),
            enriched=bool(data.get("enriched", False)),
            line_items=[
                CartLineItem(
                    product_id=item["productId"],
                    variant_id=item["variantId"],
                    quantity=item["quantity"],
                    platform_variant_ref=item.get("platformVariantRef"),
                    title=item.get("title"),
                )
                for item in data.get("lineItems", [])
            ],
        )


@dataclass
class IdempotencyRecord:
    """Record for tracking idempotent session creation."""
    idempotency_key: str
    operation: str
    request_hash: str
    response: Optional[Dict[str, Any]] = None
    status: str = "pending"  # pending, completed, failed
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    expires_at: datetime = field(
        default_factory=lambda: _utcnow() + timedelta(hours=DEFAULT_IDEMPOTENCY_TTL_HOURS)
    )
    tenant: Optional[str] = None
    session_id: Optional[str] = None
