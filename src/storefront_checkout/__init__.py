"""Checkout validation and fulfillment resolution for multi-tenant storefronts."""
from storefront_checkout.config import CheckoutSettings, load_settings
from storefront_checkout.errors import (
    CheckoutError,
    CheckoutValidationFailed,
    IndexingDelayError,
    InvalidCartError,
    NotFoundError,
    PlatformItemNotFoundError,
    PlatformRejectedError,
    UnlinkedVariantError,
    UpstreamUnavailableError,
    VariantsNotForSaleError,
)
from storefront_checkout.models import (
    CartLineItem,
    CheckoutContext,
    CheckoutSession,
    CheckoutVerdict,
    FailureKind,
    ShippingAddress,
)
from storefront_checkout.orchestrator import CheckoutSessionOrchestrator
from storefront_checkout.validator import CheckoutValidator

__version__ = "0.1.0"

__all__ = [
    "CartLineItem",
    "CheckoutContext",
    "CheckoutError",
    "CheckoutSession",
    "CheckoutSessionOrchestrator",
    "CheckoutSettings",
    "CheckoutValidationFailed",
    "CheckoutValidator",
    "CheckoutVerdict",
    "FailureKind",
    "IndexingDelayError",
    "InvalidCartError",
    "NotFoundError",
    "PlatformItemNotFoundError",
    "PlatformRejectedError",
    "ShippingAddress",
    "UnlinkedVariantError",
    "UpstreamUnavailableError",
    "VariantsNotForSaleError",
    "load_settings",
]
