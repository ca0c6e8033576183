"""Exception hierarchy for checkout validation and session creation.

Every checkout error carries:
- error_code: machine-readable code (e.g. "INDEXING_DELAY")
- http_status: status the HTTP layer responds with
- retryable: whether the same request may succeed later
- retry_after: suggested wait in seconds for retryable errors
- items: identifiers of the affected cart lines
- to_dict(): API response shape

Per-item problems found while validating a cart are not raised; they are
collected as ``CheckoutIssue`` values on the verdict. The classes below are
raised for request-level failures and for single-item failures produced by
the resolver and the platform connector.

Usage:
    from storefront_checkout.errors import CheckoutError, IndexingDelayError

    try:
        session = await orchestrator.create_session(cart, destination, context)
    except IndexingDelayError as e:
        schedule_retry(after=e.retry_after)
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from storefront_checkout.models import CheckoutIssue, FailureKind

if TYPE_CHECKING:
    from storefront_checkout.models import CheckoutVerdict


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    error_code: str = "CHECKOUT_ERROR"
    http_status: int = 500
    retryable: bool = False
    kind: Optional[FailureKind] = None

    def __init__(
        self,
        message: str,
        items: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.items = items or []
        self.details = details or {}
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API response format."""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retryAfter"] = self.retry_after
        if self.items:
            result["items"] = self.items
        if self.details:
            result["details"] = self.details
        return result

    def to_issue(
        self,
        index: Optional[int] = None,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        platform_variant_ref: Optional[str] = None,
    ) -> CheckoutIssue:
        """Turn a single-item error into a verdict issue."""
        return CheckoutIssue(
            kind=self.kind or FailureKind.PLATFORM_REJECTED,
            message=self.message,
            index=index,
            product_id=product_id,
            variant_id=variant_id,
            platform_variant_ref=platform_variant_ref,
            details=dict(self.details),
        )


class InvalidCartError(CheckoutError):
    """Malformed cart or destination input."""

    error_code = "INVALID_CART"
    http_status = 400


# =============================================================================
# Catalog errors
# =============================================================================

class NotFoundError(CheckoutError):
    """Referenced product or variant is absent."""

    error_code = "NOT_FOUND"
    http_status = 404
    kind = FailureKind.NOT_FOUND

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(
            message or f"{resource_type} '{resource_id}' not found",
            items=[{resource_type: resource_id}],
            details=details,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class UnlinkedVariantError(CheckoutError):
    """Catalog variant has no platform reference.

    A setup problem (the catalog/platform link was never established), not a
    stock-out: operators fix the catalog rather than wait for restock.
    """

    error_code = "UNLINKED_VARIANT"
    http_status = 422
    kind = FailureKind.UNLINKED_VARIANT

    def __init__(self, tenant: str, product_id: str, variant_id: str) -> None:
        super().__init__(
            f"Variant {variant_id} of product {product_id} is not linked to the "
            f"commerce platform and cannot be checked out",
            items=[{"productId": product_id, "variantId": variant_id}],
            details={"tenant": tenant},
        )
        self.product_id = product_id
        self.variant_id = variant_id


# =============================================================================
# Validation errors
# =============================================================================

class CheckoutValidationFailed(CheckoutError):
    """Cart failed validation; the verdict lists every problem."""

    error_code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, verdict: "CheckoutVerdict") -> None:
        items = [issue.item_ref() for issue in verdict.issues if issue.index is not None]
        super().__init__(
            "; ".join(verdict.messages) or "Checkout validation failed",
            items=items,
            details={"verdict": verdict.to_dict()},
        )
        self.verdict = verdict


# =============================================================================
# Platform errors
# =============================================================================

class IndexingDelayError(CheckoutError):
    """The read API has not caught up with a recent write.

    Always retryable; carries a fixed suggested wait.
    """

    error_code = "INDEXING_DELAY"
    http_status = 503
    retryable = True
    kind = FailureKind.INDEXING_DELAY

    def __init__(
        self,
        message: str = (
            "Some products are still being prepared for checkout. "
            "Please wait a moment and try again."
        ),
        items: Optional[List[Dict[str, Any]]] = None,
        retry_after: int = 30,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, items=items, details=details, retry_after=retry_after)


class VariantsNotForSaleError(CheckoutError):
    """Variants exist on the platform but are not available for sale."""

    error_code = "NOT_FOR_SALE"
    http_status = 409
    kind = FailureKind.NOT_FOR_SALE

    def __init__(self, items: List[Dict[str, Any]]) -> None:
        super().__init__(
            "Some products in your cart are no longer available.",
            items=items,
        )


class PlatformRejectedError(CheckoutError):
    """Platform declined the request for a reason other than indexing."""

    error_code = "PLATFORM_REJECTED"
    http_status = 502
    kind = FailureKind.PLATFORM_REJECTED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_errors: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if user_errors:
            details["user_errors"] = user_errors
        super().__init__(message, details=details)
        self.status_code = status_code
        self.user_errors = user_errors or []


class PlatformItemNotFoundError(PlatformRejectedError):
    """Platform reported that a referenced item does not exist.

    Indistinguishable between "truly gone" and "not yet indexed"; the
    orchestrator treats it as an indexing delay.
    """

    error_code = "PLATFORM_ITEM_NOT_FOUND"


class UpstreamUnavailableError(CheckoutError):
    """Network or 5xx failure talking to the catalog store or the platform."""

    error_code = "UPSTREAM_UNAVAILABLE"
    http_status = 503
    retryable = True
    kind = FailureKind.UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        retry_after: int = 2,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["service"] = service
        super().__init__(
            message or f"{service} is temporarily unavailable",
            details=details,
            retry_after=retry_after,
        )
        self.service = service
