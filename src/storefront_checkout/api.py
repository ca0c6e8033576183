"""Checkout HTTP endpoints."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from storefront_checkout.catalog import CatalogStore
from storefront_checkout.config import CheckoutSettings
from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.context import ContextResolver, RequestMetadata, ResolvedContext
from storefront_checkout.errors import CheckoutError, InvalidCartError
from storefront_checkout.logging_config import bind_context, get_request_id
from storefront_checkout.models import CartLineItem, CheckoutContext, ShippingAddress
from storefront_checkout.orchestrator import CheckoutSessionOrchestrator
from storefront_checkout.validator import CheckoutValidator

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response Models
class CartItemIn(BaseModel):
    productId: str
    variantId: str
    quantity: int
    platformVariantRef: Optional[Union[str, int]] = None
    title: Optional[str] = None


class DestinationIn(BaseModel):
    countryCode: Optional[str] = None
    country: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    province: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None


class AttributeIn(BaseModel):
    key: str
    value: str


class ValidateCheckoutRequest(BaseModel):
    cart: List[CartItemIn] = Field(default_factory=list)
    destination: Optional[DestinationIn] = None
    tenant: Optional[str] = None
    market: Optional[str] = None


class CreateSessionRequest(ValidateCheckoutRequest):
    customAttributes: Union[Dict[str, str], List[AttributeIn]] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    sessionId: str
    redirectUrl: str
    market: str
    tenant: str
    enriched: bool = False
    duplicate: bool = False


@dataclass
class CheckoutDependencies:
    settings: CheckoutSettings
    context_resolver: ContextResolver
    validator: CheckoutValidator
    orchestrator: CheckoutSessionOrchestrator
    catalog: CatalogStore
    platform: CommercePlatformConnector


def get_deps() -> CheckoutDependencies:
    raise NotImplementedError("Dependency override required")


def _to_cart(items: List[CartItemIn]) -> List[CartLineItem]:
    if not items:
        raise InvalidCartError("Cart is required and must not be empty")
    return [
        CartLineItem(
            product_id=item.productId,
            variant_id=item.variantId,
            quantity=item.quantity,
            platform_variant_ref=item.platformVariantRef,
            title=item.title,
        )
        for item in items
    ]


def _to_destination(destination: Optional[DestinationIn]) -> Optional[ShippingAddress]:
    if destination is None:
        return None
    country = destination.countryCode or destination.country
    if not country:
        return None
    return ShippingAddress(
        country_code=country,
        address1=destination.address1,
        address2=destination.address2,
        city=destination.city,
        zip=destination.zip,
        province=destination.province,
        first_name=destination.firstName,
        last_name=destination.lastName,
        phone=destination.phone,
    )


def _to_attributes(attributes: Union[Dict[str, str], List[AttributeIn]]) -> Dict[str, str]:
    if isinstance(attributes, dict):
        return dict(attributes)
    return {attr.key: attr.value for attr in attributes}


def resolve_request_context(
    request: Request,
    body: ValidateCheckoutRequest,
    deps: CheckoutDependencies,
) -> tuple[CheckoutContext, Optional[ResolvedContext]]:
    """Explicit tenant/market in the body win; otherwise resolve from the request."""
    settings = deps.settings
    if body.tenant and body.market:
        context = CheckoutContext(tenant=body.tenant, market=body.market)
        bind_context(context.tenant, context.market)
        return context, None

    metadata = RequestMetadata(
        path=request.headers.get("x-pathname") or request.headers.get("referer") or "/",
        pinned_tenant=body.tenant or request.cookies.get(settings.tenant_cookie),
        pinned_market=body.market or request.cookies.get(settings.market_cookie),
        geo_country=request.headers.get(settings.geo_header),
        referer=request.headers.get("referer"),
    )
    resolved = deps.context_resolver.resolve(metadata)
    bind_context(resolved.tenant, resolved.market)
    return resolved.context, resolved


def _write_pins(response: Response, resolved: Optional[ResolvedContext], settings: CheckoutSettings) -> None:
    if resolved is None:
        return
    cookie_names = {
        ContextResolver.TENANT: settings.tenant_cookie,
        ContextResolver.MARKET: settings.market_cookie,
    }
    for key, value in resolved.pins.items():
        response.set_cookie(
            cookie_names[key],
            value,
            max_age=settings.cookie_max_age_seconds,
            path="/",
            samesite="lax",
            secure=settings.is_production,
        )


@router.post("/checkout/validate")
async def validate_checkout(
    body: ValidateCheckoutRequest,
    request: Request,
    response: Response,
    deps: CheckoutDependencies = Depends(get_deps),
) -> Dict[str, Any]:
    """
    Validate a cart for a destination.

    Always 200 when the cart could be evaluated; ``valid`` tells whether it
    may proceed and ``issues`` lists every problem found.
    """
    cart = _to_cart(body.cart)
    context, resolved = resolve_request_context(request, body, deps)
    verdict = await deps.validator.validate(cart, _to_destination(body.destination), context)
    _write_pins(response, resolved, deps.settings)
    return verdict.to_dict()


@router.post(
    "/checkout/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout_session(
    body: CreateSessionRequest,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    deps: CheckoutDependencies = Depends(get_deps),
) -> SessionResponse:
    """
    Create a hosted checkout session.

    Retryable outcomes (indexing delay, upstream outage) come back as 503
    with a ``Retry-After`` header.
    """
    cart = _to_cart(body.cart)
    context, resolved = resolve_request_context(request, body, deps)
    session = await deps.orchestrator.create_session(
        cart,
        _to_destination(body.destination),
        context,
        custom_attributes=_to_attributes(body.customAttributes),
        idempotency_key=idempotency_key,
    )
    _write_pins(response, resolved, deps.settings)
    return SessionResponse(
        sessionId=session.session_id,
        redirectUrl=session.redirect_url,
        market=session.market,
        tenant=session.tenant,
        enriched=session.enriched,
        duplicate=session.is_duplicate,
    )


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


# =============================================================================
# Error rendering
# =============================================================================

async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    body = exc.to_dict()
    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id

    headers: Dict[str, str] = {}
    if exc.retryable and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)

    log = logger.error if exc.http_status >= 500 and not exc.retryable else logger.info
    log(
        f"{request.method} {request.url.path} -> {exc.http_status} {exc.error_code}",
        extra={"error_code": exc.error_code, "retryable": exc.retryable},
    )
    return JSONResponse(status_code=exc.http_status, content=body, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidCartError(
        "Invalid request body",
        details={"errors": [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
        ]},
    )
    return await checkout_error_handler(request, error)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
