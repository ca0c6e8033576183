"""API composition root."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from storefront_checkout.api import (
    CheckoutDependencies,
    get_deps,
    register_exception_handlers,
    router,
)
from storefront_checkout.catalog import CatalogStore, HttpCatalogStore, InMemoryCatalogStore
from storefront_checkout.config import CheckoutSettings, load_settings
from storefront_checkout.connectors.shopify import ShopifyConnector
from storefront_checkout.context import ContextResolver
from storefront_checkout.idempotency import IdempotencyManager, InMemoryIdempotencyStore
from storefront_checkout.inventory import LocationMarketTable, MarketInventoryAggregator
from storefront_checkout.logging_config import (
    clear_context,
    generate_request_id,
    set_request_id,
    setup_logging,
)
from storefront_checkout.markets import MarketRegistry
from storefront_checkout.orchestrator import CheckoutSessionOrchestrator
from storefront_checkout.resolver import VariantIdentifierResolver
from storefront_checkout.shipping import ShippingChecker, StaticShippingRateProvider
from storefront_checkout.validator import CheckoutValidator

logger = logging.getLogger("storefront_checkout.api")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs one line per request."""

    def __init__(self, app, exclude_paths: Optional[list[str]] = None):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths or [])

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or generate_request_id()
        set_request_id(request_id)
        started = time.monotonic()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            if request.url.path not in self.exclude_paths:
                logger.info(
                    f"{request.method} {request.url.path} {response.status_code}",
                    extra={
                        "status_code": response.status_code,
                        "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    },
                )
            return response
        finally:
            clear_context()


def build_dependencies(settings: CheckoutSettings) -> CheckoutDependencies:
    """Wire production collaborators from settings."""
    markets = MarketRegistry.from_settings(settings)

    catalog: CatalogStore
    if settings.catalog_base_url:
        catalog = HttpCatalogStore(
            settings.catalog_base_url,
            token=settings.catalog_token or None,
            timeout=settings.catalog_timeout_seconds,
            retry_after=settings.upstream_retry_after_seconds,
        )
    else:
        logger.warning("No catalog_base_url configured; using an empty in-memory catalog")
        catalog = InMemoryCatalogStore()

    platform = ShopifyConnector(
        store_domain=settings.platform_store_domain,
        storefront_token=settings.platform_storefront_token,
        admin_token=settings.platform_admin_token or None,
        api_version=settings.platform_api_version,
        timeout=settings.platform_timeout_seconds,
        retry_after=settings.upstream_retry_after_seconds,
        online_store_publication=settings.online_store_publication,
    )

    validator = CheckoutValidator(
        catalog=catalog,
        platform=platform,
        aggregator=MarketInventoryAggregator(LocationMarketTable.from_settings(settings)),
        shipping=ShippingChecker(markets, StaticShippingRateProvider(settings.shipping_rates)),
        resolver=VariantIdentifierResolver(catalog, settings.max_concurrency),
        max_concurrency=settings.max_concurrency,
    )
    orchestrator = CheckoutSessionOrchestrator(
        validator=validator,
        platform=platform,
        idempotency_manager=IdempotencyManager(
            InMemoryIdempotencyStore(),
            default_ttl_hours=settings.idempotency_ttl_hours,
        ),
        verify_batch_size=settings.verify_batch_size,
        max_concurrency=settings.max_concurrency,
        indexing_retry_after=settings.indexing_retry_after_seconds,
        checkout_domain=settings.checkout_domain,
        return_url=settings.return_url,
        return_path_prefix=settings.return_path_prefix,
    )
    return CheckoutDependencies(
        settings=settings,
        context_resolver=ContextResolver(settings, markets),
        validator=validator,
        orchestrator=orchestrator,
        catalog=catalog,
        platform=platform,
    )


def create_app(
    settings: CheckoutSettings | None = None,
    dependencies: CheckoutDependencies | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(level=settings.log_level, json_format=settings.json_logs)
    deps = dependencies or build_dependencies(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting checkout service ({settings.environment})")
        yield
        logger.info("Shutting down checkout service...")
        await deps.platform.close()
        await deps.catalog.close()

    app = FastAPI(
        title="Storefront Checkout API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware, exclude_paths=["/health"])
    register_exception_handlers(app)
    app.include_router(router)
    app.dependency_overrides[get_deps] = lambda: deps
    app.state.deps = deps
    return app


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    uvicorn.run(
        "storefront_checkout.app:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
    )
