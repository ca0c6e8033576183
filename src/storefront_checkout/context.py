"""Tenant and market resolution for incoming requests.

Precedence for each value:
1. pinned session value (cookie)
2. path-derived tenant segment (tenant only)
3. geolocation country (market only)
4. static default

Resolution is pure: no I/O, just request metadata plus settings. Values that
were derived rather than read from a pin are returned in ``pins`` so the
caller can persist them; once pinned they are never silently replaced.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from storefront_checkout.config import CheckoutSettings
from storefront_checkout.markets import MarketRegistry
from storefront_checkout.models import CheckoutContext

logger = logging.getLogger(__name__)


@dataclass
class RequestMetadata:
    """What the resolver can see of a request."""
    path: str = "/"
    pinned_tenant: Optional[str] = None
    pinned_market: Optional[str] = None
    geo_country: Optional[str] = None
    referer: Optional[str] = None


@dataclass
class ResolvedContext:
    tenant: str
    market: str
    market_supported: bool = True
    tenant_source: str = "default"
    market_source: str = "default"
    pins: Dict[str, str] = field(default_factory=dict)

    @property
    def context(self) -> CheckoutContext:
        return CheckoutContext(tenant=self.tenant, market=self.market)


def _segments(path_or_url: Optional[str]) -> List[str]:
    if not path_or_url:
        return []
    path = urlsplit(path_or_url).path if "://" in path_or_url else path_or_url.split("?", 1)[0]
    return [segment for segment in path.split("/") if segment]


class ContextResolver:
    """Resolves ``(tenant, market)`` for a request."""

    TENANT = "tenant"
    MARKET = "market"

    def __init__(self, settings: CheckoutSettings, markets: MarketRegistry) -> None:
        self.settings = settings
        self.markets = markets
        self._excluded = frozenset(settings.excluded_path_segments)
        self._subflows = frozenset(settings.checkout_subflow_segments)
        self._known = frozenset(settings.known_tenants)

    def is_subflow(self, path: Optional[str]) -> bool:
        segments = _segments(path)
        return bool(segments) and segments[0].lower() in self._subflows

    def tenant_from_path(self, path: Optional[str]) -> Optional[str]:
        """First path segment as a tenant code, unless excluded or unknown."""
        segments = _segments(path)
        if not segments:
            return None
        first = segments[0]
        lowered = first.lower()
        if lowered in self._excluded or lowered in self._subflows:
            return None
        candidate = first.upper()
        if self._known and candidate not in self._known:
            return None
        return candidate

    def resolve(self, request: RequestMetadata) -> ResolvedContext:
        pins: Dict[str, str] = {}

        tenant, tenant_source = self._resolve_tenant(request)
        if tenant_source != "pinned":
            pins[self.TENANT] = tenant

        market, market_source, supported = self._resolve_market(request)
        if market_source != "pinned" and supported:
            pins[self.MARKET] = market

        resolved = ResolvedContext(
            tenant=tenant,
            market=market,
            market_supported=supported,
            tenant_source=tenant_source,
            market_source=market_source,
            pins=pins,
        )
        logger.debug(
            "Resolved context",
            extra={
                "tenant_source": tenant_source,
                "market_source": market_source,
                "market_supported": supported,
            },
        )
        return resolved

    def _resolve_tenant(self, request: RequestMetadata) -> tuple[str, str]:
        pinned = (request.pinned_tenant or "").strip().upper()
        if pinned:
            return pinned, "pinned"

        if not self.is_subflow(request.path):
            from_path = self.tenant_from_path(request.path)
            if from_path:
                return from_path, "path"
            if request.referer and not self.is_subflow(request.referer):
                from_referer = self.tenant_from_path(request.referer)
                if from_referer:
                    return from_referer, "referer"

        return self.settings.default_tenant, "default"

    def _resolve_market(self, request: RequestMetadata) -> tuple[str, str, bool]:
        pinned = (request.pinned_market or "").strip().upper()
        if pinned:
            if self.markets.is_supported(pinned):
                return pinned, "pinned", True
            logger.info(f"Ignoring pinned market {pinned}: no longer supported")

        geo = (request.geo_country or "").strip().upper()
        if geo:
            if self.markets.is_supported(geo):
                return geo, "geo", True
            return self.settings.default_market, "geo", False

        return self.settings.default_market, "default", True
