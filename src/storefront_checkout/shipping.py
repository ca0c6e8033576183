"""Shipping feasibility and rate lookup."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Mapping, Optional

from storefront_checkout.errors import UpstreamUnavailableError
from storefront_checkout.markets import MarketRegistry
from storefront_checkout.models import (
    CheckoutIssue,
    FailureKind,
    ShippingAddress,
    ShippingResult,
)

logger = logging.getLogger(__name__)


class ShippingRateProvider(ABC):
    """Source of per-country standard shipping rates."""

    @abstractmethod
    async def get_rate(self, country_code: str) -> Optional[Decimal]:
        """Standard rate for a country, or None when no rate is configured."""
        pass


class StaticShippingRateProvider(ShippingRateProvider):
    """Rates from configuration."""

    def __init__(self, rates: Optional[Mapping[str, Decimal]] = None) -> None:
        self._rates: Dict[str, Decimal] = {
            code.upper(): Decimal(str(rate)) for code, rate in (rates or {}).items()
        }

    async def get_rate(self, country_code: str) -> Optional[Decimal]:
        return self._rates.get(country_code.upper())


class ShippingChecker:
    """Decides whether the destination can be shipped to, and at what estimate."""

    def __init__(
        self,
        markets: MarketRegistry,
        provider: Optional[ShippingRateProvider] = None,
    ) -> None:
        self.markets = markets
        self.provider = provider or StaticShippingRateProvider()

    async def _estimate(self, country: str) -> tuple[Optional[Decimal], str]:
        try:
            rate = await self.provider.get_rate(country)
        except UpstreamUnavailableError as e:
            logger.warning(f"Shipping rate lookup failed for {country}, using market estimate: {e}")
            rate = None
        if rate is not None:
            return rate, "rate_table"
        return self.markets.shipping_estimate(country), "market_default"

    async def check(self, destination: Optional[ShippingAddress]) -> ShippingResult:
        if destination is None or not destination.country_code:
            return ShippingResult(skipped=True)

        country = destination.country_code
        config = self.markets.get(country)
        if config is None or not self.markets.is_supported(country):
            return ShippingResult(
                country=country,
                issues=[
                    CheckoutIssue(
                        kind=FailureKind.SHIPPING_UNAVAILABLE,
                        message=f"Shipping to {country} is not available",
                        details={"country": country},
                    )
                ],
            )

        estimate, source = await self._estimate(country)
        result = ShippingResult(
            country=country,
            estimate=estimate,
            currency=config.currency,
            delivery_estimate_days=config.delivery_estimate_days,
            source=source,
        )
        if estimate is None or estimate < 0:
            result.issues.append(
                CheckoutIssue(
                    kind=FailureKind.SHIPPING_UNAVAILABLE,
                    message=f"No shipping rate available for {country}",
                    details={"country": country, "estimate": str(estimate)},
                )
            )
        return result
