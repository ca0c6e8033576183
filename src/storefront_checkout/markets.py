"""Market reference data."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from storefront_checkout.config import CheckoutSettings
from storefront_checkout.models import MarketConfig


class MarketRegistry:
    """Lookup table of markets the storefront knows about.

    A market may be known (it has reference data) without being supported
    (open for checkout). Lookups are case-insensitive.
    """

    def __init__(
        self,
        configs: Iterable[MarketConfig],
        supported: Optional[Iterable[str]] = None,
    ) -> None:
        self._configs: Dict[str, MarketConfig] = {c.code.upper(): c for c in configs}
        if supported is None:
            self._supported = frozenset(
                code for code, config in self._configs.items() if config.supported
            )
        else:
            self._supported = frozenset(code.upper() for code in supported)

    @classmethod
    def from_settings(cls, settings: CheckoutSettings) -> "MarketRegistry":
        configs = [
            MarketConfig(
                code=m.code,
                name=m.name,
                currency=m.currency,
                locale=m.locale,
                shipping_estimate=m.shipping_estimate,
                delivery_estimate_days=m.delivery_estimate_days,
            )
            for m in settings.markets
        ]
        return cls(configs, supported=settings.supported_markets)

    def get(self, code: Optional[str]) -> Optional[MarketConfig]:
        if not code:
            return None
        return self._configs.get(code.upper())

    def is_supported(self, code: Optional[str]) -> bool:
        return bool(code) and code.upper() in self._supported and code.upper() in self._configs

    def currency_for(self, code: str) -> Optional[str]:
        config = self.get(code)
        return config.currency if config else None

    def shipping_estimate(self, code: str) -> Optional[Decimal]:
        config = self.get(code)
        return config.shipping_estimate if config else None

    @property
    def supported_codes(self) -> List[str]:
        return sorted(code for code in self._supported if code in self._configs)
