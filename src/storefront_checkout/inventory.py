"""
Market-scoped inventory aggregation.

Each fulfillment location serves a set of markets (or every market via the
``GLOBAL`` sentinel). The quantity a market can buy is the sum of stock at
the locations that serve it; stock at other locations does not count.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from storefront_checkout.config import CheckoutSettings
from storefront_checkout.models import (
    GLOBAL_MARKET,
    BackorderPolicy,
    LocationEligibility,
    VariantInventory,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationContribution:
    location_id: str
    location_name: Optional[str]
    priority: int
    available: int


class LocationMarketTable:
    """Immutable location -> markets eligibility table.

    Priority must be a total order per market: two locations that can both
    serve some market may not share a rank.
    """

    def __init__(self, locations: Iterable[LocationEligibility]) -> None:
        self._locations: Dict[str, LocationEligibility] = {}
        for location in locations:
            if location.location_id in self._locations:
                raise ValueError(f"Duplicate location id {location.location_id}")
            self._locations[location.location_id] = location
        self._check_priorities()

    @classmethod
    def from_settings(cls, settings: CheckoutSettings) -> "LocationMarketTable":
        return cls(
            LocationEligibility(
                location_id=loc.location_id,
                name=loc.name or loc.location_id,
                markets=frozenset(loc.markets),
                priority=loc.priority,
            )
            for loc in settings.locations
        )

    def _check_priorities(self) -> None:
        locations = list(self._locations.values())
        for i, first in enumerate(locations):
            for second in locations[i + 1:]:
                if first.priority != second.priority:
                    continue
                if self._overlap(first, second):
                    raise ValueError(
                        f"Locations {first.location_id} and {second.location_id} "
                        f"share priority {first.priority} for a common market"
                    )

    @staticmethod
    def _overlap(first: LocationEligibility, second: LocationEligibility) -> bool:
        if GLOBAL_MARKET in first.markets or GLOBAL_MARKET in second.markets:
            return True
        return bool(first.markets & second.markets)

    def __len__(self) -> int:
        return len(self._locations)

    def get(self, location_id: str) -> Optional[LocationEligibility]:
        return self._locations.get(str(location_id))

    def locations_for_market(self, market: str) -> List[LocationEligibility]:
        """Locations serving ``market``, preferred (lowest rank) first."""
        if not market:
            return []
        market = market.upper()
        eligible = [loc for loc in self._locations.values() if loc.serves(market)]
        return sorted(eligible, key=lambda loc: loc.priority)


class MarketInventoryAggregator:
    """Answers "how many can this market buy" for platform inventory snapshots."""

    def __init__(self, table: LocationMarketTable) -> None:
        self.table = table

    def breakdown(self, variant: VariantInventory, market: str) -> List[LocationContribution]:
        """Per-location contributions for ``market`` in preference order."""
        eligible = self.table.locations_for_market(market)
        if not eligible:
            return []

        stock: Dict[str, int] = {}
        names: Dict[str, Optional[str]] = {}
        for level in variant.levels:
            location_id = str(level.location_id)
            # a negative level is a deficit at that location only
            stock[location_id] = stock.get(location_id, 0) + max(level.available, 0)
            names.setdefault(location_id, level.location_name)

        return [
            LocationContribution(
                location_id=loc.location_id,
                location_name=names.get(loc.location_id) or loc.name,
                priority=loc.priority,
                available=stock[loc.location_id],
            )
            for loc in eligible
            if loc.location_id in stock
        ]

    def available_quantity(self, variant: VariantInventory, market: str) -> int:
        return sum(c.available for c in self.breakdown(variant, market))

    def is_purchasable(self, variant: VariantInventory, market: str) -> bool:
        if not variant.tracked or variant.backorder_policy == BackorderPolicy.CONTINUE:
            return True
        return self.available_quantity(variant, market) > 0

    def can_fulfil(self, variant: VariantInventory, market: str, quantity: int) -> bool:
        if not variant.tracked or variant.backorder_policy == BackorderPolicy.CONTINUE:
            return True
        return self.available_quantity(variant, market) >= quantity
