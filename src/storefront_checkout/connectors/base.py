"""Base commerce platform connector interface."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Sequence

from storefront_checkout.models import (
    CheckoutSession,
    ProductPublication,
    SessionRequest,
    ShippingAddress,
    VariantInventory,
    VariantVisibility,
)


class CommercePlatformConnector(ABC):
    """Abstract interface for the external commerce platform.

    The platform exposes a management API (authoritative, immediately
    consistent) and a storefront read API that lags behind it. Connectors
    translate every transport and protocol failure into checkout errors.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the platform name."""
        pass

    @abstractmethod
    async def verify_variants(
        self,
        refs: Sequence[str],
    ) -> Dict[str, VariantVisibility]:
        """
        Ask the read API whether each variant is visible and for sale.

        Args:
            refs: Platform variant references (one batch)

        Returns:
            Visibility per reference, keyed by the reference as given
        """
        pass

    @abstractmethod
    async def create_session(
        self,
        request: SessionRequest,
    ) -> CheckoutSession:
        """
        Create a checkout session on the platform.

        Raises:
            PlatformItemNotFoundError: platform says an item does not exist
            PlatformRejectedError: any other refusal
            UpstreamUnavailableError: transport failure or 5xx
        """
        pass

    @abstractmethod
    async def update_buyer_identity(
        self,
        session_id: str,
        address: ShippingAddress,
        market: str,
    ) -> CheckoutSession:
        """Attach a delivery address to an existing session."""
        pass

    @abstractmethod
    async def get_variant_inventory(self, ref: str) -> VariantInventory:
        """
        Read location-level inventory for a variant from the management API.

        Raises:
            NotFoundError: the platform does not know the variant
        """
        pass

    @abstractmethod
    async def get_product_markets(
        self,
        product_ref: str,
        markets: Iterable[str],
    ) -> ProductPublication:
        """Per-market publication status for a product."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None
