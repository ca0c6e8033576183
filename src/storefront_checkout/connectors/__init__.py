"""Commerce platform connector implementations."""
from storefront_checkout.connectors.base import CommercePlatformConnector
from storefront_checkout.connectors.shopify import ShopifyConnector

__all__ = [
    "CommercePlatformConnector",
    "ShopifyConnector",
]
