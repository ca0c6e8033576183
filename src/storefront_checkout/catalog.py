"""
Catalog store access.

The catalog is a tenant-scoped document store:

    {tenant}/products/{productId}
    {tenant}/products/{productId}/variants/{variantId}

Raw documents are parsed into ``ProductRecord`` / ``VariantRecord`` here and
nowhere else.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from storefront_checkout.errors import InvalidCartError, UpstreamUnavailableError
from storefront_checkout.models import ProductRecord, VariantRecord

logger = logging.getLogger(__name__)


def _segment(value: str) -> str:
    """Escape one path segment; ids may never address a parent or sibling document."""
    value = str(value)
    if not value or value in (".", ".."):
        raise InvalidCartError(f"Invalid catalog identifier: {value!r}")
    return quote(value, safe="")


def product_key(tenant: str, product_id: str) -> str:
    return f"{_segment(tenant)}/products/{_segment(product_id)}"


def variant_key(tenant: str, product_id: str, variant_id: str) -> str:
    return f"{product_key(tenant, product_id)}/variants/{_segment(variant_id)}"


class CatalogStore(ABC):
    """Abstract read interface to the catalog store."""

    @abstractmethod
    async def get_product(self, tenant: str, product_id: str) -> Optional[ProductRecord]:
        """Get a product record, or None when absent."""
        pass

    @abstractmethod
    async def get_variant(
        self, tenant: str, product_id: str, variant_id: str
    ) -> Optional[VariantRecord]:
        """Get a variant record, or None when absent."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


class InMemoryCatalogStore(CatalogStore):
    """
    In-memory catalog store for development and testing.

    Documents are stored raw and parsed on every read, matching how a
    remote store behaves. ``reads`` counts variant reads.
    """

    def __init__(self) -> None:
        self._products: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._variants: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.reads = 0
        self.product_reads = 0

    def put_product(self, tenant: str, product_id: str, document: Mapping[str, Any]) -> None:
        self._products[(tenant.upper(), str(product_id))] = dict(document)

    def put_variant(
        self, tenant: str, product_id: str, variant_id: str, document: Mapping[str, Any]
    ) -> None:
        self._variants[(tenant.upper(), str(product_id), str(variant_id))] = dict(document)

    async def get_product(self, tenant: str, product_id: str) -> Optional[ProductRecord]:
        self.product_reads += 1
        document = self._products.get((tenant.upper(), str(product_id)))
        if document is None:
            return None
        return ProductRecord.from_document(product_id, document)

    async def get_variant(
        self, tenant: str, product_id: str, variant_id: str
    ) -> Optional[VariantRecord]:
        self.reads += 1
        document = self._variants.get((tenant.upper(), str(product_id), str(variant_id)))
        if document is None:
            return None
        return VariantRecord.from_document(product_id, variant_id, document)


class HttpCatalogStore(CatalogStore):
    """Catalog store reached over a JSON document API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        retry_after: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.retry_after = retry_after
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _get_document(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self._client.get(f"/{key}")
        except httpx.HTTPError as e:
            logger.warning(f"Catalog store request failed for {key}: {e}")
            raise UpstreamUnavailableError(
                "catalog", retry_after=self.retry_after, details={"key": key}
            ) from e

        if response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailableError(
                "catalog",
                retry_after=self.retry_after,
                details={"key": key, "status_code": response.status_code},
            )
        if response.is_error:
            raise UpstreamUnavailableError(
                "catalog",
                message=f"Catalog store rejected read of {key}",
                retry_after=self.retry_after,
                details={"key": key, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Catalog store returned a non-JSON body for {key}")
            raise UpstreamUnavailableError(
                "catalog",
                message=f"Catalog store returned an unreadable document for {key}",
                retry_after=self.retry_after,
                details={"key": key, "status_code": response.status_code, "body": response.text[:200]},
            ) from e
        if not isinstance(data, dict):
            return None
        return data

    async def get_product(self, tenant: str, product_id: str) -> Optional[ProductRecord]:
        document = await self._get_document(product_key(tenant, product_id))
        if document is None:
            return None
        return ProductRecord.from_document(product_id, document)

    async def get_variant(
        self, tenant: str, product_id: str, variant_id: str
    ) -> Optional[VariantRecord]:
        document = await self._get_document(variant_key(tenant, product_id, variant_id))
        if document is None:
            return None
        return VariantRecord.from_document(product_id, variant_id, document)

    async def close(self) -> None:
        await self._client.aclose()
