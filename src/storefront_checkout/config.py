"""Configuration surface for the checkout service."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


class MarketSettings(BaseModel):
    """One market reference entry."""
    code: str
    name: str
    currency: str = "EUR"
    locale: str = "en"
    shipping_estimate: Decimal = Decimal("2.90")
    delivery_estimate_days: str = "7-10"

    @field_validator("code", mode="before")
    @classmethod
    def upper_code(cls, v):
        return str(v).strip().upper()


class LocationSettings(BaseModel):
    """Fulfillment location and the markets it may serve."""
    location_id: str
    name: str = ""
    markets: List[str] = Field(default_factory=list)
    priority: int = 1

    @field_validator("location_id", mode="before")
    @classmethod
    def stringify_id(cls, v):
        return str(v)

    @field_validator("markets", mode="before")
    @classmethod
    def parse_markets(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return [str(m).strip().upper() for m in v if str(m).strip()]


def _default_markets() -> List[MarketSettings]:
    rows = [
        ("FI", "Finland", "EUR", "fi"),
        ("DE", "Germany", "EUR", "de"),
        ("SE", "Sweden", "SEK", "sv"),
        ("NO", "Norway", "NOK", "no"),
        ("DK", "Denmark", "DKK", "da"),
        ("FR", "France", "EUR", "fr"),
        ("IT", "Italy", "EUR", "it"),
        ("ES", "Spain", "EUR", "es"),
        ("NL", "Netherlands", "EUR", "nl"),
        ("BE", "Belgium", "EUR", "nl"),
        ("AT", "Austria", "EUR", "de"),
        ("CH", "Switzerland", "CHF", "de"),
        ("PL", "Poland", "PLN", "pl"),
        ("IE", "Ireland", "EUR", "en"),
    ]
    return [
        MarketSettings(code=code, name=name, currency=currency, locale=locale)
        for code, name, currency, locale in rows
    ]


class CheckoutSettings(BaseSettings):
    """Main checkout service configuration."""

    # Environment
    environment: Literal["dev", "staging", "prod"] = "dev"

    # Tenant / market context
    default_tenant: str = "DEFAULT"
    default_market: str = "FI"
    known_tenants: Annotated[List[str], NoDecode] = Field(default_factory=list)
    excluded_path_segments: Annotated[List[str], NoDecode] = Field(default_factory=lambda: [
        "admin", "api", "thank-you", "order-confirmation", "unavailable", "_next",
    ])
    checkout_subflow_segments: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["cart", "checkout"])
    tenant_cookie: str = "storefront"
    market_cookie: str = "market"
    geo_header: str = "x-geo-country"
    cookie_max_age_seconds: int = 60 * 60 * 24 * 30

    # Markets and fulfillment
    markets: List[MarketSettings] = Field(default_factory=_default_markets)
    supported_markets: Annotated[Optional[List[str]], NoDecode] = None
    locations: List[LocationSettings] = Field(default_factory=list)
    shipping_rates: Dict[str, Decimal] = Field(default_factory=dict)

    # Commerce platform
    platform_store_domain: str = ""
    platform_storefront_token: str = ""
    platform_admin_token: str = ""
    platform_api_version: str = "2025-10"
    platform_timeout_seconds: float = 15.0
    online_store_publication: str = "Online Store"

    # Redirect decoration
    checkout_domain: str = ""
    return_url: str = ""
    return_path_prefix: str = ""

    # Catalog store
    catalog_base_url: str = ""
    catalog_token: str = ""
    catalog_timeout_seconds: float = 10.0

    # Orchestration
    max_concurrency: int = 5
    verify_batch_size: int = 50
    indexing_retry_after_seconds: int = 30
    upstream_retry_after_seconds: int = 2
    idempotency_ttl_hours: int = 24

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    class Config:
        env_prefix = "STOREFRONT_CHECKOUT_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator(
        "known_tenants", "excluded_path_segments", "checkout_subflow_segments",
        "supported_markets", mode="before",
    )
    @classmethod
    def parse_list(cls, v):
        """Parse comma-separated lists from env vars."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("known_tenants", "supported_markets")
    @classmethod
    def upper_codes(cls, v):
        if v is None:
            return v
        return [code.upper() for code in v]

    @field_validator("excluded_path_segments", "checkout_subflow_segments")
    @classmethod
    def lower_segments(cls, v: List[str]) -> List[str]:
        return [segment.lower() for segment in v]

    @field_validator("default_tenant", "default_market")
    @classmethod
    def upper_default(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("default tenant and market must be non-empty")
        return v

    @field_validator("shipping_rates", mode="before")
    @classmethod
    def upper_rate_keys(cls, v):
        if isinstance(v, dict):
            return {str(k).upper(): rate for k, rate in v.items()}
        return v

    @field_validator("max_concurrency", "verify_batch_size")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def require_platform_credentials(self) -> "CheckoutSettings":
        if self.environment != "dev" and not (
            self.platform_store_domain and self.platform_storefront_token
        ):
            raise ValueError(
                "platform_store_domain and platform_storefront_token are required "
                f"outside dev (environment={self.environment})"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"


@lru_cache
def load_settings(env_file: str | None = None) -> CheckoutSettings:
    """Load CheckoutSettings once per process so every component agrees."""
    if env_file:
        return CheckoutSettings(_env_file=Path(env_file))
    return CheckoutSettings()
