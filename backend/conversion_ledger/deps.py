"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .services.attribution_fanout import AttributionFanout
from .services.campaign_routing import CampaignRoutingTable
from .services.stripe_client import StripeClient


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # When set, admin endpoints require a matching X-Admin-Key header
    ADMIN_API_KEY: Optional[str] = None

    # Stripe (payment event source)
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_URL: str = "https://api.stripe.com"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: float = 10.0

    # Meta Conversions API (default attribution destination)
    META_PIXEL_ID: Optional[str] = None
    META_ACCESS_TOKEN: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v18.0"
    META_TEST_EVENT_CODE: Optional[str] = None
    META_CAPI_TIMEOUT_SECONDS: float = 10.0

    # Used when a payment event carries no currency
    DEFAULT_CURRENCY: str = "jpy"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_admin(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard admin endpoints with a shared key when one is configured.

    Without ADMIN_API_KEY the guard is open (local development).
    """
    if not settings.ADMIN_API_KEY:
        return

    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")


# Service providers ----------------------------------------------------------
# Overridden in tests via app.dependency_overrides.

def get_stripe_client(settings: Settings = Depends(get_settings)) -> StripeClient:
    return StripeClient(
        api_key=settings.STRIPE_SECRET_KEY,
        base_url=settings.STRIPE_API_URL,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
    )


def get_attribution_fanout(settings: Settings = Depends(get_settings)) -> AttributionFanout:
    return AttributionFanout(
        api_version=settings.META_GRAPH_API_VERSION,
        timeout=settings.META_CAPI_TIMEOUT_SECONDS,
    )


def get_routing_table(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CampaignRoutingTable:
    return CampaignRoutingTable(
        db,
        default_pixel_id=settings.META_PIXEL_ID,
        default_access_token=settings.META_ACCESS_TOKEN,
    )
