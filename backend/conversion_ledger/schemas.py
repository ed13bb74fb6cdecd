"""Pydantic schemas for request/response payloads.

Wire format is camelCase (the admin frontend's convention); Python
attributes stay snake_case. Requests accept either spelling.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import CampaignMapping, ConversionRecord


def mask_secret(value: Optional[str], visible: int = 4) -> Optional[str]:
    """Mask all but the last `visible` characters ("********wxyz")."""
    if not value:
        return None
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * 8 + value[-visible:]


def preview_pixel_id(pixel_id: Optional[str]) -> Optional[str]:
    return f"{pixel_id[:8]}..." if pixel_id else None


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Error message")

    model_config = {
        "json_schema_extra": {
            "example": {
                "detail": "Invalid signature"
            }
        }
    }


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


# Webhooks ---------------------------------------------------------

class WebhookResponse(CamelModel):
    """Acknowledgement returned to Stripe."""

    status: Literal["success", "already_processed", "ignored"]
    conversion_id: Optional[UUID] = Field(default=None, description="Ledger row id, when one exists")


# Conversions ------------------------------------------------------

class ConversionOut(CamelModel):
    id: UUID
    source_event_id: str
    customer_email: str
    amount: int = Field(description="Amount in minor currency units")
    currency: str
    status: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: ConversionRecord) -> "ConversionOut":
        return cls(
            id=record.id,
            source_event_id=record.source_event_id,
            customer_email=record.customer_email,
            amount=record.amount,
            currency=record.currency,
            status=record.status,
            metadata=record.event_metadata,
            created_at=record.created_at,
        )


class PaginationMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class LedgerSummaryOut(CamelModel):
    total_amount: int
    total_conversions: int


class ConversionListResponse(CamelModel):
    """One page of conversions plus the summary over the whole filtered set."""

    conversions: List[ConversionOut]
    pagination: PaginationMeta
    summary: LedgerSummaryOut


class ReconcileFailure(CamelModel):
    event_id: str
    error: str


class ReconcileResponse(CamelModel):
    fetched: int
    recorded: int
    already_processed: int
    ignored: int
    failed: List[ReconcileFailure] = Field(default_factory=list)
    aborted: Optional[str] = Field(default=None, description="Store error that stopped the sweep early")


# Campaign routing -------------------------------------------------

class CampaignCreate(CamelModel):
    """Payload for a new (or reactivated) campaign mapping."""

    campaign_id: str = Field(min_length=1, description="Marketing campaign identifier")
    meta_pixel_id: str = Field(min_length=1, description="Meta Pixel ID")
    meta_access_token: str = Field(min_length=1, description="Access token for the pixel")
    campaign_name: Optional[str] = Field(default=None, description="Display name")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "campaignId": "2385196923",
                "metaPixelId": "1234567890123456",
                "metaAccessToken": "EAAB...",
                "campaignName": "Spring launch",
            }
        },
    )


class CampaignUpdate(CamelModel):
    """Partial update; omitted fields are left unchanged."""

    meta_pixel_id: Optional[str] = Field(default=None, min_length=1)
    meta_access_token: Optional[str] = Field(default=None, min_length=1)
    campaign_name: Optional[str] = None
    is_active: Optional[bool] = None


class CampaignOut(CamelModel):
    """Campaign mapping without its secret."""

    id: UUID
    campaign_id: str
    campaign_name: Optional[str] = None
    meta_pixel_id: str
    access_token_preview: Optional[str] = Field(default=None, description="Masked access token")
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_mapping(cls, mapping: CampaignMapping) -> "CampaignOut":
        return cls(
            id=mapping.id,
            campaign_id=mapping.campaign_id,
            campaign_name=mapping.campaign_name,
            meta_pixel_id=mapping.meta_pixel_id,
            access_token_preview=mask_secret(mapping.meta_access_token),
            is_active=mapping.is_active,
            created_at=mapping.created_at,
            updated_at=mapping.updated_at,
        )


# Attribution ------------------------------------------------------

class AttributionTestRequest(CamelModel):
    """Test-send body. Every field is optional; defaults make a valid event."""

    campaign_id: Optional[str] = None
    campaign_ids: Optional[List[str]] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0, description="Minor currency units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    test_event_code: Optional[str] = None


class DeliveryResultOut(CamelModel):
    campaign_id: Optional[str] = None
    pixel_id: str
    used_default: bool = False
    success: bool
    error: Optional[str] = None
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None


class AttributionTestResponse(CamelModel):
    success: bool
    event_id: str
    results: List[DeliveryResultOut]
    message: str


class AttributionConfigResponse(CamelModel):
    configured: bool
    pixel_id_preview: Optional[str] = None
    has_access_token: bool
    test_event_code_configured: bool
    api_version: str
