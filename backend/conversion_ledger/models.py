"""SQLAlchemy ORM models.

This module defines the ledger schema using UUID primary keys. Two tables:
`conversions` (the ledger, unique on the upstream event id) and
`campaign_mappings` (routing rules for attribution destinations).
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Integer, JSON, Boolean, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


UNKNOWN_CUSTOMER_EMAIL = "unknown@example.com"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Ledger ---------------------------------------------------------

class ConversionRecord(Base):
    """A recorded monetary event (checkout payment or subscription creation).

    WHAT: One row per distinct upstream payment event
    WHY: Source of truth for revenue reporting and CSV export

    The unique constraint on `source_event_id` is what makes ingestion
    idempotent: a redelivered or concurrently delivered event can never
    produce a second row. Rows are never updated after insert.
    """
    __tablename__ = "conversions"
    __table_args__ = (
        UniqueConstraint("source_event_id", name="uq_conversions_source_event_id"),
        # Reporting always orders by created_at
        Index("ix_conversions_created_at", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Stripe event id (evt_...), the idempotency key
    source_event_id = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, default=UNKNOWN_CUSTOMER_EMAIL)
    # Smallest currency unit (cents, yen, ...)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="jpy")
    status = Column(String, nullable=False, default="completed")
    # Provider context (session id, address, subscription period, plan, ...)
    # `metadata` is reserved on declarative classes, hence the attribute name.
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __str__(self):
        return f"{self.source_event_id} ({self.amount} {self.currency})"


# Attribution routing --------------------------------------------

class CampaignMapping(Base):
    """Routes a marketing campaign id to a Meta pixel + access token.

    WHAT: Destination credentials for the attribution fan-out
    WHY: Different campaigns report conversions to different pixels

    Mappings are never hard-deleted. Deactivation flips `is_active` so the
    row stays available for audit; inactive rows are invisible to lookups.
    """
    __tablename__ = "campaign_mappings"
    __table_args__ = (
        UniqueConstraint("campaign_id", name="uq_campaign_mappings_campaign_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id = Column(String, nullable=False)
    meta_pixel_id = Column(String, nullable=False)
    meta_access_token = Column(String, nullable=False)
    campaign_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __str__(self):
        return self.campaign_name or self.campaign_id
