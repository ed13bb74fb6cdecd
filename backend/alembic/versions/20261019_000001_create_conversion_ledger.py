"""create_conversion_ledger

WHAT:
    Creates the conversion ledger and the campaign routing table.

WHY:
    - conversions.source_event_id is unique: the database, not the
      application, guarantees one row per Stripe event under concurrent
      webhook delivery
    - campaign_mappings.campaign_id is unique across active and inactive
      rows; deactivation is a flag, never a delete
    - Reporting filters and orders by conversions.created_at

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'conversions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source_event_id', sa.String(), nullable=False,
                  comment='Stripe event id (evt_...), the idempotency key'),
        sa.Column('customer_email', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0',
                  comment='Smallest currency unit'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='jpy'),
        sa.Column('status', sa.String(), nullable=False, server_default='completed'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.UniqueConstraint('source_event_id', name='uq_conversions_source_event_id'),
    )
    op.create_index('ix_conversions_created_at', 'conversions', ['created_at'])

    op.create_table(
        'campaign_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('campaign_id', sa.String(), nullable=False),
        sa.Column('meta_pixel_id', sa.String(), nullable=False),
        sa.Column('meta_access_token', sa.String(), nullable=False),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.UniqueConstraint('campaign_id', name='uq_campaign_mappings_campaign_id'),
    )


def downgrade() -> None:
    op.drop_table('campaign_mappings')
    op.drop_index('ix_conversions_created_at', table_name='conversions')
    op.drop_table('conversions')
