"""create_event_relay_tables

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f9a1c7e2b40'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the outbox, consumer dedup and leads tables."""
    op.create_table(
        'event_outbox',
        sa.Column('id', sa.Uuid(), nullable=False, comment='UUID v7 primary key (time-sortable)'),

        # Envelope identity and routing
        sa.Column('event_id', sa.String(length=64), nullable=False, comment='Envelope eventID'),
        sa.Column('event_type', sa.String(length=255), nullable=False, comment='Event type identifier'),
        sa.Column('routing_key', sa.String(length=255), nullable=False, comment='Topic routing key'),
        sa.Column('payload', sa.Text(), nullable=False, comment='JSON-serialized event envelope'),

        # Delivery state
        sa.Column('status', sa.String(length=16), nullable=False, comment='pending | published | failed'),
        sa.Column('retry_count', sa.Integer(), nullable=False, comment='Number of failed publish attempts'),
        sa.Column('last_error', sa.Text(), nullable=True, comment='Last publish error'),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True, comment='When the event was published'),

        # Drainer claim lease
        sa.Column('claimed_by', sa.String(length=64), nullable=True, comment='Drainer worker id holding the row'),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True, comment='When the claim was taken'),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True, comment='Not published before this time'),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False, comment='Timestamp of record creation'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False, comment='Timestamp of last update'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_event_outbox')),
    )
    op.create_index(op.f('ix_event_outbox_event_id'), 'event_outbox', ['event_id'], unique=True)
    op.create_index(op.f('ix_event_outbox_event_type'), 'event_outbox', ['event_type'], unique=False)
    op.create_index('ix_event_outbox_status_created', 'event_outbox', ['status', 'created_at'], unique=False)

    op.create_table(
        'processed_events',
        sa.Column('consumer', sa.String(length=200), nullable=False),
        sa.Column('event_id', sa.String(length=64), nullable=False),
        sa.Column('event_type', sa.String(length=200), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('consumer', 'event_id', name=op.f('pk_processed_events')),
    )

    op.create_table(
        'leads',
        sa.Column('id', sa.Uuid(), nullable=False, comment='UUID v7 primary key (time-sortable)'),
        sa.Column('lead_type', sa.String(length=32), nullable=False),
        sa.Column('coach_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('answers', sa.JSON(), nullable=True),
        sa.Column('qualified', sa.Boolean(), nullable=False),
        sa.Column('marketing_opt_in', sa.Boolean(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False, comment='Timestamp of record creation'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False, comment='Timestamp of last update'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_leads')),
    )
    op.create_index(op.f('ix_leads_coach_id'), 'leads', ['coach_id'], unique=False)
    op.create_index(op.f('ix_leads_email'), 'leads', ['email'], unique=False)
    op.create_index(op.f('ix_leads_received_at'), 'leads', ['received_at'], unique=False)


def downgrade() -> None:
    """Drop the event relay tables."""
    op.drop_index(op.f('ix_leads_received_at'), table_name='leads')
    op.drop_index(op.f('ix_leads_email'), table_name='leads')
    op.drop_index(op.f('ix_leads_coach_id'), table_name='leads')
    op.drop_table('leads')

    op.drop_table('processed_events')

    op.drop_index('ix_event_outbox_status_created', table_name='event_outbox')
    op.drop_index(op.f('ix_event_outbox_event_type'), table_name='event_outbox')
    op.drop_index(op.f('ix_event_outbox_event_id'), table_name='event_outbox')
    op.drop_table('event_outbox')
