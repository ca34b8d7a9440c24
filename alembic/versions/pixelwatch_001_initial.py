"""initial pixelwatch schema

Revision ID: pixelwatch_001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'pixelwatch_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Workspaces ---
    op.create_table('workspaces',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # --- API keys ---
    op.create_table('api_keys',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('key_hash', sa.String(length=64), nullable=False),
        sa.Column('key_prefix', sa.String(length=12), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['workspace_id'], ['workspaces.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_api_keys_workspace_id'), 'api_keys', ['workspace_id'], unique=False)
    op.create_index(op.f('ix_api_keys_key_hash'), 'api_keys', ['key_hash'], unique=True)

    # --- Pixels ---
    op.create_table('pixels',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('workspace_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='active', nullable=False),
        sa.Column('status_reason', sa.String(length=50), nullable=True),
        sa.Column('events_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('conversions_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('revenue_total', sa.Float(), server_default='0', nullable=False),
        sa.Column('last_activity', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['workspace_id'], ['workspaces.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_pixels_workspace_id'), 'pixels', ['workspace_id'], unique=False)

    # --- Conversions ---
    op.create_table('conversions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('pixel_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('event_name', sa.String(length=100), nullable=False),
        sa.Column('rules', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('conversion_rate', sa.Float(), server_default='0', nullable=False),
        sa.Column('total_conversions', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_value', sa.Float(), server_default='0', nullable=False),
        sa.Column('average_value', sa.Float(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['pixel_id'], ['pixels.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_conversions_pixel_id'), 'conversions', ['pixel_id'], unique=False)

    # --- Diagnostics ---
    op.create_table('diagnostics',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('pixel_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('category', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), server_default='', nullable=False),
        sa.Column('status', sa.String(length=20), server_default='active', nullable=False),
        sa.Column('check_name', sa.String(length=50), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['pixel_id'], ['pixels.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pixel_id', 'title', name='uq_diagnostics_pixel_title'),
    )
    op.create_index(op.f('ix_diagnostics_pixel_id'), 'diagnostics', ['pixel_id'], unique=False)
    op.create_index('ix_diagnostics_status', 'diagnostics', ['status', 'resolved_at'], unique=False)

    # --- Events ---
    op.create_table('events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('pixel_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_name', sa.String(length=100), nullable=False),
        sa.Column('event_type', sa.String(length=20), server_default='standard', nullable=False),
        sa.Column('parameters', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False),
        sa.Column('source', sa.String(length=20), server_default='web', nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processing_state', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('error_reason', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['pixel_id'], ['pixels.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_events_pixel_timestamp', 'events', ['pixel_id', 'timestamp'], unique=False)
    op.create_index('ix_events_state', 'events', ['processing_state', 'pixel_id'], unique=False)
    op.create_index('ix_events_name_timestamp', 'events', ['event_name', 'timestamp'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_events_name_timestamp', table_name='events')
    op.drop_index('ix_events_state', table_name='events')
    op.drop_index('ix_events_pixel_timestamp', table_name='events')
    op.drop_table('events')
    op.drop_index('ix_diagnostics_status', table_name='diagnostics')
    op.drop_index(op.f('ix_diagnostics_pixel_id'), table_name='diagnostics')
    op.drop_table('diagnostics')
    op.drop_index(op.f('ix_conversions_pixel_id'), table_name='conversions')
    op.drop_table('conversions')
    op.drop_index(op.f('ix_pixels_workspace_id'), table_name='pixels')
    op.drop_table('pixels')
    op.drop_index(op.f('ix_api_keys_key_hash'), table_name='api_keys')
    op.drop_index(op.f('ix_api_keys_workspace_id'), table_name='api_keys')
    op.drop_table('api_keys')
    op.drop_table('workspaces')
