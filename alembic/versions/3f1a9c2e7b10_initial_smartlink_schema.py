"""initial smartlink schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Artists ---
    op.create_table('artists',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('photo_url', sa.Text(), nullable=True),
        sa.Column('meta_pixel_id', sa.String(length=64), nullable=True),
        sa.Column('facebook_access_token', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_artists_slug'), 'artists', ['slug'], unique=True)

    # --- Songs ---
    op.create_table('songs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('artist_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('slug', sa.String(length=255), nullable=False),
        sa.Column('song_slug', sa.String(length=100), nullable=True),
        sa.Column('artist_name', sa.String(length=255), nullable=False),
        sa.Column('track_title', sa.String(length=255), nullable=False),
        sa.Column('cover_image_url', sa.Text(), nullable=True),
        sa.Column('deep_link', sa.Text(), nullable=True),
        sa.Column('web_link', sa.Text(), nullable=False),
        sa.Column('meta_pixel_id', sa.String(length=64), nullable=True),
        sa.Column('facebook_access_token', sa.Text(), nullable=True),
        sa.Column('routing_config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('tracking_config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['artist_id'], ['artists.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_songs_slug'), 'songs', ['slug'], unique=True)
    op.create_index(op.f('ix_songs_artist_id'), 'songs', ['artist_id'], unique=False)

    # --- Landing page events ---
    op.create_table('landing_page_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_name', sa.String(length=64), nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=True),
        sa.Column('request_path', sa.String(length=512), nullable=True),
        sa.Column('event_source_url', sa.Text(), nullable=True),
        sa.Column('test_event_code', sa.String(length=64), nullable=True),
        sa.Column('attribution', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('context', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('route', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('identity', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('fbp', sa.String(length=255), nullable=True),
        sa.Column('fbc', sa.String(length=255), nullable=True),
        sa.Column('client_ip', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('forward_to_facebook', sa.Boolean(), nullable=True),
        sa.Column('pixel_id', sa.String(length=64), nullable=True),
        sa.Column('forward_status', sa.String(length=40), server_default='queued', nullable=False),
        sa.Column('forward_error', sa.Text(), nullable=True),
        sa.Column('forwarded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_landing_page_events_event_id'), 'landing_page_events', ['event_id'], unique=False)
    op.create_index('ix_landing_page_events_path_created', 'landing_page_events', ['request_path', 'created_at'], unique=False)
    op.create_index('ix_landing_page_events_name_created', 'landing_page_events', ['event_name', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_landing_page_events_name_created', table_name='landing_page_events')
    op.drop_index('ix_landing_page_events_path_created', table_name='landing_page_events')
    op.drop_index(op.f('ix_landing_page_events_event_id'), table_name='landing_page_events')
    op.drop_table('landing_page_events')
    op.drop_index(op.f('ix_songs_artist_id'), table_name='songs')
    op.drop_index(op.f('ix_songs_slug'), table_name='songs')
    op.drop_table('songs')
    op.drop_index(op.f('ix_artists_slug'), table_name='artists')
    op.drop_table('artists')
