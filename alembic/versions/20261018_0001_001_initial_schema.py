"""Initial schema for the catalog, action log, queue and sync cursor

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create podcasts table
    op.create_table(
        'podcasts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('feed_url', sa.String(2048), unique=True, nullable=False),
        sa.Column('website_url', sa.String(2048), nullable=True),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('author', sa.String(512), nullable=True),
        sa.Column('explicit', sa.Boolean, nullable=True),
        sa.Column('image_url', sa.String(2048), nullable=True),
        sa.Column('last_checked', sa.DateTime, nullable=True),
        sa.Column('is_deleted', sa.Boolean, default=False),
        sa.Column('deleted_at', sa.DateTime, nullable=True),
        sa.Column('needs_refresh', sa.Boolean, default=False),
        sa.Column('local_directory', sa.String(1024), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_podcasts_feed_url', 'podcasts', ['feed_url'])

    # Create episodes table
    op.create_table(
        'episodes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('podcast_id', sa.String(36), sa.ForeignKey('podcasts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('guid', sa.String(2048), nullable=False),
        sa.Column('feed_guid', sa.String(2048), nullable=True),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('link', sa.String(2048), nullable=True),
        sa.Column('published_date', sa.DateTime, nullable=True),
        sa.Column('duration_seconds', sa.Integer, nullable=True),
        sa.Column('explicit', sa.Boolean, nullable=True),
        sa.Column('enclosure_url', sa.String(2048), nullable=False),
        sa.Column('enclosure_type', sa.String(64), nullable=False),
        sa.Column('enclosure_length', sa.Integer, nullable=True),
        sa.Column('played', sa.Boolean, default=False),
        sa.Column('played_timestamp', sa.Integer, nullable=True),
        sa.Column('played_origin', sa.String(16), nullable=True),
        sa.Column('position', sa.Integer, default=0),
        sa.Column('position_timestamp', sa.Integer, nullable=True),
        sa.Column('position_origin', sa.String(16), nullable=True),
        sa.Column('download_status', sa.String(32), default='not_downloaded'),
        sa.Column('download_error', sa.Text, nullable=True),
        sa.Column('downloaded_at', sa.DateTime, nullable=True),
        sa.Column('local_file_path', sa.String(1024), nullable=True),
        sa.Column('file_size_bytes', sa.Integer, nullable=True),
        sa.Column('is_removed', sa.Boolean, default=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('podcast_id', 'guid', name='uq_episode_podcast_guid'),
    )
    op.create_index('ix_episodes_podcast_published', 'episodes', ['podcast_id', 'published_date'])
    op.create_index('ix_episodes_enclosure_url', 'episodes', ['enclosure_url'])
    op.create_index('ix_episodes_download_status', 'episodes', ['download_status'])

    # Create append-only action log
    op.create_table(
        'episode_actions',
        sa.Column('seq', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('origin', sa.String(16), nullable=False),
        sa.Column('podcast_url', sa.String(2048), nullable=False),
        sa.Column('episode_url', sa.String(2048), nullable=True),
        sa.Column('episode_guid', sa.String(2048), nullable=True),
        sa.Column('episode_id', sa.String(36), nullable=True),
        sa.Column('position', sa.Integer, nullable=True),
        sa.Column('total', sa.Integer, nullable=True),
        sa.Column('started', sa.Integer, nullable=True),
        sa.Column('timestamp', sa.Integer, nullable=False),
        sa.Column('device', sa.String(256), nullable=True),
        sa.Column('pushed', sa.Boolean, default=False),
        sa.Column('recorded_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_episode_actions_origin_pushed', 'episode_actions', ['origin', 'pushed'])
    op.create_index('ix_episode_actions_identity', 'episode_actions', ['episode_url', 'kind', 'timestamp'])

    # Create play queue
    op.create_table(
        'queue_entries',
        sa.Column('episode_id', sa.String(36), sa.ForeignKey('episodes.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('added_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_queue_entries_position', 'queue_entries', ['position'])

    # Create sync cursors
    op.create_table(
        'sync_cursors',
        sa.Column('key', sa.String(1024), primary_key=True),
        sa.Column('actions_since', sa.Integer, default=0),
        sa.Column('subscriptions_since', sa.Integer, default=0),
        sa.Column('last_pushed_seq', sa.Integer, default=0),
        sa.Column('generation', sa.Integer, default=0),
        sa.Column('last_success_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table('sync_cursors')
    op.drop_table('queue_entries')
    op.drop_table('episode_actions')
    op.drop_table('episodes')
    op.drop_table('podcasts')
