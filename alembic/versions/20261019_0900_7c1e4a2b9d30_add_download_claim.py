"""add_download_claim

Revision ID: 7c1e4a2b9d30
Revises: 001
Create Date: 2026-10-19 09:00:12.418207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7c1e4a2b9d30'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Token of the download job that owns a queued/downloading episode
    op.add_column(
        'episodes',
        sa.Column('download_claim', sa.String(36), nullable=True)
    )


def downgrade() -> None:
    op.drop_column('episodes', 'download_claim')
