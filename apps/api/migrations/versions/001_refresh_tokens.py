"""Refresh tokens table for session rotation

Revision ID: 001_refresh_tokens
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_refresh_tokens'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'refresh_tokens',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subject', sa.String(128), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'replaced_by',
            sa.Uuid(),
            sa.ForeignKey('refresh_tokens.id', ondelete='SET NULL'),
            nullable=True,
        ),
    )
    # One row per secret; rotation and logout look tokens up by hash
    op.create_index('idx_refresh_tokens_token_hash', 'refresh_tokens', ['token_hash'], unique=True)
    op.create_index('idx_refresh_tokens_subject', 'refresh_tokens', ['subject'])
    # Cleanup queries
    op.create_index('idx_refresh_tokens_expires', 'refresh_tokens', ['expires_at'])


def downgrade() -> None:
    op.drop_index('idx_refresh_tokens_expires', 'refresh_tokens')
    op.drop_index('idx_refresh_tokens_subject', 'refresh_tokens')
    op.drop_index('idx_refresh_tokens_token_hash', 'refresh_tokens')
    op.drop_table('refresh_tokens')
