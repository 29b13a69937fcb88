"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Sync checkpoints, exported ids, fingerprints, failure log, history and
    # encrypted secrets all live in one JSON key-value table
    op.create_table(
        'kv_entries',
        sa.Column('key', sa.String(length=255), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('idx_kv_entries_updated', 'kv_entries', ['updated_at'])


def downgrade() -> None:
    op.drop_index('idx_kv_entries_updated', table_name='kv_entries')
    op.drop_table('kv_entries')
