"""Persist committed shard topologies.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'shard_topologies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('strategy_json', sa.JSON(), nullable=False),
        sa.Column('partitions_json', sa.JSON(), nullable=False),
        sa.Column('committed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_shard_topologies_id', 'shard_topologies', ['id'])
    op.create_index('ix_shard_topologies_version', 'shard_topologies', ['version'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_shard_topologies_version', table_name='shard_topologies')
    op.drop_index('ix_shard_topologies_id', table_name='shard_topologies')
    op.drop_table('shard_topologies')
