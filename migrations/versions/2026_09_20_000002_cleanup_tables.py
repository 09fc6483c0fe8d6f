"""deletion_record audit table and cleanup_lock

Revision ID: 000002_cleanup_tables
Revises: 000001_canvas_schema
Create Date: 2026-09-20
"""

from alembic import op
import sqlalchemy as sa


revision = '000002_cleanup_tables'
down_revision = '000001_canvas_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'deletion_record',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('executed_at', sa.DateTime(), nullable=False),
        sa.Column('canvases_deleted', sa.Integer(), nullable=False),
        sa.Column('tiles_deleted', sa.Integer(), nullable=False),
        sa.Column('layers_deleted', sa.Integer(), nullable=False),
        sa.Column('ogp_images_deleted', sa.Integer(), nullable=False),
        sa.Column('total_tiles_before', sa.Integer(), nullable=False),
        sa.Column('total_tiles_after', sa.Integer(), nullable=False),
        sa.Column('storage_reclaimed_bytes', sa.BigInteger(), nullable=False),
        sa.Column('orphaned_tiles_deleted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orphaned_ogp_deleted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors_encountered', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.CheckConstraint('canvases_deleted >= 0', name='ck_deletion_record_canvases'),
        sa.CheckConstraint('tiles_deleted >= 0', name='ck_deletion_record_tiles'),
        sa.CheckConstraint('storage_reclaimed_bytes >= 0', name='ck_deletion_record_bytes'),
    )
    op.create_index('ix_deletion_record_executed_at', 'deletion_record', ['executed_at'])

    op.create_table(
        'cleanup_lock',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column('locked_at', sa.DateTime(), nullable=False),
        sa.Column('locked_by', sa.String(), nullable=False),
        sa.CheckConstraint('id = 1', name='ck_cleanup_lock_singleton'),
    )


def downgrade() -> None:
    op.drop_table('cleanup_lock')
    op.drop_index('ix_deletion_record_executed_at', table_name='deletion_record')
    op.drop_table('deletion_record')
