"""canvas, layer and drawing_tile

Revision ID: 000001_canvas_schema
Revises:
Create Date: 2026-09-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '000001_canvas_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'canvas',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('center_lat', sa.Float(), nullable=False),
        sa.Column('center_lng', sa.Float(), nullable=False),
        sa.Column('zoom', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('tile_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('share_lat', sa.Float(), nullable=True),
        sa.Column('share_lng', sa.Float(), nullable=True),
        sa.Column('share_zoom', sa.Integer(), nullable=True),
        sa.Column('ogp_image_key', sa.String(), nullable=True),
        sa.Column('ogp_place_name', sa.String(), nullable=True),
        sa.Column('ogp_generated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('tile_count >= 0', name='ck_canvas_tile_count'),
    )
    op.create_index('ix_canvas_created_at', 'canvas', ['created_at'])

    op.create_table(
        'layer',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('canvas_id', sa.String(), sa.ForeignKey('canvas.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False),
        sa.Column('visible', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('canvas_id', 'order', name='uq_layer_canvas_order'),
    )
    op.create_index('ix_layer_canvas_id', 'layer', ['canvas_id'])

    op.create_table(
        'drawing_tile',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('canvas_id', sa.String(), sa.ForeignKey('canvas.id', ondelete='CASCADE'), nullable=False),
        sa.Column('layer_id', sa.String(), sa.ForeignKey('layer.id', ondelete='CASCADE'), nullable=True),
        sa.Column('z', sa.Integer(), nullable=False),
        sa.Column('x', sa.Integer(), nullable=False),
        sa.Column('y', sa.Integer(), nullable=False),
        sa.Column('r2_key', sa.String(), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_drawing_tile_canvas_id', 'drawing_tile', ['canvas_id'])
    op.create_index('ix_drawing_tile_layer_id', 'drawing_tile', ['layer_id'])


def downgrade() -> None:
    op.drop_index('ix_drawing_tile_layer_id', table_name='drawing_tile')
    op.drop_index('ix_drawing_tile_canvas_id', table_name='drawing_tile')
    op.drop_table('drawing_tile')
    op.drop_index('ix_layer_canvas_id', table_name='layer')
    op.drop_table('layer')
    op.drop_index('ix_canvas_created_at', table_name='canvas')
    op.drop_table('canvas')
