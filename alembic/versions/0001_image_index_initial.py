"""image index initial schema

Revision ID: 0001_image_index_initial
Revises:
Create Date: 2026-10-19T09:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = '0001_image_index_initial'
down_revision = None
branch_labels = None
depends_on = None


def _has_table(name: str) -> bool:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    return name in insp.get_table_names()


def upgrade():
    if not _has_table('index_generation'):
        op.create_table(
            'index_generation',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('origin', sa.String(length=32), nullable=True),
            sa.Column('record_count', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('activated_at', sa.DateTime(), nullable=True),
            sa.Column('retired_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_index_generation_status', 'index_generation', ['status'])

    if not _has_table('image_record'):
        op.create_table(
            'image_record',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('generation_id', sa.Integer(),
                      sa.ForeignKey('index_generation.id', ondelete='CASCADE'), nullable=False),
            sa.Column('filename', sa.String(length=512), nullable=False),
            sa.Column('model_ref', sa.String(length=128), nullable=False),
            sa.Column('color', sa.String(length=128), nullable=False),
            sa.Column('view_tag', sa.String(length=256), nullable=True),
            sa.Column('storage_locator', sa.String(length=2048), nullable=False),
            sa.Column('parse_confidence', sa.String(length=8), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('generation_id', 'filename', name='uq_image_record_generation_filename'),
        )
        op.create_index('ix_image_record_generation_id', 'image_record', ['generation_id'])
        op.create_index('ix_image_record_model_ref', 'image_record', ['model_ref'])
        op.create_index('ix_image_record_generation_model_color', 'image_record',
                        ['generation_id', 'model_ref', 'color'])

    if not _has_table('unparsed_image'):
        op.create_table(
            'unparsed_image',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('generation_id', sa.Integer(),
                      sa.ForeignKey('index_generation.id', ondelete='CASCADE'), nullable=False),
            sa.Column('filename', sa.String(length=512), nullable=False),
            sa.Column('storage_locator', sa.String(length=2048), nullable=True),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('generation_id', 'filename', name='uq_unparsed_image_generation_filename'),
        )
        op.create_index('ix_unparsed_image_generation_id', 'unparsed_image', ['generation_id'])


def downgrade():
    op.drop_table('unparsed_image')
    op.drop_table('image_record')
    op.drop_index('ix_index_generation_status', table_name='index_generation')
    op.drop_table('index_generation')
