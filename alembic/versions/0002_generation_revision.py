"""add write revision to index_generation

Revision ID: 0002_generation_revision
Revises: 0001_image_index_initial
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = '0002_generation_revision'
down_revision = '0001_image_index_initial'
branch_labels = None
depends_on = None


def _has_column(table: str, column: str) -> bool:
    insp = sa.inspect(op.get_bind())
    return column in {c['name'] for c in insp.get_columns(table)}


def upgrade():
    if not _has_column('index_generation', 'revision'):
        with op.batch_alter_table('index_generation') as batch:
            batch.add_column(sa.Column('revision', sa.Integer(), nullable=False, server_default='0'))


def downgrade():
    with op.batch_alter_table('index_generation') as batch:
        batch.drop_column('revision')
