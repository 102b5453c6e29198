"""Product barcodes, unique per store

Revision ID: 20261017_barcode
Revises: 20261017_initial
Create Date: 2026-10-17

Adds products.barcode (nullable). Uniqueness is per store; products without a
barcode keep it NULL so they never conflict.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261017_barcode'
down_revision = '20261017_initial'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.add_column(sa.Column('barcode', sa.String(length=100), nullable=True))
        batch_op.create_unique_constraint('uq_products_store_barcode', ['store_id', 'barcode'])


def downgrade():
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.drop_constraint('uq_products_store_barcode', type_='unique')
        batch_op.drop_column('barcode')
