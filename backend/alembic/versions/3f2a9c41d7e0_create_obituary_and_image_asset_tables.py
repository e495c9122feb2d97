"""create_obituary_and_image_asset_tables

Revision ID: 3f2a9c41d7e0
Revises:
Create Date: 2026-10-19 10:12:44.118203

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '3f2a9c41d7e0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'obituary',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('reference', sa.String(length=16), nullable=False),
        sa.Column('surname', sa.String(), nullable=True),
        sa.Column('given_names', sa.String(), nullable=True),
        sa.Column(
            'image_names',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('modified_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_obituary_reference', 'obituary', ['reference'], unique=True)

    # Catalog of objects in the image bucket; reference is NULL for orphans
    op.create_table(
        'image_asset',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('key', sa.String(length=1024), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('last_modified', sa.DateTime(timezone=True), nullable=False),
        sa.Column('etag', sa.String(length=128), nullable=False),
        sa.Column('content_type', sa.String(length=255), nullable=True),
        sa.Column('reference', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('modified_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['reference'], ['obituary.reference'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_image_asset_key', 'image_asset', ['key'], unique=True)
    op.create_index('ix_image_asset_reference', 'image_asset', ['reference'])


def downgrade():
    op.drop_index('ix_image_asset_reference', table_name='image_asset')
    op.drop_index('ix_image_asset_key', table_name='image_asset')
    op.drop_table('image_asset')

    op.drop_index('ix_obituary_reference', table_name='obituary')
    op.drop_table('obituary')
