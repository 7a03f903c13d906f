"""Create generation pipeline tables

Revision ID: 20261019_0900_pipeline
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261019_0900_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create users, ledger, generated image and audit tables."""
    op.execute("CREATE TYPE transactiontype AS ENUM ('USED', 'EARNED', 'PURCHASED')")
    op.execute("CREATE TYPE generationsource AS ENUM ('TEMPLATE', 'SUGGESTION', 'MANUAL')")
    op.execute(
        "CREATE TYPE auditeventkind AS ENUM ('attempt', 'blocked', 'insufficient-funds', "
        "'rate-limited', 'succeeded', 'failed', 'refunded')"
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)

    op.create_table(
        'token_balance',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('tokens >= 0', name='ck_token_balance_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'token_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', postgresql.ENUM('USED', 'EARNED', 'PURCHASED', name='transactiontype', create_type=False), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_token_transactions_id'), 'token_transactions', ['id'], unique=False)
    op.create_index(op.f('ix_token_transactions_user_id'), 'token_transactions', ['user_id'], unique=False)
    op.create_index(op.f('ix_token_transactions_kind'), 'token_transactions', ['kind'], unique=False)
    op.create_index(op.f('ix_token_transactions_created_at'), 'token_transactions', ['created_at'], unique=False)

    op.create_table(
        'generated_images',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset_url', sa.String(length=1024), nullable=False),
        sa.Column('original_asset_url', sa.String(length=1024), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('caption', sa.Text(), nullable=True),
        sa.Column('style', sa.String(length=50), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('size', sa.String(length=20), nullable=False),
        sa.Column('template_id', sa.String(length=255), nullable=True),
        sa.Column('suggestion_id', sa.String(length=255), nullable=True),
        sa.Column('generation_source', postgresql.ENUM('TEMPLATE', 'SUGGESTION', 'MANUAL', name='generationsource', create_type=False), nullable=True),
        sa.Column('is_favorite', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('downloads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'asset_url', name='uq_generated_images_user_asset'),
    )
    op.create_index(op.f('ix_generated_images_id'), 'generated_images', ['id'], unique=False)
    op.create_index(op.f('ix_generated_images_user_id'), 'generated_images', ['user_id'], unique=False)
    op.create_index(op.f('ix_generated_images_template_id'), 'generated_images', ['template_id'], unique=False)
    op.create_index(op.f('ix_generated_images_created_at'), 'generated_images', ['created_at'], unique=False)

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', postgresql.ENUM('attempt', 'blocked', 'insufficient-funds', 'rate-limited', 'succeeded', 'failed', 'refunded', name='auditeventkind', create_type=False), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=False),
        sa.Column('request_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('detail', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_audit_events_id'), 'audit_events', ['id'], unique=False)
    op.create_index(op.f('ix_audit_events_user_id'), 'audit_events', ['user_id'], unique=False)
    op.create_index(op.f('ix_audit_events_kind'), 'audit_events', ['kind'], unique=False)
    op.create_index(op.f('ix_audit_events_request_id'), 'audit_events', ['request_id'], unique=False)
    op.create_index(op.f('ix_audit_events_request_fingerprint'), 'audit_events', ['request_fingerprint'], unique=False)
    op.create_index(op.f('ix_audit_events_created_at'), 'audit_events', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop generation pipeline tables."""
    op.drop_table('audit_events')
    op.drop_table('generated_images')
    op.drop_table('token_transactions')
    op.drop_table('token_balance')
    op.drop_table('users')

    op.execute('DROP TYPE auditeventkind')
    op.execute('DROP TYPE generationsource')
    op.execute('DROP TYPE transactiontype')
