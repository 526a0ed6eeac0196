"""triangle engine schema: plans, formations, positions, ledger

Revision ID: 4c1e9a7d2b10
Revises:
Create Date: 2026-10-19 09:12:44.318201

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e9a7d2b10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=20), nullable=False, unique=True),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('payout_multiplier', sa.Integer(), nullable=False),
        sa.Column('referral_bonus_rate', sa.Numeric(5, 4), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('price > 0', name='chk_plan_price_positive'),
        sa.CheckConstraint('referral_bonus_rate >= 0 AND referral_bonus_rate <= 1', name='chk_plan_rate_range'),
    )

    op.create_table(
        'triangles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_name', sa.String(length=20), sa.ForeignKey('plans.name'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('filled_count', sa.Integer(), nullable=False),
        sa.Column('reserved_count', sa.Integer(), nullable=False),
        sa.Column('payout_processed', sa.Boolean(), nullable=False),
        sa.Column('frozen', sa.Boolean(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('triangles.id'), nullable=True),
        sa.Column('generation', sa.Integer(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cycled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('filled_count >= 0 AND filled_count <= 15', name='chk_filled_range'),
        sa.CheckConstraint('reserved_count >= filled_count AND reserved_count <= 15', name='chk_reserved_range'),
    )
    op.create_index('ix_triangles_plan_name', 'triangles', ['plan_name'])
    op.create_index('ix_triangles_status', 'triangles', ['status'])
    op.create_index('ix_triangles_parent_id', 'triangles', ['parent_id'])
    op.create_index('ix_triangles_created_at', 'triangles', ['created_at'])
    op.create_index('idx_triangle_plan_status_created', 'triangles', ['plan_name', 'status', 'created_at'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=80), nullable=False, unique=True),
        sa.Column('wallet_address', sa.String(length=120), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('plan_name', sa.String(length=20), sa.ForeignKey('plans.name'), nullable=False),
        sa.Column('triangle_id', sa.Integer(), sa.ForeignKey('triangles.id'), nullable=True),
        sa.Column('position_key', sa.String(length=8), nullable=True),
        sa.Column('balance', sa.BigInteger(), server_default=sa.text('0'), nullable=False),
        sa.Column('total_earned', sa.BigInteger(), server_default=sa.text('0'), nullable=False),
        sa.Column('plan_earnings', sa.BigInteger(), server_default=sa.text('0'), nullable=False),
        sa.Column('referral_bonus', sa.BigInteger(), server_default=sa.text('0'), nullable=False),
        sa.Column('referral_code', sa.String(length=20), nullable=False, unique=True),
        sa.Column('referred_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('delete_account', sa.Boolean(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_users_plan_name', 'users', ['plan_name'])
    op.create_index('ix_users_triangle_id', 'users', ['triangle_id'])
    op.create_index('ix_users_referred_by', 'users', ['referred_by'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])
    op.create_index('idx_user_referral_code', 'users', ['referral_code'])

    op.create_table(
        'triangle_positions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('triangle_id', sa.Integer(), sa.ForeignKey('triangles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position_key', sa.String(length=8), nullable=False),
        sa.Column('slot_index', sa.Integer(), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('reserved_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('occupant_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('filled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inherited_level', sa.Integer(), nullable=True),
        sa.Column('predecessor_position_id', sa.Integer(), sa.ForeignKey('triangle_positions.id'), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('triangle_id', 'position_key', name='uq_triangle_position_key'),
        sa.CheckConstraint('level >= 0 AND level <= 3', name='chk_position_level'),
    )
    op.create_index('ix_triangle_positions_triangle_id', 'triangle_positions', ['triangle_id'])
    op.create_index('ix_triangle_positions_reserved_user_id', 'triangle_positions', ['reserved_user_id'])
    op.create_index('ix_triangle_positions_occupant_user_id', 'triangle_positions', ['occupant_user_id'])
    op.create_index('ix_triangle_positions_created_at', 'triangle_positions', ['created_at'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reference', sa.String(length=40), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('position_id', sa.Integer(), sa.ForeignKey('triangle_positions.id'), nullable=True),
        sa.Column('triangle_id', sa.Integer(), sa.ForeignKey('triangles.id'), nullable=True),
        sa.Column('source_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('rejection_reason', sa.String(length=255), nullable=True),
        sa.Column('decided_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('declared_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('type', 'source_transaction_id', 'user_id', name='uq_credit_per_source'),
        sa.CheckConstraint('amount >= 0', name='chk_transaction_amount'),
    )
    op.create_index('ix_transactions_reference', 'transactions', ['reference'])
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_position_id', 'transactions', ['position_id'])
    op.create_index('ix_transactions_triangle_id', 'transactions', ['triangle_id'])
    op.create_index('ix_transactions_source_transaction_id', 'transactions', ['source_transaction_id'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('idx_transaction_type_status', 'transactions', ['type', 'status'])

    op.create_table(
        'rejoin_tickets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('username', sa.String(length=80), nullable=False),
        sa.Column('wallet_address', sa.String(length=120), nullable=False),
        sa.Column('plan_name', sa.String(length=20), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_rejoin_tickets_user_id', 'rejoin_tickets', ['user_id'])
    op.create_index('ix_rejoin_tickets_username', 'rejoin_tickets', ['username'])
    op.create_index('ix_rejoin_tickets_wallet_address', 'rejoin_tickets', ['wallet_address'])
    op.create_index('ix_rejoin_tickets_created_at', 'rejoin_tickets', ['created_at'])

    op.create_table(
        'admin_settings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('key', sa.String(length=64), nullable=False, unique=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_admin_settings_created_at', 'admin_settings', ['created_at'])


def downgrade():
    op.drop_table('admin_settings')
    op.drop_table('rejoin_tickets')
    op.drop_table('transactions')
    op.drop_table('triangle_positions')
    op.drop_table('users')
    op.drop_table('triangles')
    op.drop_table('plans')
