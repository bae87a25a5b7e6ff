"""create_lending_tables

Revision ID: 3b1f6c2a9d4e
Revises:
Create Date: 2026-06-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b1f6c2a9d4e'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_PAYMENT_PREDICATE = "status IN ('pending', 'confirming')"


def upgrade() -> None:
    op.create_table(
        'locations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='地点名称'),
        sa.Column('location_code', sa.String(length=50), nullable=True, comment='地点编码'),
        sa.Column('deposit_amount', sa.Integer(), nullable=True, comment='押金（分）'),
        sa.Column('processing_fee_bps', sa.Integer(), nullable=True, comment='手续费（基点）'),
        sa.Column('inventory_count', sa.Integer(), nullable=False, server_default='0', comment='库存'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否启用'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_locations'),
        sa.UniqueConstraint('location_code', name='uq_locations_location_code'),
    )
    op.create_index('ix_locations_id', 'locations', ['id'], unique=False)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(length=50), nullable=False, comment='用户名'),
        sa.Column('email', sa.String(length=100), nullable=True, comment='邮箱'),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='borrower', comment='角色: borrower/operator/admin'),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否管理员'),
        sa.Column('location_id', sa.Integer(), nullable=True, comment='运营者所属地点'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否激活'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ondelete='SET NULL', name='fk_users_location_id_locations'),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_id', 'users', ['id'], unique=False)
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_location_id', 'users', ['location_id'], unique=False)

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False, comment='地点ID'),
        sa.Column('borrower_name', sa.String(length=200), nullable=False, comment='借用人'),
        sa.Column('borrower_email', sa.String(length=200), nullable=True),
        sa.Column('borrower_phone', sa.String(length=50), nullable=True),
        sa.Column('deposit_amount', sa.Integer(), nullable=False, comment='押金（分）'),
        sa.Column('deposit_payment_method', sa.String(length=20), nullable=False, server_default='pending', comment='押金支付方式'),
        sa.Column('is_returned', sa.Boolean(), nullable=False, server_default=sa.false(), comment='是否已归还'),
        sa.Column('borrow_date', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('expected_return_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_return_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_amount', sa.Integer(), nullable=True, comment='退款金额（分）'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('pay_later_status', sa.String(length=40), nullable=True, comment='延迟扣款状态'),
        sa.Column('magic_link_token_hash', sa.String(length=64), nullable=True, comment='魔法链接令牌 SHA-256'),
        sa.Column('magic_link_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount_planned_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('stripe_customer_id', sa.String(length=100), nullable=True),
        sa.Column('stripe_setup_intent_id', sa.String(length=100), nullable=True),
        sa.Column('stripe_payment_method_id', sa.String(length=100), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=100), nullable=True),
        sa.Column('charge_error_code', sa.String(length=100), nullable=True),
        sa.Column('charge_error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ondelete='RESTRICT', name='fk_transactions_location_id_locations'),
        sa.PrimaryKeyConstraint('id', name='pk_transactions'),
        sa.UniqueConstraint('stripe_setup_intent_id', name='uq_transactions_stripe_setup_intent_id'),
        sa.UniqueConstraint('stripe_payment_intent_id', name='uq_transactions_stripe_payment_intent_id'),
    )
    op.create_index('ix_transactions_id', 'transactions', ['id'], unique=False)
    op.create_index('ix_transactions_location_id', 'transactions', ['location_id'], unique=False)
    op.create_index('ix_transactions_is_returned', 'transactions', ['is_returned'], unique=False)
    op.create_index('ix_transactions_actual_return_date', 'transactions', ['actual_return_date'], unique=False)
    op.create_index('ix_transactions_pay_later_status', 'transactions', ['pay_later_status'], unique=False)
    op.create_index('ix_transactions_location_returned', 'transactions', ['location_id', 'is_returned'], unique=False)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False, comment='交易ID'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, comment='支付方式: cash/card/card_deferred'),
        sa.Column('payment_provider', sa.String(length=50), nullable=True, comment='支付提供商'),
        sa.Column('external_payment_id', sa.String(length=200), nullable=True, comment='外部支付ID'),
        sa.Column('deposit_amount', sa.Integer(), nullable=False, comment='押金（分）'),
        sa.Column('processing_fee', sa.Integer(), nullable=False, server_default='0', comment='手续费（分）'),
        sa.Column('total_amount', sa.Integer(), nullable=False, comment='总额（分）'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ondelete='RESTRICT', name='fk_payments_transaction_id_transactions'),
        sa.PrimaryKeyConstraint('id', name='pk_payments'),
        sa.UniqueConstraint('external_payment_id', name='uq_payments_external_payment_id'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'], unique=False)
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)
    op.create_index('ix_payments_transaction_status', 'payments', ['transaction_id', 'status'], unique=False)
    # 每笔交易至多一条进行中的支付
    op.create_index(
        'uq_payments_active_transaction',
        'payments',
        ['transaction_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PAYMENT_PREDICATE),
        sqlite_where=sa.text(ACTIVE_PAYMENT_PREDICATE),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('actor_type', sa.String(length=20), nullable=False, comment='操作者类型'),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('before', sa.JSON(), nullable=True),
        sa.Column('after', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_audit_logs'),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'], unique=False)
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'], unique=False)
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'], unique=False)
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'], unique=False)
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_audit_logs_entity', table_name='audit_logs')
    op.drop_index('ix_audit_logs_created_at', table_name='audit_logs')
    op.drop_index('ix_audit_logs_action', table_name='audit_logs')
    op.drop_index('ix_audit_logs_actor_user_id', table_name='audit_logs')
    op.drop_index('ix_audit_logs_id', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('uq_payments_active_transaction', table_name='payments')
    op.drop_index('ix_payments_transaction_status', table_name='payments')
    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_transaction_id', table_name='payments')
    op.drop_index('ix_payments_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_transactions_location_returned', table_name='transactions')
    op.drop_index('ix_transactions_pay_later_status', table_name='transactions')
    op.drop_index('ix_transactions_actual_return_date', table_name='transactions')
    op.drop_index('ix_transactions_is_returned', table_name='transactions')
    op.drop_index('ix_transactions_location_id', table_name='transactions')
    op.drop_index('ix_transactions_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_users_location_id', table_name='users')
    op.drop_index('ix_users_username', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')

    op.drop_index('ix_locations_id', table_name='locations')
    op.drop_table('locations')
