"""Initial database schema

Revision ID: 0001
Revises:
Create Date: 2025-10-20 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ACTIVE_ENTRY = sa.text("status IN ('PENDING', 'NOTIFIED')")
NOTIFIED_ENTRY = sa.text("status = 'NOTIFIED'")


def upgrade() -> None:
    """Upgrade database schema."""
    # Courts
    op.create_table('resources',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('length(name) > 0', name='ck_resource_name_not_empty'),
        sa.CheckConstraint('length(category) > 0', name='ck_resource_category_not_empty'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )
    op.create_index(op.f('ix_resources_category'), 'resources', ['category'], unique=False)

    # Cart transactions
    op.create_table('cart_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('owner_is_staff', sa.Boolean(), nullable=False),
        sa.Column('total_price_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('approval_status', sa.String(length=20), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('proof_of_payment', sa.String(length=512), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('checked_out_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=500), nullable=True),
        sa.Column('promoted_from_entry_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('total_price_amount >= 0', name='ck_cart_tx_total_not_negative'),
        sa.CheckConstraint('length(user_id) > 0', name='ck_cart_tx_user_not_empty'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_cart_transactions_user_id'), 'cart_transactions', ['user_id'], unique=False)
    op.create_index(op.f('ix_cart_transactions_status'), 'cart_transactions', ['status'], unique=False)
    op.create_index(
        op.f('ix_cart_transactions_approval_status'), 'cart_transactions', ['approval_status'], unique=False
    )
    op.create_index(
        op.f('ix_cart_transactions_promoted_from_entry_id'), 'cart_transactions', ['promoted_from_entry_id'],
        unique=False
    )

    # Bookings
    op.create_table('bookings',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('resource_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('owner_is_staff', sa.Boolean(), nullable=False),
        sa.Column('booking_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('price_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('proof_of_payment', sa.String(length=512), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('cart_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('waitlist_entry_id', sa.Uuid(), nullable=True),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=500), nullable=True),
        sa.Column('checked_in_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('price_amount >= 0', name='ck_booking_price_not_negative'),
        sa.CheckConstraint('length(user_id) > 0', name='ck_booking_user_not_empty'),
        sa.ForeignKeyConstraint(['resource_id'], ['resources.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['cart_transaction_id'], ['cart_transactions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bookings_resource_date_start', 'bookings', ['resource_id', 'booking_date', 'start_time'])
    op.create_index(op.f('ix_bookings_user_id'), 'bookings', ['user_id'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)
    op.create_index(op.f('ix_bookings_cart_transaction_id'), 'bookings', ['cart_transaction_id'], unique=False)
    op.create_index(op.f('ix_bookings_waitlist_entry_id'), 'bookings', ['waitlist_entry_id'], unique=False)

    # Cart items
    op.create_table('cart_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('cart_transaction_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('resource_id', sa.Uuid(), nullable=False),
        sa.Column('booking_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('price_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=True),
        sa.Column('waitlist_entry_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('price_amount >= 0', name='ck_cart_item_price_not_negative'),
        sa.ForeignKeyConstraint(['cart_transaction_id'], ['cart_transactions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['resource_id'], ['resources.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cart_items_resource_date_start', 'cart_items', ['resource_id', 'booking_date', 'start_time'])
    op.create_index(op.f('ix_cart_items_cart_transaction_id'), 'cart_items', ['cart_transaction_id'], unique=False)
    op.create_index(op.f('ix_cart_items_user_id'), 'cart_items', ['user_id'], unique=False)
    op.create_index(op.f('ix_cart_items_status'), 'cart_items', ['status'], unique=False)
    op.create_index(op.f('ix_cart_items_booking_id'), 'cart_items', ['booking_id'], unique=False)
    op.create_index(op.f('ix_cart_items_waitlist_entry_id'), 'cart_items', ['waitlist_entry_id'], unique=False)

    # Waitlist entries
    op.create_table('waitlist_entries',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('resource_id', sa.Uuid(), nullable=False),
        sa.Column('booking_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('price_amount', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('pending_booking_id', sa.Uuid(), nullable=True),
        sa.Column('promoted_booking_id', sa.Uuid(), nullable=True),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('position > 0', name='ck_waitlist_position_positive'),
        sa.CheckConstraint('price_amount >= 0', name='ck_waitlist_price_not_negative'),
        sa.ForeignKeyConstraint(['resource_id'], ['resources.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_waitlist_resource_date_start_status', 'waitlist_entries',
        ['resource_id', 'booking_date', 'start_time', 'status']
    )
    op.create_index(op.f('ix_waitlist_entries_user_id'), 'waitlist_entries', ['user_id'], unique=False)
    op.create_index(
        op.f('ix_waitlist_entries_pending_booking_id'), 'waitlist_entries', ['pending_booking_id'], unique=False
    )
    op.create_index(op.f('ix_waitlist_entries_expires_at'), 'waitlist_entries', ['expires_at'], unique=False)
    op.create_index(
        'uq_waitlist_active_position', 'waitlist_entries',
        ['resource_id', 'booking_date', 'start_time', 'end_time', 'position'],
        unique=True,
        postgresql_where=ACTIVE_ENTRY,
        sqlite_where=ACTIVE_ENTRY,
    )
    op.create_index(
        'uq_waitlist_single_notified', 'waitlist_entries',
        ['resource_id', 'booking_date', 'start_time', 'end_time'],
        unique=True,
        postgresql_where=NOTIFIED_ENTRY,
        sqlite_where=NOTIFIED_ENTRY,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('waitlist_entries')
    op.drop_table('cart_items')
    op.drop_table('bookings')
    op.drop_table('cart_transactions')
    op.drop_table('resources')
