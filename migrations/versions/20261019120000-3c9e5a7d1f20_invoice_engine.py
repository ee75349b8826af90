"""Invoice engine tables

Revision ID: 3c9e5a7d1f20
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3c9e5a7d1f20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLModel stores enum member names
invoice_kind_enum = "invoicekind"
invoice_kind_enum_values = ['PROFORMA', 'FISCAL']
invoice_status_enum = "invoicestatus"
invoice_status_enum_values = ['ISSUED', 'CANCELLED']
payment_status_enum = "paymentstatus"
payment_status_enum_values = ['PENDING', 'PAID']


def create_enum(name: str, values: list):
    """Create an enum type safely."""
    enum = postgresql.ENUM(*values, name=name, create_type=False)
    enum.create(op.get_bind(), checkfirst=True)
    return enum


def upgrade() -> None:
    """Upgrade schema."""
    kind_enum = create_enum(invoice_kind_enum, invoice_kind_enum_values)
    status_enum = create_enum(invoice_status_enum, invoice_status_enum_values)
    payment_enum = create_enum(payment_status_enum, payment_status_enum_values)

    op.create_table('invoice',
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('id', sqlmodel.sql.sqltypes.AutoString(length=36), nullable=False),
                    sa.Column('invoice_number', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('series', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('sequence_number', sa.Integer(), nullable=True),
                    sa.Column('kind', kind_enum, nullable=False),
                    sa.Column('status', status_enum, nullable=False),
                    sa.Column('payment_status', payment_enum, nullable=False),
                    sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('package_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('package_name', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('hours', sa.Numeric(precision=10, scale=2), nullable=True),
                    sa.Column('price_per_hour', sa.Numeric(precision=12, scale=2), nullable=True),
                    sa.Column('validity_days', sa.Integer(), nullable=True),
                    sa.Column('payment_method', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('encrypted_buyer_data', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('subtotal', sa.Numeric(precision=14, scale=2), nullable=False),
                    sa.Column('vat_percentage', sa.Numeric(precision=5, scale=2), nullable=False),
                    sa.Column('vat_amount', sa.Numeric(precision=14, scale=2), nullable=False),
                    sa.Column('total_amount', sa.Numeric(precision=14, scale=2), nullable=False),
                    sa.Column('prices_include_vat', sa.Boolean(), nullable=False),
                    sa.Column('currency', sqlmodel.sql.sqltypes.AutoString(length=3), nullable=False),
                    sa.Column('target_currency', sqlmodel.sql.sqltypes.AutoString(length=3), nullable=True),
                    sa.Column('conversion_requested', sa.Boolean(), nullable=False),
                    sa.Column('conversion_skipped', sa.Boolean(), nullable=False),
                    sa.Column('conversion_skip_reason', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('converted_amounts', postgresql.JSON(astext_type=sa.Text()), nullable=True),
                    sa.Column('exchange_rate_snapshot', postgresql.JSON(astext_type=sa.Text()), nullable=True),
                    sa.Column('payment_url', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('document_ref', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('notification_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('side_effects', postgresql.JSON(astext_type=sa.Text()), nullable=True),
                    sa.Column('proforma_invoice_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('fiscal_invoice_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
                    sa.Column('payment_details', postgresql.JSON(astext_type=sa.Text()), nullable=True),
                    sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
                    sa.Column('cancellation_reason', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.ForeignKeyConstraint(['proforma_invoice_id'], ['invoice.id'], ),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index(op.f('ix_invoice_invoice_number'), 'invoice', ['invoice_number'], unique=True)
    op.create_index(op.f('ix_invoice_series'), 'invoice', ['series'], unique=False)
    op.create_index(op.f('ix_invoice_kind'), 'invoice', ['kind'], unique=False)
    op.create_index(op.f('ix_invoice_status'), 'invoice', ['status'], unique=False)
    op.create_index(op.f('ix_invoice_payment_status'), 'invoice', ['payment_status'], unique=False)
    op.create_index(op.f('ix_invoice_user_id'), 'invoice', ['user_id'], unique=False)
    op.create_index(op.f('ix_invoice_proforma_invoice_id'), 'invoice', ['proforma_invoice_id'], unique=False)
    op.create_index(op.f('ix_invoice_fiscal_invoice_id'), 'invoice', ['fiscal_invoice_id'], unique=False)

    op.create_table('seriescounter',
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('series', sqlmodel.sql.sqltypes.AutoString(length=32), nullable=False),
                    sa.Column('current_value', sa.Integer(), nullable=False),
                    sa.Column('start_value', sa.Integer(), nullable=False),
                    sa.PrimaryKeyConstraint('series')
                    )

    op.create_table('sideeffectfailure',
                    sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('invoice_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('invoice_number', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.Column('step', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('error_message', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
                    sa.Column('error_details', postgresql.JSON(astext_type=sa.Text()), nullable=True),
                    sa.Column('is_resolved', sa.Boolean(), nullable=False),
                    sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
                    sa.Column('resolution_notes', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index(op.f('ix_sideeffectfailure_invoice_id'), 'sideeffectfailure', ['invoice_id'], unique=False)
    op.create_index(op.f('ix_sideeffectfailure_step'), 'sideeffectfailure', ['step'], unique=False)
    op.create_index(op.f('ix_sideeffectfailure_is_resolved'), 'sideeffectfailure', ['is_resolved'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_sideeffectfailure_is_resolved'), table_name='sideeffectfailure')
    op.drop_index(op.f('ix_sideeffectfailure_step'), table_name='sideeffectfailure')
    op.drop_index(op.f('ix_sideeffectfailure_invoice_id'), table_name='sideeffectfailure')
    op.drop_table('sideeffectfailure')
    op.drop_table('seriescounter')
    op.drop_index(op.f('ix_invoice_fiscal_invoice_id'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_proforma_invoice_id'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_user_id'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_payment_status'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_status'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_kind'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_series'), table_name='invoice')
    op.drop_index(op.f('ix_invoice_invoice_number'), table_name='invoice')
    op.drop_table('invoice')
    postgresql.ENUM(name=payment_status_enum).drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name=invoice_status_enum).drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name=invoice_kind_enum).drop(op.get_bind(), checkfirst=True)
