"""initial_reconciliation_schema

Revision ID: a0c1e2d3f4b5
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates the reconciliation tables with their natural-key uniqueness
constraints, then makes audit_records append-only for the app role.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a0c1e2d3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _uuid(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'purchase_orders',
        _id(),
        _uuid('tenant_id'),
        sa.Column('po_number', sa.String(100), nullable=False),
        _uuid('vendor_id', nullable=True),
        sa.Column('total_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('order_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_purchase_orders_tenant_id', 'purchase_orders', ['tenant_id'])
    op.create_index('ix_purchase_orders_po_number', 'purchase_orders', ['po_number'])

    op.create_table(
        'goods_receipts',
        _id(),
        _uuid('tenant_id'),
        sa.Column('grn_number', sa.String(100), nullable=False),
        _uuid('purchase_order_id', nullable=True),
        sa.Column('total_amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_goods_receipts_tenant_id', 'goods_receipts', ['tenant_id'])

    op.create_table(
        'invoices',
        _id(),
        _uuid('tenant_id'),
        _uuid('vendor_id', nullable=True),
        sa.Column('invoice_number', sa.String(100), nullable=True),
        sa.Column('invoice_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount', sa.Numeric(18, 4), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        _uuid('purchase_order_id', nullable=True),
        _uuid('goods_receipt_id', nullable=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expected_next_step', sa.Text(), nullable=True),
        sa.Column('expected_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id']),
        sa.ForeignKeyConstraint(['goods_receipt_id'], ['goods_receipts.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoices_tenant_id', 'invoices', ['tenant_id'])
    op.create_index('ix_invoices_vendor_id', 'invoices', ['vendor_id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'])

    op.create_table(
        'invoice_status_timeline',
        _id(),
        _uuid('invoice_id'),
        _uuid('tenant_id'),
        sa.Column('from_status', sa.String(50), nullable=True),
        sa.Column('to_status', sa.String(50), nullable=False),
        sa.Column('changed_by', sa.String(100), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoice_status_timeline_invoice_id', 'invoice_status_timeline', ['invoice_id'])

    op.create_table(
        'audit_records',
        _id(),
        _uuid('tenant_id', nullable=True),
        sa.Column('entity_type', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('actor_id', sa.String(100), nullable=False),
        sa.Column('old_state', sa.JSON(), nullable=True),
        sa.Column('new_state', sa.JSON(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('previous_hash', sa.String(64), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('proof_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('workflow_stage', sa.String(100), nullable=True),
        sa.Column('workflow_state', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(50), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('request_id', sa.String(100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'entity_id', 'sequence', name='uq_audit_records_chain_position'),
    )
    op.create_index('ix_audit_records_entity_proof', 'audit_records', ['entity_type', 'entity_id', 'proof_timestamp'])
    op.create_index('ix_audit_records_tenant_id', 'audit_records', ['tenant_id'])
    op.create_index('ix_audit_records_action', 'audit_records', ['action'])
    op.create_index('ix_audit_records_actor_id', 'audit_records', ['actor_id'])
    op.create_index('ix_audit_records_workflow_stage', 'audit_records', ['workflow_stage'])

    op.create_table(
        'three_way_matches',
        _id(),
        _uuid('tenant_id'),
        _uuid('purchase_order_id'),
        _uuid('goods_receipt_id'),
        _uuid('invoice_id'),
        sa.Column('po_amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('grn_amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('invoice_amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('variance_amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('matching_score', sa.Numeric(5, 2), nullable=False),
        sa.Column('matching_status', sa.String(20), nullable=False),
        sa.Column('approval_status', sa.String(20), nullable=True),
        sa.Column('approved_by', sa.String(100), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.String(100), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('payment_eligible', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id']),
        sa.ForeignKeyConstraint(['goods_receipt_id'], ['goods_receipts.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'purchase_order_id', 'goods_receipt_id', 'invoice_id', 'tenant_id',
            name='uq_three_way_matches_triple',
        ),
    )
    op.create_index('ix_three_way_matches_invoice_id', 'three_way_matches', ['invoice_id'])
    op.create_index('ix_three_way_matches_tenant_id', 'three_way_matches', ['tenant_id'])

    op.create_table(
        'invoice_exceptions',
        _id(),
        _uuid('tenant_id'),
        _uuid('invoice_id'),
        sa.Column('exception_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('exception_data', sa.JSON(), nullable=False),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_by', sa.String(100), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoice_exceptions_invoice_id', 'invoice_exceptions', ['invoice_id'])
    op.create_index('ix_invoice_exceptions_tenant_id', 'invoice_exceptions', ['tenant_id'])
    op.create_index(
        'uq_invoice_exceptions_open_type',
        'invoice_exceptions',
        ['invoice_id', 'exception_type'],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
    )

    op.create_table(
        'invoice_staleness',
        _id(),
        _uuid('tenant_id'),
        _uuid('invoice_id'),
        sa.Column('current_status', sa.String(50), nullable=False),
        sa.Column('days_since_update', sa.Integer(), nullable=False),
        sa.Column('staleness_level', sa.String(20), nullable=False),
        sa.Column('last_status_change', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expected_action', sa.Text(), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notification_sent', sa.Boolean(), nullable=False),
        sa.Column('notification_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_by', sa.String(100), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_id'),
    )
    op.create_index('ix_invoice_staleness_tenant_id', 'invoice_staleness', ['tenant_id'])

    op.create_table(
        'auto_approval_rules',
        _id(),
        _uuid('tenant_id'),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('rule_type', sa.String(50), nullable=False),
        sa.Column('matching_score_threshold', sa.Numeric(5, 2), nullable=False),
        sa.Column('variance_threshold', sa.Numeric(18, 4), nullable=False),
        sa.Column('auto_approve', sa.Boolean(), nullable=False),
        sa.Column('auto_approve_by', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_auto_approval_rules_tenant_id', 'auto_approval_rules', ['tenant_id'])

    op.create_table(
        'auto_approval_logs',
        _id(),
        _uuid('tenant_id'),
        _uuid('rule_id'),
        _uuid('invoice_id'),
        _uuid('match_id'),
        sa.Column('matching_score', sa.Numeric(5, 2), nullable=False),
        sa.Column('variance_amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('criteria_met', sa.JSON(), nullable=False),
        sa.Column('approved_by', sa.String(100), nullable=False),
        _uuid('audit_record_id', nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['rule_id'], ['auto_approval_rules.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['match_id'], ['three_way_matches.id']),
        sa.ForeignKeyConstraint(['audit_record_id'], ['audit_records.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_auto_approval_logs_invoice_id', 'auto_approval_logs', ['invoice_id'])

    op.create_table(
        'employee_claims',
        _id(),
        _uuid('tenant_id'),
        _uuid('employee_id'),
        _uuid('charge_to_tenant_id', nullable=True),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(18, 4), nullable=False),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('claim_date', sa.Date(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('receipt_file_id', sa.String(100), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('auto_approved', sa.Boolean(), nullable=False),
        _uuid('invoice_id', nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_employee_claims_employee_id', 'employee_claims', ['employee_id'])
    op.create_index('ix_employee_claims_category', 'employee_claims', ['category'])

    op.create_table(
        'tenant_access',
        _id(),
        _uuid('user_id'),
        _uuid('tenant_id'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('granted_by', sa.String(100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'tenant_id', name='uq_tenant_access_user_tenant'),
    )

    op.create_table(
        'notifications',
        _id(),
        _uuid('tenant_id'),
        sa.Column('recipient', sa.String(100), nullable=False),
        sa.Column('notification_type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('related_entity_type', sa.String(100), nullable=True),
        sa.Column('related_entity_id', sa.String(64), nullable=True),
        sa.Column('priority', sa.String(20), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_related_entity_id', 'notifications', ['related_entity_id'])

    op.create_table(
        'config_layers',
        _id(),
        sa.Column('scope', sa.String(30), nullable=False),
        _uuid('tenant_id', nullable=True),
        _uuid('user_id', nullable=True),
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope', 'tenant_id', 'user_id', 'key', name='uq_config_layers_scope_key'),
    )

    # Append-only ledger: no UPDATE/DELETE for application roles.
    op.execute("REVOKE UPDATE, DELETE ON audit_records FROM PUBLIC;")
    op.execute("GRANT SELECT, INSERT ON audit_records TO PUBLIC;")


def downgrade() -> None:
    op.execute("GRANT UPDATE, DELETE ON audit_records TO PUBLIC;")
    for table in (
        'config_layers',
        'notifications',
        'tenant_access',
        'employee_claims',
        'auto_approval_logs',
        'auto_approval_rules',
        'invoice_staleness',
        'invoice_exceptions',
        'three_way_matches',
        'audit_records',
        'invoice_status_timeline',
        'invoices',
        'goods_receipts',
        'purchase_orders',
    ):
        op.drop_table(table)
