"""Create membership billing tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    """
    Create the renewal, payment tracking, reconciliation, refund, webhook
    and audit tables.
    """
    op.create_table(
        'plans',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('billing_period_days', sa.Integer, nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('subscriber_id', sa.String(36), nullable=False, index=True),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id'), nullable=False, index=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'subscription_enhancements',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'),
                  nullable=False, unique=True, index=True),

        # State machine
        sa.Column('status', sa.String(32), nullable=False, server_default='active', index=True),
        sa.Column('payment_failure_state', sa.String(32), nullable=False, server_default='none'),

        # Renewal attempts
        sa.Column('renewal_attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_renewal_attempts', sa.Integer, nullable=False, server_default='3'),
        sa.Column('last_renewal_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True, index=True),

        # Grace period
        sa.Column('grace_period_starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_ends_at', sa.DateTime(timezone=True), nullable=True, index=True),

        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('payment_method', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),

        # Optimistic concurrency
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps(),
    )

    op.create_table(
        'auto_renewal_jobs',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False, index=True),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='scheduled'),
        sa.Column('attempt_type', sa.String(32), nullable=False, server_default='initial'),
        sa.Column('attempt_number', sa.Integer, nullable=False, server_default='1'),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default='3'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('payment_method', sa.String(255), nullable=True),
        sa.Column('reference', sa.String(100), nullable=True, unique=True),
        sa.Column('transaction_id', sa.String(100), nullable=True, index=True),
        sa.Column('gateway_response', sa.JSON, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True, index=True),
        *_timestamps(),
    )
    op.create_index('ix_auto_renewal_jobs_status_scheduled', 'auto_renewal_jobs', ['status', 'scheduled_at'])
    op.create_index('ix_auto_renewal_jobs_user_status', 'auto_renewal_jobs', ['user_id', 'status'])

    op.create_table(
        'pending_payments',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('payment_id', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('transaction_id', sa.String(100), nullable=True, index=True),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=True, index=True),
        sa.Column('plan_id', sa.String(36), nullable=True),
        sa.Column('renewal_job_id', sa.String(36), sa.ForeignKey('auto_renewal_jobs.id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('gateway', sa.String(50), nullable=False, server_default='mock'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        *_timestamps(),
    )

    # At most one open attempt per (user, subscription)
    op.create_index(
        'uq_pending_payments_open_attempt',
        'pending_payments',
        ['user_id', 'subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('user_id', sa.String(36), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=True, index=True),
        sa.Column('reference', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('transaction_id', sa.String(100), nullable=True, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('gateway', sa.String(50), nullable=False, server_default='mock'),
        sa.Column('status', sa.String(32), nullable=False, server_default='completed'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.String(36), nullable=False, unique=True, index=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='running', index=True),
        sa.Column('period_start', sa.Date, nullable=True),
        sa.Column('period_end', sa.Date, nullable=True),

        # Totals
        sa.Column('total_matched', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_unmatched_app', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_unmatched_gateway', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_amount_mismatch', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_discrepancy', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('total_app_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('total_gateway_amount', sa.Numeric(14, 2), nullable=False, server_default='0'),

        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_by', sa.String(36), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'reconciliation_items',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('reconciliation_run_id', sa.Integer, sa.ForeignKey('reconciliation_runs.id'),
                  nullable=False, index=True),
        sa.Column('source', sa.String(32), nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True, index=True),
        sa.Column('reference', sa.String(100), nullable=True, index=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reconciliation_status', sa.String(32), nullable=False, index=True),
        sa.Column('match_reference', sa.String(100), nullable=True, index=True),
        sa.Column('discrepancy_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
    )

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('refundable_kind', sa.String(32), nullable=False),
        sa.Column('refundable_id', sa.String(36), nullable=False),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=False, index=True),
        sa.Column('processed_by', sa.String(36), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending', index=True),
        sa.Column('reason', sa.String(32), nullable=False, server_default='other'),
        sa.Column('customer_notes', sa.Text, nullable=True),
        sa.Column('admin_notes', sa.Text, nullable=True),
        sa.Column('gateway', sa.String(50), nullable=True),
        sa.Column('gateway_refund_id', sa.String(100), nullable=True),
        sa.Column('gateway_response', sa.JSON, nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_refunds_refundable', 'refunds', ['refundable_kind', 'refundable_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True, index=True),
        sa.Column('provider', sa.String(50), nullable=False, index=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('order_reference', sa.String(100), nullable=True, index=True),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('signature', sa.Text, nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='received'),
        sa.Column('error', sa.Text, nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_webhook_events_provider_external', 'webhook_events', ['provider', 'external_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True, index=True),

        # Who
        sa.Column('actor_id', sa.String(100), nullable=False, index=True),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('actor_email', sa.String(255), nullable=True),
        sa.Column('ip_address', sa.String(50), nullable=True),
        sa.Column('request_id', sa.String(64), nullable=True),

        # What
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('target_type', sa.String(50), nullable=False, index=True),
        sa.Column('target_id', sa.String(64), nullable=False, index=True),

        # State tracking
        sa.Column('before_state', JSONB().with_variant(sa.JSON(), 'sqlite'), nullable=True),
        sa.Column('after_state', JSONB().with_variant(sa.JSON(), 'sqlite'), nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('action_metadata', JSONB().with_variant(sa.JSON(), 'sqlite'), nullable=True),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_logs_target', 'audit_logs', ['target_type', 'target_id', 'created_at'])


def downgrade():
    op.drop_index('ix_audit_logs_target', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_webhook_events_provider_external', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_refunds_refundable', table_name='refunds')
    op.drop_table('refunds')
    op.drop_table('reconciliation_items')
    op.drop_table('reconciliation_runs')
    op.drop_table('payments')
    op.drop_index('uq_pending_payments_open_attempt', table_name='pending_payments')
    op.drop_table('pending_payments')
    op.drop_index('ix_auto_renewal_jobs_user_status', table_name='auto_renewal_jobs')
    op.drop_index('ix_auto_renewal_jobs_status_scheduled', table_name='auto_renewal_jobs')
    op.drop_table('auto_renewal_jobs')
    op.drop_table('subscription_enhancements')
    op.drop_table('subscriptions')
    op.drop_table('plans')
