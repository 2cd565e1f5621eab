"""Create affiliate and email sequence tables

Revision ID: 001_engines
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_engines'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _tenant_id():
    return sa.Column('tenant_id', UUID(as_uuid=True), nullable=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    ]


def upgrade():
    """Create tenant, affiliate program and email sequence tables"""

    # ====================
    # TENANTS TABLE
    # ====================
    op.create_table(
        'tenants',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('subdomain', sa.String(100), unique=True, nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('settings', JSONB, server_default='{}', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_tenants_status', 'tenants', ['status'])

    # ====================
    # COMMISSION PLANS TABLE
    # ====================
    op.create_table(
        'commission_plans',
        _id(),
        _tenant_id(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('tier1_rate', sa.Numeric(5, 2), server_default='0', nullable=False),
        sa.Column('tier2_rate', sa.Numeric(5, 2), server_default='0', nullable=False),
        sa.Column('tier3_rate', sa.Numeric(5, 2), server_default='0', nullable=False),
        sa.Column('cookie_duration_days', sa.Integer, server_default='30', nullable=False),
        sa.Column('commission_hold_days', sa.Integer, server_default='30', nullable=False),
        sa.Column('minimum_payout', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=True),
        sa.Column('is_default', sa.Boolean, server_default='false', nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_commission_plans_tenant_id', 'commission_plans', ['tenant_id'])

    # ====================
    # AFFILIATES TABLE
    # ====================
    op.create_table(
        'affiliates',
        _id(),
        _tenant_id(),
        sa.Column('affiliate_code', sa.String(50), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('parent_affiliate_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliates.id', ondelete='SET NULL'), nullable=True),
        sa.Column('commission_plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('commission_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, ACTIVE, INACTIVE, SUSPENDED, REJECTED'),
        sa.Column('total_earnings', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('total_paid', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('pending_balance', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('total_clicks', sa.Integer, server_default='0', nullable=False),
        sa.Column('total_conversions', sa.Integer, server_default='0', nullable=False),
        sa.Column('conversion_rate', sa.Numeric(5, 2), server_default='0', nullable=False),
        sa.Column('payment_info', JSONB, server_default='{}', nullable=False),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payout_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payout_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'affiliate_code', name='uq_affiliates_tenant_code'),
    )
    op.create_index('ix_affiliates_tenant_id', 'affiliates', ['tenant_id'])
    op.create_index('ix_affiliates_status', 'affiliates', ['status'])
    op.create_index('ix_affiliates_parent_affiliate_id', 'affiliates', ['parent_affiliate_id'])

    # ====================
    # AFFILIATE CLICKS TABLE
    # ====================
    op.create_table(
        'affiliate_clicks',
        _id(),
        _tenant_id(),
        sa.Column('affiliate_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('visitor_id', sa.String(100), nullable=False),
        sa.Column('ip_address', sa.String(50), nullable=True),
        sa.Column('user_agent', sa.Text, nullable=True),
        sa.Column('referrer', sa.Text, nullable=True),
        sa.Column('landing_page', sa.Text, nullable=True),
        sa.Column('device_type', sa.String(20), nullable=True),
        sa.Column('browser', sa.String(50), nullable=True),
        sa.Column('os', sa.String(50), nullable=True),
        sa.Column('utm_params', JSONB, server_default='{}', nullable=False),
        sa.Column('converted', sa.Boolean, server_default='false', nullable=False),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('order_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_affiliate_clicks_tenant_id', 'affiliate_clicks', ['tenant_id'])
    op.create_index('ix_affiliate_clicks_affiliate_id', 'affiliate_clicks', ['affiliate_id'])
    op.create_index('ix_affiliate_clicks_visitor', 'affiliate_clicks', ['tenant_id', 'visitor_id', 'created_at'])

    # ====================
    # PAYOUTS TABLE
    # ====================
    op.create_table(
        'payouts',
        _id(),
        _tenant_id(),
        sa.Column('affiliate_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED'),
        sa.Column('method', sa.String(50), server_default='MANUAL', nullable=False,
                  comment='PAYPAL, BANK_TRANSFER, STRIPE, MANUAL'),
        sa.Column('payment_details', JSONB, server_default='{}', nullable=False),
        sa.Column('commission_ids', JSONB, server_default='[]', nullable=False),
        sa.Column('commission_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_payouts_tenant_id', 'payouts', ['tenant_id'])
    op.create_index('ix_payouts_affiliate_status', 'payouts', ['affiliate_id', 'status'])

    # ====================
    # COMMISSIONS TABLE
    # ====================
    op.create_table(
        'commissions',
        _id(),
        _tenant_id(),
        sa.Column('affiliate_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('commission_plan_id', UUID(as_uuid=True),
                  sa.ForeignKey('commission_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('order_id', sa.String(100), nullable=True),
        sa.Column('product_id', sa.String(100), nullable=True),
        sa.Column('tier', sa.Integer, server_default='1', nullable=False),
        sa.Column('order_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, APPROVED, PAID, REJECTED, REFUNDED'),
        sa.Column('payable_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_id', UUID(as_uuid=True),
                  sa.ForeignKey('payouts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_commissions_tenant_id', 'commissions', ['tenant_id'])
    op.create_index('ix_commissions_order_id', 'commissions', ['order_id'])
    op.create_index('ix_commissions_payout_id', 'commissions', ['payout_id'])
    op.create_index('ix_commissions_affiliate_status', 'commissions', ['affiliate_id', 'status'])
    op.create_index('ix_commissions_payable', 'commissions', ['status', 'payable_at'])

    # ====================
    # AFFILIATE LEDGER TABLE
    # ====================
    op.create_table(
        'affiliate_ledger_entries',
        _id(),
        _tenant_id(),
        sa.Column('affiliate_id', UUID(as_uuid=True),
                  sa.ForeignKey('affiliates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('commission_id', UUID(as_uuid=True),
                  sa.ForeignKey('commissions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payout_id', UUID(as_uuid=True), nullable=True),
        sa.Column('entry_type', sa.String(50), nullable=False, comment='EARNED, REVERSED, PAID'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('earnings_delta', sa.Numeric(12, 2), nullable=False),
        sa.Column('pending_delta', sa.Numeric(12, 2), nullable=False),
        sa.Column('paid_delta', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('commission_id', 'entry_type', name='uq_ledger_commission_entry_type'),
    )
    op.create_index('ix_affiliate_ledger_entries_tenant_id', 'affiliate_ledger_entries', ['tenant_id'])
    op.create_index('ix_affiliate_ledger_entries_affiliate_id', 'affiliate_ledger_entries', ['affiliate_id'])

    # ====================
    # CONTACTS TABLE
    # ====================
    op.create_table(
        'contacts',
        _id(),
        _tenant_id(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('tags', JSONB, server_default='[]', nullable=False),
        sa.Column('status', sa.String(50), server_default='ACTIVE', nullable=False,
                  comment='ACTIVE, UNSUBSCRIBED, BOUNCED'),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_contacts_tenant_email'),
    )
    op.create_index('ix_contacts_tenant_id', 'contacts', ['tenant_id'])

    # ====================
    # EMAIL SEQUENCES TABLES
    # ====================
    op.create_table(
        'email_sequences',
        _id(),
        _tenant_id(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('status', sa.String(50), server_default='DRAFT', nullable=False,
                  comment='DRAFT, ACTIVE, PAUSED, ARCHIVED'),
        sa.Column('trigger', sa.String(50), server_default='MANUAL', nullable=False,
                  comment='MANUAL, FORM_SUBMISSION, TAG_ADDED, DEAL_STAGE'),
        sa.Column('allow_reenrollment', sa.Boolean, server_default='false', nullable=False),
        sa.Column('stop_on_unsubscribe', sa.Boolean, server_default='true', nullable=False),
        sa.Column('send_time', sa.String(5), nullable=True),
        sa.Column('total_enrolled', sa.Integer, server_default='0', nullable=False),
        sa.Column('active_subscribers', sa.Integer, server_default='0', nullable=False),
        sa.Column('completed_subscribers', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_email_sequences_tenant_id', 'email_sequences', ['tenant_id'])

    op.create_table(
        'email_sequence_steps',
        _id(),
        _tenant_id(),
        sa.Column('sequence_id', UUID(as_uuid=True),
                  sa.ForeignKey('email_sequences.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('html_content', sa.Text, nullable=False),
        sa.Column('text_content', sa.Text, nullable=True),
        sa.Column('from_name', sa.String(200), nullable=True),
        sa.Column('from_email', sa.String(255), nullable=True),
        sa.Column('delay_type', sa.String(50), server_default='IMMEDIATE', nullable=False,
                  comment='IMMEDIATE, HOURS, DAYS, WEEKS'),
        sa.Column('delay_value', sa.Integer, server_default='0', nullable=False),
        sa.Column('conditions', JSONB, server_default='[]', nullable=False),
        sa.Column('sent_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('skipped_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('opened_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('clicked_count', sa.Integer, server_default='0', nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('sequence_id', 'position', name='uq_sequence_steps_position'),
    )
    op.create_index('ix_email_sequence_steps_tenant_id', 'email_sequence_steps', ['tenant_id'])
    op.create_index('ix_email_sequence_steps_sequence_id', 'email_sequence_steps', ['sequence_id'])

    op.create_table(
        'email_sequence_subscribers',
        _id(),
        _tenant_id(),
        sa.Column('sequence_id', UUID(as_uuid=True),
                  sa.ForeignKey('email_sequences.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_id', UUID(as_uuid=True),
                  sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(50), server_default='ACTIVE', nullable=False,
                  comment='ACTIVE, PAUSED, COMPLETED, UNSUBSCRIBED, BOUNCED'),
        sa.Column('current_step', sa.Integer, server_default='0', nullable=False),
        sa.Column('next_step_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('enrolled_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_email_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('emails_sent', sa.Integer, server_default='0', nullable=False),
        sa.Column('emails_opened', sa.Integer, server_default='0', nullable=False),
        sa.Column('emails_clicked', sa.Integer, server_default='0', nullable=False),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_email_sequence_subscribers_tenant_id', 'email_sequence_subscribers', ['tenant_id'])
    op.create_index('ix_sequence_subscribers_due', 'email_sequence_subscribers',
                    ['tenant_id', 'status', 'next_step_at'])
    op.create_index('ix_sequence_subscribers_contact', 'email_sequence_subscribers',
                    ['sequence_id', 'contact_id'])

    # ====================
    # EMAIL LOGS TABLE
    # ====================
    op.create_table(
        'email_logs',
        _id(),
        _tenant_id(),
        sa.Column('contact_id', UUID(as_uuid=True),
                  sa.ForeignKey('contacts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('email_type', sa.String(50), server_default='SEQUENCE', nullable=False,
                  comment='SEQUENCE, CAMPAIGN, TRANSACTIONAL, AUTOMATION'),
        sa.Column('sequence_id', UUID(as_uuid=True), nullable=True),
        sa.Column('sequence_step_id', UUID(as_uuid=True), nullable=True),
        sa.Column('subscriber_id', UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, SENT, OPENED, CLICKED, BOUNCED, FAILED'),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('html_content', sa.Text, nullable=True),
        sa.Column('text_content', sa.Text, nullable=True),
        sa.Column('tracking_id', sa.String(64), unique=True, nullable=False),
        sa.Column('message_id', sa.String(255), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_email_logs_tenant_id', 'email_logs', ['tenant_id'])
    op.create_index('ix_email_logs_subscriber_step', 'email_logs', ['subscriber_id', 'sequence_step_id'])


def downgrade():
    """Drop all engine tables"""
    op.drop_table('email_logs')
    op.drop_table('email_sequence_subscribers')
    op.drop_table('email_sequence_steps')
    op.drop_table('email_sequences')
    op.drop_table('contacts')
    op.drop_table('affiliate_ledger_entries')
    op.drop_table('commissions')
    op.drop_table('payouts')
    op.drop_table('affiliate_clicks')
    op.drop_table('affiliates')
    op.drop_table('commission_plans')
    op.drop_table('tenants')
