from alembic import op
import sqlalchemy as sa


revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('full_name', sa.String(128), nullable=True),
        sa.Column('credits', sa.Integer, nullable=False, server_default='0'),
        sa.Column('subscription_tier', sa.String(16), nullable=False, server_default='unpaid'),
        sa.Column('stripe_customer_id', sa.String(64), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='America/New_York'),
        sa.Column('quiet_hours_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('quiet_hours_start', sa.Integer, nullable=False, server_default='21'),
        sa.Column('quiet_hours_end', sa.Integer, nullable=False, server_default='9'),
        sa.Column('booking_link', sa.String(512), nullable=True),
        sa.Column('agent_name', sa.String(128), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )

    op.create_table(
        'leads',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('first_name', sa.String(128), nullable=True),
        sa.Column('last_name', sa.String(128), nullable=True),
        sa.Column('phone', sa.String(32), nullable=True, index=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('state', sa.String(32), nullable=True),
        sa.Column('zip_code', sa.String(16), nullable=True),
        sa.Column('tags', sa.JSON, nullable=True),
        sa.Column('status', sa.String(24), nullable=False, server_default='new'),
        sa.Column('disposition', sa.String(24), nullable=True),
        sa.Column('is_client', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('campaign_id', sa.Integer, nullable=True, index=True),
        sa.Column('source', sa.String(32), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('opted_out', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('ai_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('temperature', sa.String(8), nullable=False, server_default='cold'),
        sa.Column('last_engaged_at', sa.Integer, nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )
    op.create_index('ix_leads_tenant_phone', 'leads', ['tenant_id', 'phone'])

    op.create_table(
        'tags',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('color', sa.String(16), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_tags_tenant_name'),
    )

    op.create_table(
        'campaigns',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('flow_id', sa.Integer, nullable=True),
        sa.Column('tag_filter', sa.JSON, nullable=True),
        sa.Column('message_template', sa.Text(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='draft'),
        sa.Column('scheduled_at', sa.Integer, nullable=True),
        sa.Column('last_run_at', sa.Integer, nullable=True),
        sa.Column('sent_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'flows',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('steps', sa.JSON, nullable=True),
        sa.Column('required_questions', sa.JSON, nullable=True),
        sa.Column('requires_call', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('ai_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )

    op.create_table(
        'conversation_sessions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('flow_id', sa.Integer, nullable=False, index=True),
        sa.Column('lead_id', sa.Integer, nullable=True, index=True),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('current_step_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('pending_field', sa.String(64), nullable=True),
        sa.Column('collected_info', sa.JSON, nullable=True),
        sa.Column('history', sa.JSON, nullable=True),
        sa.Column('offered_slots', sa.JSON, nullable=True),
        sa.Column('appointment', sa.JSON, nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )

    # messages ledger (canonical per SMS, both directions)
    op.create_table(
        'messages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('lead_id', sa.Integer, nullable=True, index=True),
        sa.Column('phone', sa.String(32), nullable=False, index=True),
        sa.Column('from_number', sa.String(32), nullable=True),
        sa.Column('direction', sa.String(16), nullable=False),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='queued'),
        sa.Column('provider', sa.String(16), nullable=True),
        sa.Column('provider_id', sa.String(128), nullable=True, index=True),
        sa.Column('is_automated', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('automation_source', sa.String(32), nullable=True),
        sa.Column('credits', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ts', sa.Integer, nullable=False),
    )
    op.create_index('ix_messages_tenant_phone_ts', 'messages', ['tenant_id', 'phone', 'ts'])

    op.create_table(
        'follow_ups',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('lead_id', sa.Integer, nullable=False, index=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('due_at', sa.Integer, nullable=False, index=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('sent_at', sa.Integer, nullable=True),
        sa.Column('last_error', sa.String(255), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'drips',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('lead_id', sa.Integer, nullable=False, index=True),
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('interval_hours', sa.Integer, nullable=False, server_default='24'),
        sa.Column('max_messages', sa.Integer, nullable=True),
        sa.Column('messages_sent', sa.Integer, nullable=False, server_default='0'),
        sa.Column('started_at', sa.Integer, nullable=False),
        sa.Column('next_send_at', sa.Integer, nullable=True, index=True),
        sa.Column('expires_at', sa.Integer, nullable=True),
        sa.Column('last_error', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )

    op.create_table(
        'drip_messages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('drip_id', sa.Integer, nullable=False, index=True),
        sa.Column('message_number', sa.Integer, nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='scheduled'),
        sa.Column('scheduled_for', sa.Integer, nullable=True),
        sa.Column('sent_at', sa.Integer, nullable=True),
        sa.Column('message_id', sa.Integer, nullable=True),
        sa.Column('updated_at', sa.Integer, nullable=True),
    )

    op.create_table(
        'point_transactions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('action_type', sa.String(24), nullable=False),
        sa.Column('points_amount', sa.Integer, nullable=False),
        sa.Column('balance_after', sa.Integer, nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('reference', sa.String(128), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'phone_numbers',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('phone_number', sa.String(32), nullable=False, index=True),
        sa.Column('provider', sa.String(16), nullable=False),
        sa.Column('provider_id', sa.String(128), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'calendar_accounts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('provider', sa.String(16), nullable=False, server_default='google'),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.Integer, nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'calendar_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('lead_id', sa.Integer, nullable=True),
        sa.Column('google_event_id', sa.String(128), nullable=True),
        sa.Column('summary', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_time', sa.String(40), nullable=False),
        sa.Column('end_time', sa.String(40), nullable=False),
        sa.Column('attendee_email', sa.String(255), nullable=True),
        sa.Column('attendee_name', sa.String(128), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'dnc_entries',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('phone', sa.String(32), nullable=False, index=True),
        sa.Column('reason', sa.String(64), nullable=True),
        sa.Column('source', sa.String(32), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
        sa.UniqueConstraint('tenant_id', 'phone', name='uq_dnc_tenant_phone'),
    )

    # events_ledger (json payload)
    op.create_table(
        'events_ledger',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('ts', sa.Integer, nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('name', sa.String(64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
    )

    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('key', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'dead_letters',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('created_at', sa.Integer, nullable=False),
    )


def downgrade():
    for name in (
        'dead_letters',
        'idempotency_keys',
        'events_ledger',
        'dnc_entries',
        'calendar_events',
        'calendar_accounts',
        'phone_numbers',
        'point_transactions',
        'drip_messages',
        'drips',
        'follow_ups',
        'messages',
        'conversation_sessions',
        'flows',
        'campaigns',
        'tags',
        'leads',
        'users',
    ):
        op.drop_table(name)
