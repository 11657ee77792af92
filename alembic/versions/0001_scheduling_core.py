"""Scheduling core - windows, slots, bookings, calendar sync.

Revision ID: 0001_scheduling_core
Revises:
Create Date: 2026-10-17

Creates:
- availability_windows, offered_services
- calendar_integrations, calendar_events, calendar_sync_operations
- slots (deterministic ids, blocked_by_event_id FK)
- bookings (one active booking per slot via partial unique index)
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_scheduling_core'
down_revision = None
branch_labels = None
depends_on = None

OWNER_SHAPE_CHECK = (
    "(owner_type = 'provider' AND provider_id IS NOT NULL "
    "AND organization_id IS NULL AND location_id IS NULL) OR "
    "(owner_type = 'organization_location' AND provider_id IS NULL "
    "AND organization_id IS NOT NULL AND location_id IS NOT NULL)"
)


def _owner_columns() -> list[sa.Column]:
    return [
        sa.Column('owner_type', sa.String(30), nullable=False),
        sa.Column('provider_id', sa.Uuid(), nullable=True),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column('location_id', sa.Uuid(), nullable=True),
    ]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # availability_windows
    # ==========================================================================
    op.create_table(
        'availability_windows',
        sa.Column('id', sa.Uuid(), nullable=False),
        *_owner_columns(),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('recurrence_kind', sa.String(20), nullable=False),
        sa.Column('recurrence_days', sa.JSON(), nullable=True),
        sa.Column('recurrence_until', sa.Date(), nullable=True),
        sa.Column('excluded_dates', sa.JSON(), nullable=False),
        sa.Column('series_id', sa.Uuid(), nullable=True),
        sa.Column('scheduling_granularity', sa.String(30), nullable=False),
        sa.Column('requires_confirmation', sa.Boolean(), nullable=False),
        sa.Column('is_online_available', sa.Boolean(), nullable=False),
        sa.Column('is_in_person_available', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('end_time > start_time', name='ck_window_time_order'),
        sa.CheckConstraint(OWNER_SHAPE_CHECK, name='ck_window_owner_shape'),
    )
    op.create_index(
        'idx_availability_windows_provider', 'availability_windows',
        ['provider_id', 'start_time'],
    )
    op.create_index(
        'idx_availability_windows_org_location', 'availability_windows',
        ['organization_id', 'location_id', 'start_time'],
    )
    op.create_index('idx_availability_windows_series', 'availability_windows', ['series_id'])

    # ==========================================================================
    # offered_services
    # ==========================================================================
    op.create_table(
        'offered_services',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('availability_window_id', sa.Uuid(), nullable=False),
        sa.Column('service_id', sa.Uuid(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('is_online_available', sa.Boolean(), nullable=False),
        sa.Column('is_in_person_available', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['availability_window_id'], ['availability_windows.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('duration_minutes > 0', name='ck_offered_service_duration'),
    )
    op.create_index('idx_offered_services_window', 'offered_services', ['availability_window_id'])

    # ==========================================================================
    # calendar_integrations
    # ==========================================================================
    op.create_table(
        'calendar_integrations',
        sa.Column('id', sa.Uuid(), nullable=False),
        *_owner_columns(),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('account_email', sa.String(255), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('calendar_id', sa.String(255), nullable=False),
        sa.Column('next_sync_token', sa.Text(), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False),
        sa.Column('sync_failure_count', sa.Integer(), nullable=False),
        sa.Column('auto_create_meet_links', sa.Boolean(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_full_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_type', sa.String(30), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(OWNER_SHAPE_CHECK, name='ck_calendar_integration_owner_shape'),
    )
    op.create_index(
        'idx_calendar_integrations_provider_owner', 'calendar_integrations', ['provider_id']
    )
    op.create_index(
        'idx_calendar_integrations_org_location', 'calendar_integrations',
        ['organization_id', 'location_id'],
    )
    op.create_index(
        'idx_calendar_integrations_sync_due', 'calendar_integrations',
        ['sync_enabled', 'next_retry_at'],
    )

    # ==========================================================================
    # calendar_events
    # ==========================================================================
    op.create_table(
        'calendar_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('calendar_integration_id', sa.Uuid(), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_all_day', sa.Boolean(), nullable=False),
        sa.Column('etag', sa.String(255), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('blocks_availability', sa.Boolean(), nullable=False),
        sa.Column('has_conflict', sa.Boolean(), nullable=False),
        sa.Column('conflict_details', sa.Text(), nullable=True),
        sa.Column('conflict_resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['calendar_integration_id'], ['calendar_integrations.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'calendar_integration_id', 'external_event_id',
            name='uq_calendar_event_external_id',
        ),
        sa.CheckConstraint('end_time > start_time', name='ck_calendar_event_time_order'),
    )
    op.create_index(
        'idx_calendar_events_time', 'calendar_events',
        ['calendar_integration_id', 'start_time', 'end_time'],
    )
    op.create_index('idx_calendar_events_conflict', 'calendar_events', ['has_conflict'])

    # ==========================================================================
    # calendar_sync_operations
    # ==========================================================================
    op.create_table(
        'calendar_sync_operations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('calendar_integration_id', sa.Uuid(), nullable=False),
        sa.Column('sync_mode', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('events_processed', sa.Integer(), nullable=False),
        sa.Column('events_imported', sa.Integer(), nullable=False),
        sa.Column('events_removed', sa.Integer(), nullable=False),
        sa.Column('events_failed', sa.Integer(), nullable=False),
        sa.Column('slots_blocked', sa.Integer(), nullable=False),
        sa.Column('slots_unblocked', sa.Integer(), nullable=False),
        sa.Column('conflicts_flagged', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ['calendar_integration_id'], ['calendar_integrations.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_calendar_sync_ops_integration', 'calendar_sync_operations',
        ['calendar_integration_id', 'started_at'],
    )

    # ==========================================================================
    # slots
    # ==========================================================================
    op.create_table(
        'slots',
        sa.Column('id', sa.Uuid(), nullable=False),
        *_owner_columns(),
        sa.Column('availability_window_id', sa.Uuid(), nullable=False),
        sa.Column('service_id', sa.Uuid(), nullable=False),
        sa.Column('service_config_id', sa.Uuid(), nullable=False),
        sa.Column('occurrence_key', sa.String(80), nullable=False),
        sa.Column('occurrence_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'available'"), nullable=False),
        sa.Column('blocked_by_event_id', sa.Uuid(), nullable=True),
        sa.Column('detached_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_calculated', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['availability_window_id'], ['availability_windows.id'], ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['service_config_id'], ['offered_services.id'], ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['blocked_by_event_id'], ['calendar_events.id'], ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('end_time > start_time', name='ck_slot_time_order'),
        sa.CheckConstraint(
            "status != 'blocked' OR blocked_by_event_id IS NOT NULL",
            name='ck_slot_blocked_has_event',
        ),
        sa.CheckConstraint(OWNER_SHAPE_CHECK, name='ck_slot_owner_shape'),
    )
    op.create_index('idx_slots_provider_time', 'slots', ['provider_id', 'start_time', 'end_time'])
    op.create_index(
        'idx_slots_org_location_time', 'slots',
        ['organization_id', 'location_id', 'start_time', 'end_time'],
    )
    op.create_index(
        'idx_slots_window_occurrence', 'slots', ['availability_window_id', 'occurrence_date']
    )
    op.create_index('idx_slots_blocked_by', 'slots', ['blocked_by_event_id'])
    op.create_index('idx_slots_status', 'slots', ['status'])

    # ==========================================================================
    # bookings
    # ==========================================================================
    op.create_table(
        'bookings',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('slot_id', sa.Uuid(), nullable=False),
        sa.Column('client_user_id', sa.Uuid(), nullable=True),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(50), nullable=True),
        sa.Column('guest_whatsapp', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('notification_preferences', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by_user_id', sa.Uuid(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancellation_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['slot_id'], ['slots.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            '(client_user_id IS NULL) != (guest_name IS NULL)',
            name='ck_booking_client_xor_guest',
        ),
        sa.CheckConstraint(
            'guest_name IS NULL OR guest_email IS NOT NULL '
            'OR guest_phone IS NOT NULL OR guest_whatsapp IS NOT NULL',
            name='ck_booking_guest_contact',
        ),
    )
    # At most one non-cancelled booking per slot
    op.create_index(
        'uq_bookings_active_slot',
        'bookings',
        ['slot_id'],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
        sqlite_where=sa.text("status != 'cancelled'"),
    )
    op.create_index('idx_bookings_status', 'bookings', ['status'])
    op.create_index('idx_bookings_client', 'bookings', ['client_user_id'])


def downgrade() -> None:
    op.drop_table('bookings')
    op.drop_table('slots')
    op.drop_table('calendar_sync_operations')
    op.drop_table('calendar_events')
    op.drop_table('calendar_integrations')
    op.drop_table('offered_services')
    op.drop_table('availability_windows')
