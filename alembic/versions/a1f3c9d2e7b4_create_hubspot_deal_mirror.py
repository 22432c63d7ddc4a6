"""Create HubSpot deal mirror, sync bookkeeping and contest tables

Revision ID: a1f3c9d2e7b4
Revises:
Create Date: 2026-02-02 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1f3c9d2e7b4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('username', sa.String(256), nullable=False),
        sa.Column('email', sa.String(256), nullable=True),
        sa.Column('display_name', sa.String(256), nullable=True),
        sa.Column('roles', sa.String(512), nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'hubspot_deals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('hubspot_deal_id', sa.String(128), nullable=False),
        sa.Column('deal_name', sa.String(512), nullable=True),
        sa.Column('fulfilled_date', sa.DateTime(), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=True),
        sa.Column('provision', sa.Numeric(18, 2), nullable=True),
        sa.Column('currency_code', sa.String(16), nullable=True),
        sa.Column('stage', sa.String(256), nullable=True),
        sa.Column('owner_id', sa.String(64), nullable=True),
        sa.Column('owner_email', sa.String(256), nullable=True),
        sa.Column('seller_id', sa.String(64), nullable=True),
        sa.Column('owner_user_id', sa.String(64), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('payload_hash', sa.String(64), nullable=True),
        sa.Column('hubspot_last_modified', sa.DateTime(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hubspot_deal_id')
    )
    op.create_index('ix_hubspot_deals_id', 'hubspot_deals', ['id'])
    op.create_index('ix_hubspot_deals_fulfilled_date', 'hubspot_deals', ['fulfilled_date'])
    op.create_index('ix_hubspot_deals_owner_user_id', 'hubspot_deals', ['owner_user_id'])
    op.create_index('ix_hubspot_deals_owner_fulfilled', 'hubspot_deals', ['owner_id', 'fulfilled_date'])

    op.create_table(
        'hubspot_owner_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('hubspot_owner_id', sa.String(64), nullable=False),
        sa.Column('email', sa.String(256), nullable=True),
        sa.Column('first_name', sa.String(256), nullable=True),
        sa.Column('last_name', sa.String(256), nullable=True),
        sa.Column('primary_team_name', sa.String(256), nullable=True),
        sa.Column('team_names', sa.String(1000), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('owner_user_id', sa.String(64), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('owner_username', sa.String(256), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('last_owner_sync_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hubspot_owner_id')
    )
    op.create_index('ix_hubspot_owner_mappings_id', 'hubspot_owner_mappings', ['id'])
    op.create_index(
        'ux_hubspot_owner_mappings_owner_user_id',
        'hubspot_owner_mappings',
        ['owner_user_id'],
        unique=True,
        sqlite_where=sa.text('owner_user_id IS NOT NULL'),
        postgresql_where=sa.text('owner_user_id IS NOT NULL'),
    )

    op.create_table(
        'sync_states',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_name', sa.String(128), nullable=False),
        sa.Column('last_successful_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_cursor', sa.String(512), nullable=True),
        sa.Column('cursor_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.String(2000), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_name')
    )
    op.create_index('ix_sync_states_id', 'sync_states', ['id'])

    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_name', sa.String(128), nullable=False),
        sa.Column('run_kind', sa.String(32), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('deals_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deals_imported', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deals_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deals_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pages_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_runs_id', 'sync_runs', ['id'])
    op.create_index('ix_sync_runs_integration_name', 'sync_runs', ['integration_name'])
    op.create_index('ix_sync_runs_started_at', 'sync_runs', ['started_at'])
    op.create_index('ix_sync_runs_status', 'sync_runs', ['status'])

    op.create_table(
        'contests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(256), nullable=False),
        sa.Column('description', sa.String(2000), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_contests_id', 'contests', ['id'])

    op.create_table(
        'contest_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contest_id', sa.Integer(), sa.ForeignKey('contests.id', ondelete='CASCADE'), nullable=False),
        sa.Column('aggregation_key', sa.String(320), nullable=False),
        sa.Column('display_label', sa.String(50), nullable=False),
        sa.Column('deals_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('owner_user_id', sa.String(64), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('contest_id', 'aggregation_key', name='uq_contest_entry_key')
    )
    op.create_index('ix_contest_entries_id', 'contest_entries', ['id'])
    op.create_index('ix_contest_entries_contest_id', 'contest_entries', ['contest_id'])


def downgrade() -> None:
    op.drop_table('contest_entries')
    op.drop_table('contests')
    op.drop_table('sync_runs')
    op.drop_table('sync_states')
    op.drop_index('ux_hubspot_owner_mappings_owner_user_id', table_name='hubspot_owner_mappings')
    op.drop_table('hubspot_owner_mappings')
    op.drop_table('hubspot_deals')
    op.drop_table('users')
