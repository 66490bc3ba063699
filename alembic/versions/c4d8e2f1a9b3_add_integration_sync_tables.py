"""Add integration and sync tables

Revision ID: c4d8e2f1a9b3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'c4d8e2f1a9b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - Add integrations, oauth_states, sync_attempts and external_workouts tables."""
    conn = op.get_bind()

    integrationkind_enum = postgresql.ENUM('strava', 'myfitnesspal', name='integrationkind', create_type=True)
    syncstatus_enum = postgresql.ENUM(
        'in_progress', 'completed', 'failed', 'cancelled', 'partially_completed',
        name='syncstatus',
        create_type=True
    )
    synctrigger_enum = postgresql.ENUM('manual', 'scheduled', 'webhook', name='synctrigger', create_type=True)

    # Check if ENUMs exist before creating
    for enum_type in (integrationkind_enum, syncstatus_enum, synctrigger_enum):
        result = conn.execute(
            sa.text("SELECT 1 FROM pg_type WHERE typname = :name"), {"name": enum_type.name}
        ).fetchone()
        if not result:
            enum_type.create(conn)

    kind_column = postgresql.ENUM('strava', 'myfitnesspal', name='integrationkind', create_type=False)

    op.create_table('integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('kind', kind_column, nullable=False),
        sa.Column('external_user_id', sa.String(length=100), nullable=False),
        sa.Column('access_token', sa.String(), nullable=False),
        sa.Column('refresh_token', sa.String(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('connected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_cursor', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_integrations_id'), 'integrations', ['id'], unique=False)
    op.create_index(op.f('ix_integrations_user_id'), 'integrations', ['user_id'], unique=False)
    op.create_index(op.f('ix_integrations_kind'), 'integrations', ['kind'], unique=False)
    op.create_index(op.f('ix_integrations_is_active'), 'integrations', ['is_active'], unique=False)
    op.create_index('ix_integrations_user_kind', 'integrations', ['user_id', 'kind'], unique=True)

    op.create_table('oauth_states',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('state', sa.String(length=128), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('kind', kind_column, nullable=False),
        sa.Column('redirect_url', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('state')
    )
    op.create_index('ix_oauth_states_user_kind', 'oauth_states', ['user_id', 'kind'], unique=False)
    op.create_index('ix_oauth_states_expires_at', 'oauth_states', ['expires_at'], unique=False)

    op.create_table('sync_attempts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', postgresql.ENUM(name='syncstatus', create_type=False), nullable=False),
        sa.Column('trigger', postgresql.ENUM(name='synctrigger', create_type=False), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('records_imported', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('records_skipped', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sync_cursor', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_attempts_id'), 'sync_attempts', ['id'], unique=False)
    op.create_index(op.f('ix_sync_attempts_integration_id'), 'sync_attempts', ['integration_id'], unique=False)
    op.create_index(op.f('ix_sync_attempts_status'), 'sync_attempts', ['status'], unique=False)
    op.create_index('ix_sync_attempts_integration_started', 'sync_attempts', ['integration_id', 'started_at'], unique=False)
    # At most one running attempt per integration
    op.create_index(
        'uq_sync_attempts_one_in_progress',
        'sync_attempts',
        ['integration_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'")
    )

    op.create_table('external_workouts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('activity_type', sa.String(), nullable=False, server_default=sa.text("''")),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('calories_burned', sa.Float(), nullable=True),
        sa.Column('distance_meters', sa.Float(), nullable=True),
        sa.Column('is_imported', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('raw_data', sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_external_workouts_integration_id'), 'external_workouts', ['integration_id'], unique=False)
    op.create_index('ix_external_workouts_integration_external', 'external_workouts', ['integration_id', 'external_id'], unique=True)


def downgrade() -> None:
    """Downgrade schema - Drop integration and sync tables."""
    op.drop_index('ix_external_workouts_integration_external', table_name='external_workouts')
    op.drop_index(op.f('ix_external_workouts_integration_id'), table_name='external_workouts')
    op.drop_table('external_workouts')

    op.drop_index('uq_sync_attempts_one_in_progress', table_name='sync_attempts')
    op.drop_index('ix_sync_attempts_integration_started', table_name='sync_attempts')
    op.drop_index(op.f('ix_sync_attempts_status'), table_name='sync_attempts')
    op.drop_index(op.f('ix_sync_attempts_integration_id'), table_name='sync_attempts')
    op.drop_index(op.f('ix_sync_attempts_id'), table_name='sync_attempts')
    op.drop_table('sync_attempts')

    op.drop_index('ix_oauth_states_expires_at', table_name='oauth_states')
    op.drop_index('ix_oauth_states_user_kind', table_name='oauth_states')
    op.drop_table('oauth_states')

    op.drop_index('ix_integrations_user_kind', table_name='integrations')
    op.drop_index(op.f('ix_integrations_is_active'), table_name='integrations')
    op.drop_index(op.f('ix_integrations_kind'), table_name='integrations')
    op.drop_index(op.f('ix_integrations_user_id'), table_name='integrations')
    op.drop_index(op.f('ix_integrations_id'), table_name='integrations')
    op.drop_table('integrations')

    # Drop ENUMs
    op.execute('DROP TYPE IF EXISTS synctrigger')
    op.execute('DROP TYPE IF EXISTS syncstatus')
    op.execute('DROP TYPE IF EXISTS integrationkind')
