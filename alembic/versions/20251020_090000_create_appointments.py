"""create appointments table with active-slot overlap protection

Revision ID: create_appointments_001
Revises:
Create Date: 2025-10-20 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'create_appointments_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE = "status IN ('confirmed', 'scheduled')"


def upgrade() -> None:
    """Create appointments with interval, contact and no-overlap constraints"""
    op.create_table(
        'appointments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('first_name', sa.String(150), nullable=False),
        sa.Column('last_name', sa.String(150), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('phone_number', sa.Text(), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='scheduled'),
        sa.Column('notes', postgresql.JSONB(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('calendar_event_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('end_at > start_at', name='appointments_time_range'),
        sa.CheckConstraint('email IS NOT NULL OR phone_number IS NOT NULL', name='appointments_contact_required'),
    )

    op.create_index(
        'uq_appointments_active_slot', 'appointments', ['start_at', 'end_at'],
        unique=True, postgresql_where=sa.text(ACTIVE),
    )
    op.create_index('ix_appointments_email', 'appointments', ['email'])
    op.create_index('ix_appointments_phone_number', 'appointments', ['phone_number'])
    op.create_index('ix_appointments_status', 'appointments', ['status'])
    op.create_index('ix_appointments_time_range', 'appointments', ['start_at', 'end_at'])
    op.create_index('ix_appointments_calendar_event_id', 'appointments', ['calendar_event_id'])

    # Overlapping active intervals are rejected by the database, not only by the pre-check
    op.execute(
        "ALTER TABLE appointments ADD CONSTRAINT appointments_no_active_overlap "
        "EXCLUDE USING gist (tstzrange(start_at, end_at, '[)') WITH &&) "
        f"WHERE ({ACTIVE})"
    )


def downgrade() -> None:
    """Drop the appointments table"""
    op.drop_table('appointments')
