# appointment_scheduler/db/models/appointment.py

from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from appointment_scheduler.core.business import ACTIVE_STATUSES, AppointmentStatus
from appointment_scheduler.db.session import Base
from appointment_scheduler.db.types import UTCDateTime

ACTIVE_STATUS_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))
ACTIVE_STATUS_PREDICATE = f"status IN ({ACTIVE_STATUS_SQL})"

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        sa.CheckConstraint("end_at > start_at", name="appointments_time_range"),
        sa.CheckConstraint(
            "email IS NOT NULL OR phone_number IS NOT NULL",
            name="appointments_contact_required",
        ),
        # Exact duplicate slot among active appointments; overlap is covered by the
        # PostgreSQL exclusion constraint and the SQLite triggers attached below
        sa.Index(
            "uq_appointments_active_slot",
            "start_at",
            "end_at",
            unique=True,
            postgresql_where=sa.text(ACTIVE_STATUS_PREDICATE),
            sqlite_where=sa.text(ACTIVE_STATUS_PREDICATE),
        ),
        sa.Index("ix_appointments_email", "email"),
        sa.Index("ix_appointments_phone_number", "phone_number"),
        sa.Index("ix_appointments_status", "status"),
        sa.Index("ix_appointments_time_range", "start_at", "end_at"),
        sa.Index("ix_appointments_calendar_event_id", "calendar_event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    first_name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    last_name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    email: Mapped[str | None] = mapped_column(sa.Text)
    phone_number: Mapped[str | None] = mapped_column(sa.Text)

    # Half-open interval [start_at, end_at), stored as timezone-aware UTC
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32),
        nullable=False,
        default=AppointmentStatus.SCHEDULED.value,
        server_default=AppointmentStatus.SCHEDULED.value,
    )
    notes: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
    reason: Mapped[str | None] = mapped_column(sa.Text)
    calendar_event_id: Mapped[str | None] = mapped_column(sa.Text)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


# No two active appointments may overlap, enforced by the database itself
ACTIVE_SLOT_EXCLUSION = sa.DDL(
    "ALTER TABLE appointments ADD CONSTRAINT appointments_no_active_overlap "
    "EXCLUDE USING gist (tstzrange(start_at, end_at, '[)') WITH &&) "
    f"WHERE ({ACTIVE_STATUS_PREDICATE})"
)
sa.event.listen(
    Appointment.__table__,
    "after_create",
    ACTIVE_SLOT_EXCLUSION.execute_if(dialect="postgresql"),
)


# SQLite has no exclusion constraints; triggers give the same no-overlap guarantee
def _sqlite_overlap_trigger(event: str) -> sa.DDL:
    return sa.DDL(
        f"CREATE TRIGGER appointments_no_active_overlap_{event.lower()} "
        f"BEFORE {event} ON appointments "
        f"FOR EACH ROW WHEN NEW.{ACTIVE_STATUS_PREDICATE} "
        "BEGIN "
        "SELECT RAISE(ABORT, 'appointments_no_active_overlap') "
        "WHERE EXISTS (SELECT 1 FROM appointments "
        f"WHERE {ACTIVE_STATUS_PREDICATE} "
        "AND start_at < NEW.end_at AND end_at > NEW.start_at AND id != NEW.id); "
        "END"
    )


for _event in ("INSERT", "UPDATE"):
    sa.event.listen(
        Appointment.__table__,
        "after_create",
        _sqlite_overlap_trigger(_event).execute_if(dialect="sqlite"),
    )
