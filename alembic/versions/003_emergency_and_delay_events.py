"""emergency appointments and delay events

Revision ID: 003
Revises: 002
Create Date: 2026-10-16 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OLD_EVENT_TYPES = (
    "event_type IN ('created', 'checked_in', 'started', 'completed', "
    "'cancelled', 'no_show', 'rescheduled')"
)
NEW_EVENT_TYPES = (
    "event_type IN ('created', 'checked_in', 'started', 'completed', "
    "'cancelled', 'no_show', 'rescheduled', 'delayed')"
)


def upgrade() -> None:
    """Add emergency flag and reason; allow the delayed audit event."""
    op.add_column(
        "appointments",
        sa.Column("emergency", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.add_column("appointments", sa.Column("emergency_reason", sa.Text(), nullable=True))
    op.create_index("idx_appointments_emergency", "appointments", ["emergency"])

    op.drop_constraint("appointment_events_type_check", "appointment_events", type_="check")
    op.create_check_constraint(
        "appointment_events_type_check", "appointment_events", NEW_EVENT_TYPES
    )


def downgrade() -> None:
    """Remove emergency fields and the delayed audit event."""
    op.execute("DELETE FROM appointment_events WHERE event_type = 'delayed'")
    op.drop_constraint("appointment_events_type_check", "appointment_events", type_="check")
    op.create_check_constraint(
        "appointment_events_type_check", "appointment_events", OLD_EVENT_TYPES
    )

    op.drop_index("idx_appointments_emergency", table_name="appointments")
    op.drop_column("appointments", "emergency_reason")
    op.drop_column("appointments", "emergency")
