"""add appointment change feed trigger

Revision ID: 002
Revises: 001
Create Date: 2026-10-01 09:30:00.000000

"""

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CHANNEL = "appointment_changes"


def upgrade() -> None:
    """Publish appointment inserts, updates and deletes with pg_notify."""
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION appointments_notify_change()
        RETURNS TRIGGER AS $$
        DECLARE
            row_data jsonb;
            changed text[] := '{{}}';
        BEGIN
            IF TG_OP = 'DELETE' THEN
                row_data := to_jsonb(OLD);
            ELSE
                row_data := to_jsonb(NEW);
            END IF;

            IF TG_OP = 'UPDATE' THEN
                SELECT coalesce(array_agg(n.key), '{{}}')
                INTO changed
                FROM jsonb_each(to_jsonb(NEW)) AS n
                JOIN jsonb_each(to_jsonb(OLD)) AS o USING (key)
                WHERE n.value IS DISTINCT FROM o.value;
            END IF;

            PERFORM pg_notify(
                '{CHANNEL}',
                jsonb_build_object(
                    'op', TG_OP,
                    'id', row_data->>'id',
                    'doctor_id', row_data->>'doctor_id',
                    'service_day', row_data->>'service_day',
                    'old_doctor_id', CASE WHEN TG_OP = 'UPDATE' THEN OLD.doctor_id::text END,
                    'old_service_day', CASE WHEN TG_OP = 'UPDATE' THEN OLD.service_day::text END,
                    'changed', to_jsonb(changed)
                )::text
            );

            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """
    )

    op.execute(
        """
        CREATE TRIGGER trigger_appointments_notify_change
        AFTER INSERT OR UPDATE OR DELETE ON appointments
        FOR EACH ROW
        EXECUTE FUNCTION appointments_notify_change();
    """
    )


def downgrade() -> None:
    """Remove the change feed trigger."""
    op.execute("DROP TRIGGER IF EXISTS trigger_appointments_notify_change ON appointments;")
    op.execute("DROP FUNCTION IF EXISTS appointments_notify_change();")
