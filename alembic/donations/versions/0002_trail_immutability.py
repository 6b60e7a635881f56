"""enforce append-only trail and notification records

Revision ID: 0002_trail_immutability
Revises: 0001_donations
Create Date: 2026-10-12
"""

from alembic import op


revision = "0002_trail_immutability"
down_revision = "0001_donations"
branch_labels = None
depends_on = None

_TABLES = ("transaction_trail", "notification_records")


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_append_only_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    for table in _TABLES:
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION prevent_append_only_mutation();
            """
        )


def downgrade() -> None:
    for table in _TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table};")
    op.execute("DROP FUNCTION IF EXISTS prevent_append_only_mutation();")
