"""Initial schema -- users, ledger, payment records, generations, protective triggers.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op

from imagecredit.schema_sql import (
    indexes,
    tables_core,
    tables_payments,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    _execute_all(tables_core.ALL)
    _execute_all(tables_payments.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    op.execute(
        "DROP TRIGGER IF EXISTS trg_payment_records_completed_immutable "
        "ON payment_records;"
    )
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS protect_completed_payment();")
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")


def _drop_tables() -> None:
    tables = [
        "generations",
        "payment_records",
        "credit_transactions",
        "users",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
