"""Fiscal core schema: emissions, event requests, job queue and audit trail.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from app.db import _POSTGRES_SCHEMA, _SQLITE_SCHEMA, _split_sql_statements


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Children first so foreign keys never block the drop.
_TABLES = (
    "fiscal_anomalies",
    "fiscal_status_events",
    "jobs_queue",
    "nfe_correction_letters",
    "nfe_cancellations",
    "sales_document_nfes",
    "fiscal_emissions",
    "tenants",
)


def _is_postgres(bind) -> bool:
    return str(getattr(getattr(bind, "dialect", None), "name", "") or "").lower().startswith("postgres")


def upgrade() -> None:
    schema = _POSTGRES_SCHEMA if _is_postgres(op.get_bind()) else _SQLITE_SCHEMA
    for statement in _split_sql_statements(schema):
        if statement.strip():
            op.execute(statement)


def downgrade() -> None:
    for table in _TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
