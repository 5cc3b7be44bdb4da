"""Outreach schema: sequences, enrollments, automations, executions, event outbox.

Mirrors crmflow.db.initialize.MIGRATIONS for deployments that manage schema
with alembic instead of ``ensure_schema``.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op

from crmflow.db.initialize import MIGRATIONS

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    for _version, _description, sql in MIGRATIONS:
        op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS automation_event_outbox")
    op.execute("DROP TABLE IF EXISTS automation_executions")
    op.execute("DROP TABLE IF EXISTS automations")
    op.execute("DROP TABLE IF EXISTS sent_emails")
    op.execute("DROP TABLE IF EXISTS sequence_enrollments")
    op.execute("DROP TABLE IF EXISTS sequence_steps")
    op.execute("DROP TABLE IF EXISTS sequences")
