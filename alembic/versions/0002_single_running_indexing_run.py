"""Allow at most one running indexing run.

Revision ID: 0002_single_running_indexing_run
Revises: 0001_initial_schema
Create Date: 2026-10-19

Two concurrent init calls could both pass the "already running" check and
insert a run each; the partial unique index makes the second insert fail.
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_single_running_indexing_run"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ux_indexing_runs_single_running",
        "indexing_runs",
        ["status"],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
        postgresql_where=sa.text("status = 'running'"),
    )


def downgrade() -> None:
    op.drop_index("ux_indexing_runs_single_running", table_name="indexing_runs")
