"""Initial schema for the semantic linker backend.

Creates:
- content_items
- semantic_links
- semantic_links_blacklist
- semantic_embeddings
- semantic_custom_targets
- indexing_runs
- match_runs
- settings
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # content_items
    op.create_table(
        "content_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("url", sa.String(length=2000), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text()),
        sa.Column("body", sa.Text()),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'publish'"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_content_items_status", "content_items", ["status"])

    # semantic_links
    op.create_table(
        "semantic_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("anchor_text", sa.String(length=255), nullable=False),
        sa.Column("target_url", sa.String(length=2000), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'active'"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_semantic_links_target_id", "semantic_links", ["target_id"])
    op.create_index(
        "ix_semantic_links_source_status", "semantic_links", ["source_id", "status"]
    )
    op.create_index(
        "ix_semantic_links_target_status", "semantic_links", ["target_url", "status"]
    )
    op.create_index(
        "ix_semantic_links_anchor_status", "semantic_links", ["anchor_text", "status"]
    )

    # semantic_links_blacklist
    op.create_table(
        "semantic_links_blacklist",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source_id", sa.Integer(), nullable=False),
        sa.Column("target_url", sa.String(length=2000), nullable=False),
        sa.Column("anchor_text", sa.String(length=255)),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "source_id",
            "target_url",
            name="uq_semantic_links_blacklist_source_target",
        ),
    )

    # semantic_embeddings
    op.create_table(
        "semantic_embeddings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("vector", sa.JSON(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "item_id",
            "chunk_index",
            name="uq_semantic_embeddings_item_chunk",
        ),
    )
    op.create_index("ix_semantic_embeddings_item_id", "semantic_embeddings", ["item_id"])
    op.create_index(
        "ix_semantic_embeddings_chunk_index", "semantic_embeddings", ["chunk_index"]
    )

    # semantic_custom_targets
    op.create_table(
        "semantic_custom_targets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("url", sa.String(length=2000), nullable=False, unique=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("keywords", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'active'"),
        ),
        sa.Column("embedding", sa.JSON(none_as_null=True)),
        *_timestamps(),
    )

    # indexing_runs
    op.create_table(
        "indexing_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'running'"),
        ),
        sa.Column("work_item_ids", sa.JSON(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("embedded_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("item_errors", sa.JSON(none_as_null=True)),
        sa.Column("failed_item_id", sa.Integer()),
        sa.Column("error_message", sa.Text()),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_indexing_runs_status", "indexing_runs", ["status"])

    # match_runs
    op.create_table(
        "match_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("indexing_run_id", sa.Integer()),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'running'"),
        ),
        sa.Column("sources_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sources_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("proposed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duplicates", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("blacklisted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("capped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("filtered", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("error_message", sa.Text()),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_match_runs_indexing_run_id", "match_runs", ["indexing_run_id"])
    op.create_index("ix_match_runs_status", "match_runs", ["status"])

    # settings
    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_index("ix_match_runs_status", table_name="match_runs")
    op.drop_index("ix_match_runs_indexing_run_id", table_name="match_runs")
    op.drop_table("match_runs")
    op.drop_index("ix_indexing_runs_status", table_name="indexing_runs")
    op.drop_table("indexing_runs")
    op.drop_table("semantic_custom_targets")
    op.drop_index("ix_semantic_embeddings_chunk_index", table_name="semantic_embeddings")
    op.drop_index("ix_semantic_embeddings_item_id", table_name="semantic_embeddings")
    op.drop_table("semantic_embeddings")
    op.drop_table("semantic_links_blacklist")
    op.drop_index("ix_semantic_links_anchor_status", table_name="semantic_links")
    op.drop_index("ix_semantic_links_target_status", table_name="semantic_links")
    op.drop_index("ix_semantic_links_source_status", table_name="semantic_links")
    op.drop_index("ix_semantic_links_target_id", table_name="semantic_links")
    op.drop_table("semantic_links")
    op.drop_index("ix_content_items_status", table_name="content_items")
    op.drop_table("content_items")
