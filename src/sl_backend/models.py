from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .db import Base


class LinkStatus(str, Enum):
    """Lifecycle status of a proposed link."""

    ACTIVE = "active"
    REJECTED = "rejected"
    FILTERED = "filtered"


class RunStatus(str, Enum):
    """Lifecycle status shared by indexing runs and matching passes."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TimestampMixin:
    """
    Common created_at / updated_at columns.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ContentItem(TimestampMixin, Base):
    """
    Publishable content (article, page) as exposed by the host site.

    This relation is owned by the site; the linking core only reads it.
    """

    __tablename__ = "content_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    body: Mapped[Optional[str]] = mapped_column(Text)
    # publish / draft / trash
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'publish'"),
        index=True,
    )

    def __repr__(self) -> str:
        return f"<ContentItem id={self.id!r} status={self.status!r}>"


class SemanticLink(Base):
    """
    Proposed or decided directional edge source item -> target URL.
    """

    __tablename__ = "semantic_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    anchor_text: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[str] = mapped_column(String(2000), nullable=False)
    # 0 means "no matching internal item" (custom or external target).
    target_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("0"),
        index=True,
    )
    score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        server_default=text("0"),
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'active'"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_semantic_links_source_status", "source_id", "status"),
        Index("ix_semantic_links_target_status", "target_url", "status"),
        Index("ix_semantic_links_anchor_status", "anchor_text", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SemanticLink id={self.id!r} source_id={self.source_id!r} "
            f"status={self.status!r}>"
        )


class BlacklistEntry(Base):
    """
    Permanent suppression of a (source item, target URL) pair.

    anchor_text is kept for reference only and is not part of the key.
    """

    __tablename__ = "semantic_links_blacklist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_url: Mapped[str] = mapped_column(String(2000), nullable=False)
    anchor_text: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "source_id",
            "target_url",
            name="uq_semantic_links_blacklist_source_target",
        ),
    )


class Embedding(Base):
    """
    One embedded chunk of a content item. chunk_index 0 is the title chunk.
    """

    __tablename__ = "semantic_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "item_id",
            "chunk_index",
            name="uq_semantic_embeddings_item_chunk",
        ),
        Index("ix_semantic_embeddings_chunk_index", "chunk_index"),
    )

    def __repr__(self) -> str:
        return f"<Embedding item_id={self.item_id!r} chunk_index={self.chunk_index!r}>"


class CustomTarget(TimestampMixin, Base):
    """
    Operator-curated link destination outside the content corpus.
    """

    __tablename__ = "semantic_custom_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String(2000), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    keywords: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        server_default=text("''"),
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'active'"),
    )
    # NULL until generated; cleared whenever title/keywords change.
    embedding: Mapped[Optional[List[float]]] = mapped_column(JSON(none_as_null=True))

    def embedding_text(self) -> str:
        text_value = self.title
        if self.keywords:
            text_value += " " + self.keywords
        return text_value

    def __repr__(self) -> str:
        return f"<CustomTarget id={self.id!r} url={self.url!r}>"


class IndexingRun(Base):
    """
    Progress state of one resumable batch indexing run.
    """

    __tablename__ = "indexing_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'running'"),
        index=True,
    )

    # Ordered item ids lacking a current embedding when the run started.
    work_item_ids: Mapped[List[int]] = mapped_column(JSON, nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    processed_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    embedded_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    skipped_items: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )

    # item_id (as str) -> error message for per-item provider failures.
    item_errors: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    failed_item_id: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        # At most one running run at a time.
        Index(
            "ux_indexing_runs_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<IndexingRun id={self.id!r} status={self.status!r}>"


class MatchRun(Base):
    """
    One matching pass over the target set.
    """

    __tablename__ = "match_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    indexing_run_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'running'"),
        index=True,
    )
    sources_total: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    sources_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    proposed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    duplicates: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    blacklisted: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    capped: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    filtered: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Setting(Base):
    """
    Operator-adjustable runtime settings (key/value).
    """

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


__all__ = [
    "LinkStatus",
    "RunStatus",
    "ContentItem",
    "SemanticLink",
    "BlacklistEntry",
    "Embedding",
    "CustomTarget",
    "IndexingRun",
    "MatchRun",
    "Setting",
]
