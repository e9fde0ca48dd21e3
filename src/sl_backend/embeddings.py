"""
Per-item chunk embeddings and their freshness check.

An item's embedding set is current when the chunk-0 row carries the item's
live content hash. Every chunk row of an item is written with the same hash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceError
from .models import ContentItem, Embedding

logger = logging.getLogger("semanticlinker.embeddings")


@dataclass
class ChunkVector:
    chunk_index: int
    chunk_text: str
    vector: List[float]


class EmbeddingTable:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert(
        self,
        item_id: int,
        chunk_index: int,
        chunk_text: str,
        vector: Sequence[float],
        content_hash: str,
    ) -> None:
        """
        Replace the row for (item_id, chunk_index).

        Delete-then-insert. If the insert fails after the delete went through,
        the caller's transaction must be rolled back; PersistenceError is
        raised so the batch run can be marked failed.
        """
        self.session.query(Embedding).filter(
            Embedding.item_id == int(item_id),
            Embedding.chunk_index == int(chunk_index),
        ).delete(synchronize_session=False)

        try:
            self.session.add(
                Embedding(
                    item_id=int(item_id),
                    chunk_index=int(chunk_index),
                    chunk_text=chunk_text,
                    vector=[float(v) for v in vector],
                    content_hash=content_hash,
                )
            )
            self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to write embedding for item {item_id} chunk {chunk_index}: {exc}",
                item_id=int(item_id),
            ) from exc

    def stored_hash(self, item_id: int) -> Optional[str]:
        row = (
            self.session.query(Embedding.content_hash)
            .filter(Embedding.item_id == int(item_id), Embedding.chunk_index == 0)
            .first()
        )
        return row[0] if row else None

    def is_current(self, item_id: int, content_hash: str) -> bool:
        return self.stored_hash(item_id) == content_hash

    def stored_hashes(self) -> Dict[int, str]:
        """
        item_id -> chunk-0 content hash, in one query.
        """
        rows = (
            self.session.query(Embedding.item_id, Embedding.content_hash)
            .filter(Embedding.chunk_index == 0)
            .all()
        )
        return {int(item_id): h for item_id, h in rows}

    def get_for_item(self, item_id: int) -> List[ChunkVector]:
        rows = (
            self.session.query(Embedding)
            .filter(Embedding.item_id == int(item_id))
            .order_by(Embedding.chunk_index)
            .all()
        )
        return [
            ChunkVector(chunk_index=r.chunk_index, chunk_text=r.chunk_text, vector=list(r.vector))
            for r in rows
        ]

    def get_title_embeddings(self) -> Dict[int, List[float]]:
        """
        Chunk-0 vectors of publishable items only.
        """
        rows = (
            self.session.query(Embedding.item_id, Embedding.vector)
            .join(ContentItem, ContentItem.id == Embedding.item_id)
            .filter(Embedding.chunk_index == 0, ContentItem.status == "publish")
            .order_by(Embedding.item_id)
            .all()
        )
        return {int(item_id): list(vector) for item_id, vector in rows}

    def prune_chunks(self, item_id: int, keep: int) -> int:
        """
        Drop chunk rows with chunk_index >= keep (body got shorter).
        """
        deleted = (
            self.session.query(Embedding)
            .filter(Embedding.item_id == int(item_id), Embedding.chunk_index >= int(keep))
            .delete(synchronize_session=False)
        )
        return int(deleted or 0)

    def delete_for_item(self, item_id: int) -> int:
        deleted = (
            self.session.query(Embedding)
            .filter(Embedding.item_id == int(item_id))
            .delete(synchronize_session=False)
        )
        return int(deleted or 0)

    def delete_all(self) -> int:
        deleted = self.session.query(Embedding).delete(synchronize_session=False)
        logger.info("Deleted %d embedding row(s)", deleted or 0)
        return int(deleted or 0)

    def count(self) -> int:
        return int(self.session.query(Embedding).count())


__all__ = ["ChunkVector", "EmbeddingTable"]
