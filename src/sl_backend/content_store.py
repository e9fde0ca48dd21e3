"""
Read-only access to the site's publishable content.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from sl_backend.indexing.chunking import content_hash
from .models import ContentItem

PUBLISH_STATUS = "publish"


@dataclass(frozen=True)
class ContentSnapshot:
    id: int
    url: str
    title: str
    summary: Optional[str]
    body: Optional[str]
    status: str

    @property
    def is_publishable(self) -> bool:
        return self.status == PUBLISH_STATUS


class ContentStore(Protocol):
    def list_publishable_items(self) -> List[ContentSnapshot]: ...

    def get_item(self, item_id: int) -> Optional[ContentSnapshot]: ...

    def get_content_hash(self, item: ContentSnapshot) -> str: ...


def _snapshot(row: ContentItem) -> ContentSnapshot:
    return ContentSnapshot(
        id=row.id,
        url=row.url,
        title=row.title,
        summary=row.summary,
        body=row.body,
        status=row.status,
    )


class SqlContentStore:
    """
    ContentStore over the ``content_items`` table.

    Drafts and trashed items are never returned by the listing.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_publishable_items(self) -> List[ContentSnapshot]:
        rows = (
            self.session.query(ContentItem)
            .filter(ContentItem.status == PUBLISH_STATUS)
            .order_by(ContentItem.id)
            .all()
        )
        return [_snapshot(r) for r in rows]

    def get_item(self, item_id: int) -> Optional[ContentSnapshot]:
        row = self.session.get(ContentItem, int(item_id))
        return _snapshot(row) if row is not None else None

    def get_content_hash(self, item: ContentSnapshot) -> str:
        return content_hash(item)


__all__ = ["ContentSnapshot", "ContentStore", "PUBLISH_STATUS", "SqlContentStore"]
