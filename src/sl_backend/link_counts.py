"""
Active-link counts per target URL, cached for one matching pass.

The cache is derived and never authoritative: ``get`` falls back to a direct
query whenever it is not loaded. Any link mutation that does not go through
``increment`` must call ``reset``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import LinkStatus, SemanticLink

logger = logging.getLogger("semanticlinker.link_counts")


def count_active_links_to(session: Session, target_url: str) -> int:
    return int(
        session.query(func.count(SemanticLink.id))
        .filter(
            SemanticLink.target_url == target_url,
            SemanticLink.status == LinkStatus.ACTIVE.value,
        )
        .scalar()
        or 0
    )


def active_counts_by_target(session: Session) -> Dict[str, int]:
    """
    One aggregate query: target_url -> number of active links.
    """
    rows = (
        session.query(SemanticLink.target_url, func.count(SemanticLink.id))
        .filter(SemanticLink.status == LinkStatus.ACTIVE.value)
        .group_by(SemanticLink.target_url)
        .all()
    )
    return {url: int(cnt) for url, cnt in rows}


class ActiveCountCache:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._counts: Optional[Dict[str, int]] = None

    @property
    def is_loaded(self) -> bool:
        return self._counts is not None

    def preload(self) -> None:
        """
        Replace the cache wholesale from a single aggregate query.
        """
        self._counts = active_counts_by_target(self.session)
        logger.debug("Preloaded active counts for %d target(s)", len(self._counts))

    def get(self, target_url: str) -> int:
        if self._counts is not None:
            return self._counts.get(target_url, 0)
        return count_active_links_to(self.session, target_url)

    def increment(self, target_url: str) -> None:
        # Cache-only; a no-op when not loaded.
        if self._counts is not None:
            self._counts[target_url] = self._counts.get(target_url, 0) + 1

    def reset(self) -> None:
        self._counts = None


__all__ = ["ActiveCountCache", "active_counts_by_target", "count_active_links_to"]
