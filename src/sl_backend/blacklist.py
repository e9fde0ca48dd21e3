"""
Permanent rejection set keyed by (source item, target URL).

The check is at URL level only: rejecting any anchor to a URL blocks every
future anchor from the same source to that URL. anchor_text is stored for
reference/debugging.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

from sqlalchemy.orm import Session

from .models import BlacklistEntry
from .urls import normalize_target_url

logger = logging.getLogger("semanticlinker.blacklist")


def _key_url(target_url: str) -> str:
    return normalize_target_url(target_url) or (target_url or "").strip()


@dataclass(frozen=True)
class BlacklistSnapshot:
    """
    In-memory copy of the blacklist for one matching pass.
    """

    pairs: FrozenSet[Tuple[int, str]] = field(default_factory=frozenset)

    def contains(self, source_id: int, target_url: str) -> bool:
        return (int(source_id), _key_url(target_url)) in self.pairs

    def __len__(self) -> int:
        return len(self.pairs)


class Blacklist:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, source_id: int, target_url: str, anchor_text: str = "") -> bool:
        """
        Blacklist a (source, target URL) pair.

        Idempotent: returns False (and writes nothing) if the pair is already
        present or the input is unusable.
        """
        url = _key_url(target_url)
        if int(source_id) < 1 or not url:
            return False

        if self.contains(source_id, url):
            return False

        self.session.add(
            BlacklistEntry(
                source_id=int(source_id),
                target_url=url,
                anchor_text=(anchor_text or "")[:255] or None,
            )
        )
        self.session.flush()
        logger.info("Blacklisted source %s -> %s", source_id, url)
        return True

    def contains(self, source_id: int, target_url: str) -> bool:
        row = (
            self.session.query(BlacklistEntry.id)
            .filter(
                BlacklistEntry.source_id == int(source_id),
                BlacklistEntry.target_url == _key_url(target_url),
            )
            .first()
        )
        return row is not None

    def remove(self, source_id: int, target_url: str) -> int:
        deleted = (
            self.session.query(BlacklistEntry)
            .filter(
                BlacklistEntry.source_id == int(source_id),
                BlacklistEntry.target_url == _key_url(target_url),
            )
            .delete(synchronize_session=False)
        )
        return int(deleted or 0)

    def delete_by_source(self, source_id: int) -> int:
        deleted = (
            self.session.query(BlacklistEntry)
            .filter(BlacklistEntry.source_id == int(source_id))
            .delete(synchronize_session=False)
        )
        return int(deleted or 0)

    def delete_all(self) -> int:
        deleted = self.session.query(BlacklistEntry).delete(synchronize_session=False)
        return int(deleted or 0)

    def count(self) -> int:
        return int(self.session.query(BlacklistEntry).count())

    def preload(self) -> BlacklistSnapshot:
        """
        Load the whole blacklist in one query for O(1) lookups during matching.
        """
        rows = self.session.query(BlacklistEntry.source_id, BlacklistEntry.target_url).all()
        return BlacklistSnapshot(pairs=frozenset((int(s), u) for s, u in rows))


__all__ = ["Blacklist", "BlacklistSnapshot"]
