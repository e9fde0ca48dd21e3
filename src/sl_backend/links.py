"""
Link store: proposed links, their status state machine and dedup rules.

Dedup rules enforced by ``propose`` (all against *active* links):

1. one anchor text resolves to one target URL within a source item;
2. one anchor text resolves to one target URL across the whole site;
3. at most one link per (source item, target URL).

Status changes go through ``set_status`` only. The transition table below
lists the side effects each transition carries (blacklist add/remove); every
transition also resets the active-count cache and fires exactly one
"link changed" notification.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, aliased

from .blacklist import Blacklist
from .errors import DuplicateRejected, NotFound, StateError, ValidationError
from .link_counts import ActiveCountCache, active_counts_by_target, count_active_links_to
from .models import ContentItem, LinkStatus, SemanticLink
from .notifications import LinkChangeSink, LoggingSink
from .runtime_metrics import observe_link_event
from .urls import normalize_target_url

logger = logging.getLogger("semanticlinker.links")

MAX_ANCHOR_LENGTH = 255


@dataclass
class ProposedLink:
    source_id: int
    anchor_text: str
    target_url: str
    target_id: int = 0
    score: float = 0.0


@dataclass(frozen=True)
class _TransitionEffects:
    blacklist_add: bool = False
    blacklist_remove: bool = False
    recheck_dedup: bool = False


_ACTIVE = LinkStatus.ACTIVE.value
_REJECTED = LinkStatus.REJECTED.value
_FILTERED = LinkStatus.FILTERED.value

TRANSITIONS: Dict[tuple[str, str], _TransitionEffects] = {
    (_ACTIVE, _REJECTED): _TransitionEffects(blacklist_add=True),
    (_ACTIVE, _FILTERED): _TransitionEffects(),
    (_FILTERED, _REJECTED): _TransitionEffects(blacklist_add=True),
    # Restore: the blacklist entry must go with it or the next pass re-suppresses it.
    (_REJECTED, _ACTIVE): _TransitionEffects(blacklist_remove=True, recheck_dedup=True),
    (_FILTERED, _ACTIVE): _TransitionEffects(blacklist_remove=True, recheck_dedup=True),
}


def normalize_anchor(anchor_text: str) -> str:
    return " ".join((anchor_text or "").split())


def parse_status(status: str | LinkStatus) -> str:
    value = status.value if isinstance(status, LinkStatus) else str(status or "").strip().lower()
    allowed = {s.value for s in LinkStatus}
    if value not in allowed:
        raise ValidationError(f"Unknown link status {status!r}; expected one of {sorted(allowed)}.")
    return value


class LinkStore:
    def __init__(
        self,
        session: Session,
        *,
        sink: Optional[LinkChangeSink] = None,
        cache: Optional[ActiveCountCache] = None,
    ) -> None:
        self.session = session
        self.sink: LinkChangeSink = sink if sink is not None else LoggingSink()
        self.cache = cache
        self.blacklist = Blacklist(session)

    # === Writes ===

    def validate(self, link: ProposedLink) -> ProposedLink:
        """
        Return a normalized copy of ``link`` or raise ValidationError.
        """
        try:
            source_id = int(link.source_id)
            target_id = int(link.target_id or 0)
            score = float(link.score)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed link fields: {exc}") from exc

        url = normalize_target_url(link.target_url)
        if url is None:
            raise ValidationError(f"Target URL is not a well-formed http(s) URL: {link.target_url!r}")
        if source_id < 1:
            raise ValidationError("source_id must be a positive integer.")
        if target_id < 0:
            raise ValidationError("target_id must be 0 or a positive integer.")
        anchor = normalize_anchor(link.anchor_text)
        if not anchor:
            raise ValidationError("anchor_text must not be empty.")
        if len(anchor) > MAX_ANCHOR_LENGTH:
            raise ValidationError(f"anchor_text exceeds {MAX_ANCHOR_LENGTH} characters.")
        if math.isnan(score) or score < 0.0 or score > 1.0:
            raise ValidationError(f"score must be within [0, 1], got {score!r}.")

        return ProposedLink(
            source_id=source_id,
            anchor_text=anchor,
            target_url=url,
            target_id=target_id,
            score=score,
        )

    def check_dedup(self, link: ProposedLink, *, exclude_id: Optional[int] = None) -> None:
        """
        Raise DuplicateRejected if ``link`` (already normalized) would break a
        dedup rule against the current active links.
        """
        base = self.session.query(SemanticLink.id).filter(SemanticLink.status == _ACTIVE)
        if exclude_id is not None:
            base = base.filter(SemanticLink.id != exclude_id)

        if (
            base.filter(
                SemanticLink.source_id == link.source_id,
                SemanticLink.anchor_text == link.anchor_text,
                SemanticLink.target_url != link.target_url,
            ).first()
            is not None
        ):
            raise DuplicateRejected(
                f"Anchor {link.anchor_text!r} already links to a different URL in item {link.source_id}.",
                rule="source_anchor",
            )

        if (
            base.filter(
                SemanticLink.anchor_text == link.anchor_text,
                SemanticLink.target_url != link.target_url,
            ).first()
            is not None
        ):
            raise DuplicateRejected(
                f"Anchor {link.anchor_text!r} already links to a different URL elsewhere on the site.",
                rule="global_anchor",
            )

        if (
            base.filter(
                SemanticLink.source_id == link.source_id,
                SemanticLink.target_url == link.target_url,
            ).first()
            is not None
        ):
            raise DuplicateRejected(
                f"Item {link.source_id} already links to {link.target_url}.",
                rule="duplicate_edge",
            )

    def propose(self, link: ProposedLink) -> int:
        """
        Insert a new active link and return its id.

        Raises ValidationError or DuplicateRejected without writing anything.
        """
        clean = self.validate(link)
        try:
            self.check_dedup(clean)
        except DuplicateRejected:
            observe_link_event("duplicate")
            raise

        row = SemanticLink(
            source_id=clean.source_id,
            anchor_text=clean.anchor_text,
            target_url=clean.target_url,
            target_id=clean.target_id,
            score=clean.score,
            status=_ACTIVE,
        )
        self.session.add(row)
        self.session.flush()

        if self.cache is not None:
            self.cache.increment(clean.target_url)
        self.sink.on_link_changed(clean.source_id)
        observe_link_event("proposed")
        return row.id

    def set_status(self, link_id: int, status: str | LinkStatus) -> bool:
        """
        Move a link to ``status`` and apply the transition's side effects.

        Returns False if the link already has that status.
        """
        new_status = parse_status(status)
        link = self.get(link_id)
        old_status = link.status
        if old_status == new_status:
            return False

        effects = TRANSITIONS.get((old_status, new_status))
        if effects is None:
            raise StateError(f"Link {link_id} cannot move from {old_status!r} to {new_status!r}.")

        if effects.recheck_dedup:
            self.check_dedup(
                ProposedLink(
                    source_id=link.source_id,
                    anchor_text=link.anchor_text,
                    target_url=link.target_url,
                    target_id=link.target_id,
                    score=link.score,
                ),
                exclude_id=link.id,
            )

        if effects.blacklist_add:
            self.blacklist.add(link.source_id, link.target_url, link.anchor_text)
        if effects.blacklist_remove:
            self.blacklist.remove(link.source_id, link.target_url)

        link.status = new_status
        self.session.flush()

        # The change did not go through increment(); drop the cache.
        if self.cache is not None:
            self.cache.reset()
        self.sink.on_link_changed(link.source_id)

        if new_status == _REJECTED:
            observe_link_event("rejected")
        elif new_status == _FILTERED:
            observe_link_event("filtered")
        else:
            observe_link_event("restored")

        logger.info("Link %s: %s -> %s", link_id, old_status, new_status)
        return True

    def reject(self, link_id: int) -> bool:
        return self.set_status(link_id, LinkStatus.REJECTED)

    def restore(self, link_id: int) -> bool:
        return self.set_status(link_id, LinkStatus.ACTIVE)

    def filter(self, link_id: int) -> bool:
        return self.set_status(link_id, LinkStatus.FILTERED)

    def _notify_sources(self, source_ids: Set[int]) -> None:
        for source_id in sorted(source_ids):
            self.sink.on_link_changed(source_id)

    def delete_by_source(self, source_id: int) -> int:
        """
        Delete every link whose source is ``source_id``.
        """
        deleted = (
            self.session.query(SemanticLink)
            .filter(SemanticLink.source_id == int(source_id))
            .delete(synchronize_session=False)
        )
        if self.cache is not None:
            self.cache.reset()
        if deleted:
            self._notify_sources({int(source_id)})
        return int(deleted or 0)

    def delete_by_target(self, target_id: int) -> int:
        """
        Delete every link pointing at content item ``target_id``.
        """
        query = self.session.query(SemanticLink).filter(SemanticLink.target_id == int(target_id))
        affected = {int(s) for (s,) in query.with_entities(SemanticLink.source_id).distinct()}
        deleted = query.delete(synchronize_session=False)
        if self.cache is not None:
            self.cache.reset()
        self._notify_sources(affected)
        return int(deleted or 0)

    def delete_all(self) -> int:
        affected = {
            int(s) for (s,) in self.session.query(SemanticLink.source_id).distinct()
        }
        deleted = self.session.query(SemanticLink).delete(synchronize_session=False)
        if self.cache is not None:
            self.cache.reset()
        self._notify_sources(affected)
        return int(deleted or 0)

    # === Reads ===

    def get(self, link_id: int) -> SemanticLink:
        link = self.session.get(SemanticLink, int(link_id))
        if link is None:
            raise NotFound(f"Link with id={link_id} does not exist.")
        return link

    def get_by_source(
        self, source_id: int, status: str | LinkStatus = LinkStatus.ACTIVE
    ) -> List[SemanticLink]:
        return (
            self.session.query(SemanticLink)
            .filter(
                SemanticLink.source_id == int(source_id),
                SemanticLink.status == parse_status(status),
            )
            .order_by(SemanticLink.score.desc(), SemanticLink.id)
            .all()
        )

    def list_links(self, status: Optional[str | LinkStatus] = None) -> List[SemanticLink]:
        """
        Links for the admin listing, newest first.

        Excludes links whose source item is not published, or whose internal
        target item is not published. External/custom targets (target_id 0)
        are always listed.
        """
        source = aliased(ContentItem)
        target = aliased(ContentItem)
        query = (
            self.session.query(SemanticLink)
            .join(source, source.id == SemanticLink.source_id)
            .outerjoin(target, target.id == SemanticLink.target_id)
            .filter(source.status == "publish")
            .filter(
                or_(
                    SemanticLink.target_id == 0,
                    and_(target.id.isnot(None), target.status == "publish"),
                )
            )
        )
        if status:
            query = query.filter(SemanticLink.status == parse_status(status))
        return query.order_by(SemanticLink.created_at.desc(), SemanticLink.id.desc()).all()

    def active_count_for_source(self, source_id: int) -> int:
        return int(
            self.session.query(SemanticLink)
            .filter(
                SemanticLink.source_id == int(source_id),
                SemanticLink.status == _ACTIVE,
            )
            .count()
        )

    def active_count_for_target(self, target_url: str) -> int:
        return count_active_links_to(self.session, normalize_target_url(target_url) or target_url)

    def active_counts_by_target(self) -> Dict[str, int]:
        return active_counts_by_target(self.session)

    def get_all_active_anchors(self) -> Dict[str, str]:
        """
        anchor_text -> target_url for every active link.
        """
        rows = (
            self.session.query(SemanticLink.anchor_text, SemanticLink.target_url)
            .filter(SemanticLink.status == _ACTIVE)
            .distinct()
            .all()
        )
        return {anchor: url for anchor, url in rows}


__all__ = ["LinkStore", "ProposedLink", "TRANSITIONS", "normalize_anchor", "parse_status"]
