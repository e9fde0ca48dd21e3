"""
Matching pass: turn embeddings into proposed links.

One pass owns one MatchingContext (preloaded active counts, blacklist snapshot
and global anchor map). Candidates come from a pluggable ScoringStrategy; the
Matcher applies the gates around it and proposes survivors through the
LinkStore, which enforces the dedup rules.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from sl_backend.blacklist import Blacklist, BlacklistSnapshot
from sl_backend.config import MatchingConfig, get_matching_config
from sl_backend.custom_targets import CustomTargetStore
from sl_backend.embeddings import EmbeddingTable
from sl_backend.errors import DuplicateRejected
from sl_backend.link_counts import ActiveCountCache
from sl_backend.links import LinkStore, ProposedLink
from sl_backend.matching.scoring import (
    CONTENT,
    CUSTOM,
    CosineScorer,
    ScoringStrategy,
    SourceItem,
    Target,
)
from sl_backend.models import ContentItem, LinkStatus, MatchRun, RunStatus, SemanticLink
from sl_backend.notifications import LinkChangeSink
from sl_backend.urls import normalize_target_url

logger = logging.getLogger("semanticlinker.matching")

# Returns False for links that should be moved to "filtered".
QualityGate = Callable[[SemanticLink], bool]


@dataclass
class MatchingContext:
    """
    Per-pass state. Never shared between passes.
    """

    counts: ActiveCountCache
    blacklist: BlacklistSnapshot
    anchors: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, session: Session) -> "MatchingContext":
        counts = ActiveCountCache(session)
        counts.preload()
        anchors = LinkStore(session).get_all_active_anchors()
        return cls(counts=counts, blacklist=Blacklist(session).preload(), anchors=anchors)

    def active_count(self, target_url: str) -> int:
        # A status transition resets the cache; reload once rather than
        # falling back to one query per candidate.
        if not self.counts.is_loaded:
            self.counts.preload()
        return self.counts.get(target_url)


@dataclass
class MatchSummary:
    match_run_id: Optional[int]
    status: str
    sources_total: int = 0
    sources_processed: int = 0
    proposed: int = 0
    duplicates: int = 0
    blacklisted: int = 0
    capped: int = 0
    filtered: int = 0
    below_threshold: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class Matcher:
    def __init__(
        self,
        session: Session,
        *,
        config: Optional[MatchingConfig] = None,
        scorer: Optional[ScoringStrategy] = None,
        sink: Optional[LinkChangeSink] = None,
        quality_gate: Optional[QualityGate] = None,
    ) -> None:
        self.session = session
        self.config = config or get_matching_config()
        self.scorer: ScoringStrategy = scorer or CosineScorer(self.config.max_anchor_words)
        self.sink = sink
        self.quality_gate = quality_gate

    # === Target and source loading ===

    def load_targets(self) -> List[Target]:
        """
        Chunk-0 embeddings of publishable items plus embedded custom targets.
        """
        vectors = EmbeddingTable(self.session).get_title_embeddings()
        urls: Dict[int, str] = {}
        if vectors:
            rows = (
                self.session.query(ContentItem.id, ContentItem.url)
                .filter(ContentItem.id.in_(list(vectors.keys())))
                .all()
            )
            urls = {int(item_id): url for item_id, url in rows}

        targets = [
            Target(
                url=normalize_target_url(urls[item_id]) or urls[item_id],
                vector=vector,
                kind=CONTENT,
                target_id=item_id,
            )
            for item_id, vector in vectors.items()
            if item_id in urls
        ]
        for custom in CustomTargetStore(self.session).get_embedded():
            targets.append(
                Target(
                    url=custom.url,
                    vector=list(custom.embedding or []),
                    kind=CUSTOM,
                    target_id=0,
                    title=custom.title,
                )
            )
        return targets

    def _source_ids(self, source_ids: Optional[Sequence[int]]) -> List[int]:
        vectors = EmbeddingTable(self.session).get_title_embeddings()
        if source_ids is None:
            return sorted(vectors.keys())
        return [int(s) for s in source_ids if int(s) in vectors]

    # === Pass ===

    def _cancel_requested(self, run: MatchRun, should_cancel: Optional[Callable[[], bool]]) -> bool:
        self.session.refresh(run, ["cancel_requested"])
        if run.cancel_requested:
            return True
        return bool(should_cancel and should_cancel())

    def run(
        self,
        source_ids: Optional[Sequence[int]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        *,
        indexing_run_id: Optional[int] = None,
    ) -> MatchSummary:
        """
        Run one matching pass and record it as a MatchRun row.

        Commits after every source item so partial progress survives a
        cancellation or crash and the cancel flag can be set from elsewhere.
        """
        run = MatchRun(indexing_run_id=indexing_run_id, status=RunStatus.RUNNING.value)
        self.session.add(run)
        self.session.commit()
        run_id = run.id

        summary = MatchSummary(match_run_id=run_id, status=RunStatus.RUNNING.value)
        try:
            ids = self._source_ids(source_ids)
            summary.sources_total = len(ids)
            targets = self.load_targets()
            custom_threshold = CustomTargetStore(self.session).get_threshold(
                self.config.custom_target_threshold
            )
            ctx = MatchingContext.load(self.session)
            store = LinkStore(self.session, sink=self.sink, cache=ctx.counts)

            logger.info(
                "Match run %s: %d source(s), %d target(s)", run_id, len(ids), len(targets)
            )

            for source_id in ids:
                if self._cancel_requested(run, should_cancel):
                    summary.status = RunStatus.CANCELLED.value
                    logger.info("Match run %s cancelled", run_id)
                    break
                self._match_source(source_id, targets, custom_threshold, ctx, store, summary)
                summary.sources_processed += 1
                self._save_counters(run, summary)
                self.session.commit()
            else:
                summary.status = RunStatus.COMPLETED.value
        except Exception as exc:
            self.session.rollback()
            run = self.session.get(MatchRun, run_id)
            summary.status = RunStatus.FAILED.value
            if run is not None:
                run.error_message = str(exc)
                self._finish(run, summary)
                self.session.commit()
            logger.error("Match run %s failed: %s", run_id, exc)
            raise

        self._finish(run, summary)
        self.session.commit()
        logger.info(
            "Match run %s %s: proposed=%d duplicates=%d blacklisted=%d capped=%d filtered=%d",
            run_id,
            summary.status,
            summary.proposed,
            summary.duplicates,
            summary.blacklisted,
            summary.capped,
            summary.filtered,
        )
        return summary

    def _save_counters(self, run: MatchRun, summary: MatchSummary) -> None:
        run.sources_total = summary.sources_total
        run.sources_processed = summary.sources_processed
        run.proposed = summary.proposed
        run.duplicates = summary.duplicates
        run.blacklisted = summary.blacklisted
        run.capped = summary.capped
        run.filtered = summary.filtered

    def _finish(self, run: MatchRun, summary: MatchSummary) -> None:
        self._save_counters(run, summary)
        run.status = summary.status
        run.finished_at = datetime.now(timezone.utc)

    def _match_source(
        self,
        source_id: int,
        targets: Sequence[Target],
        custom_threshold: float,
        ctx: MatchingContext,
        store: LinkStore,
        summary: MatchSummary,
    ) -> None:
        item = self.session.get(ContentItem, source_id)
        if item is None:
            return
        source = SourceItem(
            item_id=source_id,
            url=normalize_target_url(item.url) or item.url,
            chunks=EmbeddingTable(self.session).get_for_item(source_id),
        )

        source_count = store.active_count_for_source(source_id)
        per_item_cap = self.config.max_links_per_item
        per_target_cap = self.config.max_links_per_target
        accepted_content: List[int] = []

        for cand in self.scorer.score(source, targets):
            target = cand.target
            if target.kind == CONTENT and target.target_id == source_id:
                continue
            if target.url == source.url:
                continue

            threshold = custom_threshold if target.kind == CUSTOM else self.config.similarity_threshold
            if cand.score < threshold:
                summary.below_threshold += 1
                continue

            if ctx.blacklist.contains(source_id, target.url):
                summary.blacklisted += 1
                continue

            if per_item_cap and source_count >= per_item_cap:
                summary.capped += 1
                continue
            if per_target_cap and ctx.active_count(target.url) >= per_target_cap:
                summary.capped += 1
                continue

            bound = ctx.anchors.get(cand.anchor_text)
            if bound is not None and bound != target.url:
                summary.duplicates += 1
                continue

            try:
                link_id = store.propose(
                    ProposedLink(
                        source_id=source_id,
                        anchor_text=cand.anchor_text,
                        target_url=target.url,
                        target_id=target.target_id,
                        score=cand.score,
                    )
                )
            except DuplicateRejected as exc:
                summary.duplicates += 1
                logger.debug("Skipped candidate %s -> %s: %s", source_id, target.url, exc.rule)
                continue

            ctx.anchors[cand.anchor_text] = target.url
            source_count += 1
            summary.proposed += 1
            # Custom targets are operator-curated; the quality gate skips them.
            if target.kind == CONTENT:
                accepted_content.append(link_id)

        if self.quality_gate is not None:
            for link_id in accepted_content:
                link = store.get(link_id)
                if not self.quality_gate(link):
                    anchor = link.anchor_text
                    store.filter(link_id)
                    summary.filtered += 1
                    if not self._anchor_still_active(anchor):
                        ctx.anchors.pop(anchor, None)

    def _anchor_still_active(self, anchor_text: str) -> bool:
        return (
            self.session.query(SemanticLink.id)
            .filter(
                SemanticLink.anchor_text == anchor_text,
                SemanticLink.status == LinkStatus.ACTIVE.value,
            )
            .first()
            is not None
        )


__all__ = ["Matcher", "MatchingContext", "MatchSummary", "QualityGate"]
