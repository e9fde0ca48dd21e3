"""
Resumable batch indexing: init / advance / cancel over an IndexingRun row.

A run snapshots the ids of stale items (no current chunk-0 hash) at init.
Tokens are ``"<run_id>:<offset>"`` into that list, so replaying a token
re-processes the same slice; items embedded by the first attempt are now
current and are skipped, which makes the replay idempotent.

Per-item atomicity: embeddings for an item are computed before any write, the
rows are written together, and the session is committed once per item. A
write failure rolls back that item only and fails the run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sl_backend.blacklist import Blacklist
from sl_backend.config import (
    EmbeddingProviderConfig,
    IndexingConfig,
    MatchingConfig,
    get_embedding_provider_config,
    get_indexing_config,
)
from sl_backend.content_store import ContentStore, SqlContentStore
from sl_backend.embedding_provider import EmbeddingProvider, coerce_vector
from sl_backend.embeddings import EmbeddingTable
from sl_backend.errors import PersistenceError, ProviderError, StateError, ValidationError
from sl_backend.indexing.chunking import build_chunks
from sl_backend.link_counts import ActiveCountCache
from sl_backend.links import LinkStore
from sl_backend.matching.matcher import Matcher, MatchSummary, QualityGate
from sl_backend.matching.scoring import ScoringStrategy
from sl_backend.models import IndexingRun, MatchRun, RunStatus
from sl_backend.notifications import LinkChangeSink

logger = logging.getLogger("semanticlinker.indexing")

_EMBEDDED = "embedded"
_SKIPPED = "skipped"


def encode_token(run_id: int, offset: int) -> str:
    return f"{int(run_id)}:{int(offset)}"


def decode_token(token: str) -> Tuple[int, int]:
    """
    Parse ``"<run_id>:<offset>"``; raises ValidationError when malformed.
    """
    try:
        run_part, offset_part = str(token).strip().split(":", 1)
        run_id, offset = int(run_part), int(offset_part)
    except (AttributeError, ValueError) as exc:
        raise ValidationError(f"Malformed slice token: {token!r}") from exc
    if run_id < 1 or offset < 0:
        raise ValidationError(f"Malformed slice token: {token!r}")
    return run_id, offset


@dataclass
class InitResult:
    run_id: int
    total: int
    token: str
    already_running: bool = False


@dataclass
class AdvanceResult:
    run_id: int
    state: str
    processed: int
    total: int
    next_token: Optional[str]
    done: bool
    failed_items: Dict[int, str] = field(default_factory=dict)
    match_summary: Optional[MatchSummary] = None


@dataclass
class RunProgress:
    run_id: int
    state: str
    total: int
    processed: int
    embedded: int
    skipped: int
    failed_items: Dict[int, str]
    failed_item_id: Optional[int]
    error_message: Optional[str]
    next_token: Optional[str]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    match_run_id: Optional[int] = None
    match_state: Optional[str] = None


@dataclass
class ResetResult:
    links: int
    blacklist: int
    embeddings: int
    cancelled_runs: int = 0


def _failed_items(run: IndexingRun) -> Dict[int, str]:
    return {int(k): str(v) for k, v in (run.item_errors or {}).items()}


class BatchCoordinator:
    def __init__(
        self,
        session: Session,
        provider: Optional[EmbeddingProvider] = None,
        *,
        config: Optional[IndexingConfig] = None,
        provider_config: Optional[EmbeddingProviderConfig] = None,
        matching_config: Optional[MatchingConfig] = None,
        content_store: Optional[ContentStore] = None,
        sink: Optional[LinkChangeSink] = None,
        scorer: Optional[ScoringStrategy] = None,
        quality_gate: Optional[QualityGate] = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.config = config or get_indexing_config()
        self.provider_config = provider_config or get_embedding_provider_config()
        self.matching_config = matching_config
        self.content_store: ContentStore = content_store or SqlContentStore(session)
        self.sink = sink
        self.scorer = scorer
        self.quality_gate = quality_gate

    # === Run lookup ===

    def _latest_run(self) -> Optional[IndexingRun]:
        return self.session.query(IndexingRun).order_by(IndexingRun.id.desc()).first()

    def _running_run(self) -> Optional[IndexingRun]:
        return (
            self.session.query(IndexingRun)
            .filter(IndexingRun.status == RunStatus.RUNNING.value)
            .order_by(IndexingRun.id.desc())
            .first()
        )

    def _already_running(self, run: IndexingRun) -> InitResult:
        logger.info("Indexing run %s already running; init is a no-op", run.id)
        return InitResult(
            run_id=run.id,
            total=run.total_items,
            token=encode_token(run.id, run.processed_items),
            already_running=True,
        )

    # === Operations ===

    def init(self) -> InitResult:
        """
        Start a run over the stale items, or report the run already in progress.
        """
        existing = self._running_run()
        if existing is not None:
            return self._already_running(existing)

        stored = EmbeddingTable(self.session).stored_hashes()
        work: List[int] = [
            item.id
            for item in self.content_store.list_publishable_items()
            if stored.get(item.id) != self.content_store.get_content_hash(item)
        ]

        run = IndexingRun(
            status=RunStatus.RUNNING.value,
            work_item_ids=work,
            total_items=len(work),
            processed_items=0,
            embedded_items=0,
            skipped_items=0,
            cancel_requested=False,
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError:
            # Another process started a run between the check and the insert;
            # ux_indexing_runs_single_running admits only one.
            self.session.rollback()
            existing = self._running_run()
            if existing is None:
                raise
            return self._already_running(existing)
        logger.info("Started indexing run %s with %d stale item(s)", run.id, len(work))
        return InitResult(run_id=run.id, total=len(work), token=encode_token(run.id, 0))

    def advance(self, token: str) -> AdvanceResult:
        """
        Process one slice starting at the token's offset.
        """
        run_id, offset = decode_token(token)
        run = self.session.get(IndexingRun, run_id)
        if run is None:
            raise StateError(f"No indexing run with id={run_id}.")
        self.session.refresh(run)

        if run.status == RunStatus.COMPLETED.value:
            return self._result(run, next_offset=None)
        if run.status == RunStatus.CANCELLED.value or run.cancel_requested:
            if run.status != RunStatus.CANCELLED.value:
                self._mark_cancelled(run)
                self.session.commit()
            logger.info("Indexing run %s is cancelled; not advancing", run_id)
            return self._result(run, next_offset=None)
        if run.status != RunStatus.RUNNING.value:
            raise StateError(f"Indexing run {run_id} is {run.status}; cannot advance.")
        if offset > run.processed_items:
            raise StateError(
                f"Token offset {offset} is ahead of run {run_id} progress ({run.processed_items})."
            )
        work = list(run.work_item_ids or [])
        slice_ids = work[offset : offset + self.config.slice_size]
        if slice_ids and self.provider is None:
            raise StateError("No embedding provider configured.")
        slice_failures: Dict[int, str] = {}

        for position, item_id in enumerate(slice_ids, start=offset):
            first_visit = position >= run.processed_items
            try:
                outcome = self._process_item(int(item_id))
            except ProviderError as exc:
                self.session.rollback()
                run = self.session.get(IndexingRun, run_id)
                slice_failures[int(item_id)] = str(exc)
                errors = dict(run.item_errors or {})
                errors[str(item_id)] = str(exc)
                run.item_errors = errors
                logger.warning("Indexing run %s: item %s failed: %s", run_id, item_id, exc)
            except PersistenceError as exc:
                self.session.rollback()
                self._fail(run_id, exc.item_id or int(item_id), str(exc))
                raise
            else:
                if str(item_id) in (run.item_errors or {}):
                    errors = dict(run.item_errors or {})
                    errors.pop(str(item_id), None)
                    run.item_errors = errors or None
                if first_visit:
                    if outcome == _EMBEDDED:
                        run.embedded_items += 1
                    else:
                        run.skipped_items += 1

            run.processed_items = max(run.processed_items, position + 1)
            self._commit_progress(run_id, item_id)

        next_offset = offset + len(slice_ids)
        if next_offset < len(work):
            return self._result(run, next_offset=next_offset, slice_failures=slice_failures)

        self.session.refresh(run)
        if run.cancel_requested or run.status == RunStatus.CANCELLED.value:
            return self._result(run, next_offset=None, slice_failures=slice_failures)

        run.status = RunStatus.COMPLETED.value
        run.finished_at = datetime.now(timezone.utc)
        self.session.commit()
        logger.info(
            "Indexing run %s completed: embedded=%d skipped=%d failed=%d",
            run_id,
            run.embedded_items,
            run.skipped_items,
            len(run.item_errors or {}),
        )

        summary = self._run_matcher(run_id)
        run = self.session.get(IndexingRun, run_id)
        result = self._result(run, next_offset=None, slice_failures=slice_failures)
        result.match_summary = summary
        return result

    def cancel(self, also_cancel_downstream: bool = False) -> bool:
        """
        Cancel the running indexing run (and optionally any matching pass).

        Returns True if anything was cancelled.
        """
        cancelled = False
        run = self._running_run()
        if run is not None:
            self._mark_cancelled(run)
            cancelled = True
            logger.info("Cancelled indexing run %s", run.id)

        if also_cancel_downstream:
            for match_run in (
                self.session.query(MatchRun)
                .filter(MatchRun.status == RunStatus.RUNNING.value)
                .all()
            ):
                match_run.cancel_requested = True
                cancelled = True
                logger.info("Requested cancellation of match run %s", match_run.id)

        self.session.commit()
        return cancelled

    def status(self) -> Optional[RunProgress]:
        run = self._latest_run()
        if run is None:
            return None
        match_run = (
            self.session.query(MatchRun)
            .filter(MatchRun.indexing_run_id == run.id)
            .order_by(MatchRun.id.desc())
            .first()
        )
        next_token = None
        if run.status == RunStatus.RUNNING.value:
            next_token = encode_token(run.id, run.processed_items)
        return RunProgress(
            run_id=run.id,
            state=run.status,
            total=run.total_items,
            processed=run.processed_items,
            embedded=run.embedded_items,
            skipped=run.skipped_items,
            failed_items=_failed_items(run),
            failed_item_id=run.failed_item_id,
            error_message=run.error_message,
            next_token=next_token,
            started_at=run.started_at,
            finished_at=run.finished_at,
            match_run_id=match_run.id if match_run else None,
            match_state=match_run.status if match_run else None,
        )

    def reset_all(self, cache: Optional[ActiveCountCache] = None) -> ResetResult:
        """
        Delete all links, blacklist entries and embeddings; cancel in-flight runs.
        """
        links = LinkStore(self.session, sink=self.sink, cache=cache).delete_all()
        blacklist = Blacklist(self.session).delete_all()
        embeddings = EmbeddingTable(self.session).delete_all()

        cancelled_runs = 0
        for run in (
            self.session.query(IndexingRun)
            .filter(IndexingRun.status == RunStatus.RUNNING.value)
            .all()
        ):
            self._mark_cancelled(run)
            cancelled_runs += 1
        for match_run in (
            self.session.query(MatchRun).filter(MatchRun.status == RunStatus.RUNNING.value).all()
        ):
            match_run.cancel_requested = True
            cancelled_runs += 1

        self.session.commit()
        logger.info(
            "Reset: %d link(s), %d blacklist entr(ies), %d embedding row(s) deleted",
            links,
            blacklist,
            embeddings,
        )
        return ResetResult(
            links=links,
            blacklist=blacklist,
            embeddings=embeddings,
            cancelled_runs=cancelled_runs,
        )

    # === Internals ===

    def _process_item(self, item_id: int) -> str:
        item = self.content_store.get_item(item_id)
        if item is None or not item.is_publishable:
            return _SKIPPED

        content_hash = self.content_store.get_content_hash(item)
        table = EmbeddingTable(self.session)
        if table.is_current(item_id, content_hash):
            return _SKIPPED

        chunks = build_chunks(item, self.config.chunk_max_chars)
        vectors = self._embed_chunks(chunks)

        try:
            for index, (text, vector) in enumerate(zip(chunks, vectors)):
                table.upsert(item_id, index, text, vector, content_hash)
            table.prune_chunks(item_id, len(chunks))
            self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to write embeddings for item {item_id}: {exc}", item_id=item_id
            ) from exc
        return _EMBEDDED

    def _embed_chunks(self, chunks: List[str]) -> List[List[float]]:
        """
        Embed every chunk of one item concurrently. Any failure, timeout or
        malformed vector fails the whole item with ProviderError.
        """
        workers = max(1, min(self.provider_config.max_concurrency, len(chunks)))
        timeout = self.provider_config.timeout_seconds
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sl-embed")
        try:
            futures = [pool.submit(self.provider.embed, text) for text in chunks]
            vectors: List[List[float]] = []
            for index, future in enumerate(futures):
                try:
                    raw = future.result(timeout=timeout)
                except FuturesTimeout as exc:
                    raise ProviderError(f"Embedding chunk {index} timed out after {timeout}s.") from exc
                except ProviderError:
                    raise
                except Exception as exc:
                    # pluggable providers may raise anything
                    raise ProviderError(
                        f"Embedding chunk {index} failed: {type(exc).__name__}: {exc}"
                    ) from exc
                vector = coerce_vector(list(raw) if isinstance(raw, tuple) else raw)
                if vectors and len(vector) != len(vectors[0]):
                    raise ProviderError(
                        f"Embedding chunk {index} has dimension {len(vector)}; "
                        f"expected {len(vectors[0])}."
                    )
                vectors.append(vector)
            return vectors
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _commit_progress(self, run_id: int, item_id: int) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            self._fail(run_id, int(item_id), f"Failed to commit item {item_id}: {exc}")
            raise PersistenceError(
                f"Failed to commit item {item_id}: {exc}", item_id=int(item_id)
            ) from exc

    def _fail(self, run_id: int, item_id: int, message: str) -> None:
        run = self.session.get(IndexingRun, run_id)
        if run is None:
            return
        run.status = RunStatus.FAILED.value
        run.failed_item_id = item_id
        run.error_message = message
        run.finished_at = datetime.now(timezone.utc)
        self.session.commit()
        logger.error("Indexing run %s failed at item %s: %s", run_id, item_id, message)

    def _mark_cancelled(self, run: IndexingRun) -> None:
        run.cancel_requested = True
        run.status = RunStatus.CANCELLED.value
        run.finished_at = datetime.now(timezone.utc)

    def _run_matcher(self, run_id: int) -> MatchSummary:
        matcher = Matcher(
            self.session,
            config=self.matching_config,
            scorer=self.scorer,
            sink=self.sink,
            quality_gate=self.quality_gate,
        )
        return matcher.run(indexing_run_id=run_id)

    def _result(
        self,
        run: IndexingRun,
        *,
        next_offset: Optional[int],
        slice_failures: Optional[Dict[int, str]] = None,
    ) -> AdvanceResult:
        done = next_offset is None
        return AdvanceResult(
            run_id=run.id,
            state=run.status,
            processed=run.processed_items,
            total=run.total_items,
            next_token=None if done else encode_token(run.id, next_offset),
            done=done,
            failed_items=dict(slice_failures or {}),
        )


__all__ = [
    "AdvanceResult",
    "BatchCoordinator",
    "InitResult",
    "ResetResult",
    "RunProgress",
    "decode_token",
    "encode_token",
]
