from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from sl_backend.config import MAX_CUSTOM_TARGETS
from sl_backend.custom_targets import CustomTargetStore
from sl_backend.db import get_session
from sl_backend.embedding_provider import EmbeddingProvider
from sl_backend.errors import (
    DuplicateRejected,
    LinkerError,
    NotFound,
    PersistenceError,
    ProviderError,
    StateError,
    ValidationError,
)
from sl_backend.indexing.coordinator import BatchCoordinator
from sl_backend.links import LinkStore
from sl_backend.matching.matcher import MatchSummary
from sl_backend.models import CustomTarget, SemanticLink

from .deps import get_embedding_provider, require_admin
from .schemas import (
    CustomTargetCreateSchema,
    CustomTargetListSchema,
    CustomTargetSchema,
    CustomTargetUpdateSchema,
    IndexingAdvanceRequestSchema,
    IndexingAdvanceSchema,
    IndexingCancelRequestSchema,
    IndexingCancelSchema,
    IndexingInitSchema,
    IndexingStatusSchema,
    LinkListResponseSchema,
    LinkSchema,
    LinkStatusChangeSchema,
    MatchSummarySchema,
    ResetResponseSchema,
    ThresholdSchema,
)

logger = logging.getLogger("semanticlinker.api")

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)

_ERROR_STATUS = {
    ValidationError: 400,
    NotFound: 404,
    DuplicateRejected: 409,
    StateError: 409,
    ProviderError: 502,
    PersistenceError: 500,
}


def get_db() -> Session:
    """
    FastAPI dependency that yields a DB session for admin routes.
    """
    with get_session() as session:
        yield session


def _http_error(exc: LinkerError) -> HTTPException:
    for exc_type, code in _ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _match_schema(summary: Optional[MatchSummary]) -> Optional[MatchSummarySchema]:
    if summary is None:
        return None
    return MatchSummarySchema(
        matchRunId=summary.match_run_id,
        status=summary.status,
        sourcesTotal=summary.sources_total,
        sourcesProcessed=summary.sources_processed,
        proposed=summary.proposed,
        duplicates=summary.duplicates,
        blacklisted=summary.blacklisted,
        capped=summary.capped,
        filtered=summary.filtered,
        belowThreshold=summary.below_threshold,
    )


def _link_schema(link: SemanticLink) -> LinkSchema:
    return LinkSchema(
        id=link.id,
        sourceId=link.source_id,
        anchorText=link.anchor_text,
        targetUrl=link.target_url,
        targetId=link.target_id,
        score=link.score,
        status=link.status,
        createdAt=link.created_at,
    )


def _custom_target_schema(target: CustomTarget) -> CustomTargetSchema:
    return CustomTargetSchema(
        id=target.id,
        url=target.url,
        title=target.title,
        keywords=target.keywords or "",
        status=target.status,
        hasEmbedding=target.embedding is not None,
        createdAt=target.created_at,
    )


# === Batch indexing ===


@router.post("/indexing/init", response_model=IndexingInitSchema)
def indexing_init(db: Session = Depends(get_db)) -> IndexingInitSchema:
    """
    Start an indexing run (or report the one already running).
    """
    result = BatchCoordinator(db).init()
    return IndexingInitSchema(
        runId=result.run_id,
        total=result.total,
        token=result.token,
        alreadyRunning=result.already_running,
    )


@router.post("/indexing/advance", response_model=IndexingAdvanceSchema)
def indexing_advance(
    payload: IndexingAdvanceRequestSchema,
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> IndexingAdvanceSchema:
    """
    Process one slice of the running indexing run.
    """
    try:
        result = BatchCoordinator(db, provider).advance(payload.token)
    except LinkerError as exc:
        raise _http_error(exc)

    return IndexingAdvanceSchema(
        runId=result.run_id,
        state=result.state,
        processed=result.processed,
        total=result.total,
        nextToken=result.next_token,
        done=result.done,
        failedItems={str(k): v for k, v in result.failed_items.items()},
        match=_match_schema(result.match_summary),
    )


@router.post("/indexing/cancel", response_model=IndexingCancelSchema)
def indexing_cancel(
    payload: IndexingCancelRequestSchema,
    db: Session = Depends(get_db),
) -> IndexingCancelSchema:
    cancelled = BatchCoordinator(db).cancel(also_cancel_downstream=payload.alsoCancelDownstream)
    return IndexingCancelSchema(cancelled=cancelled)


@router.get("/indexing/status", response_model=IndexingStatusSchema)
def indexing_status(db: Session = Depends(get_db)) -> IndexingStatusSchema:
    progress = BatchCoordinator(db).status()
    if progress is None:
        return IndexingStatusSchema(state="idle")
    return IndexingStatusSchema(
        state=progress.state,
        runId=progress.run_id,
        total=progress.total,
        processed=progress.processed,
        embedded=progress.embedded,
        skipped=progress.skipped,
        failedItems={str(k): v for k, v in progress.failed_items.items()},
        failedItemId=progress.failed_item_id,
        errorMessage=progress.error_message,
        nextToken=progress.next_token,
        startedAt=progress.started_at,
        finishedAt=progress.finished_at,
        matchRunId=progress.match_run_id,
        matchState=progress.match_state,
    )


# === Links ===


@router.get("/links", response_model=LinkListResponseSchema)
def list_links(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> LinkListResponseSchema:
    """
    List links whose source (and internal target) are published.
    """
    try:
        links = LinkStore(db).list_links(status)
    except LinkerError as exc:
        raise _http_error(exc)

    items: List[LinkSchema] = [_link_schema(link) for link in links[offset : offset + limit]]
    return LinkListResponseSchema(items=items, total=len(links))


def _change_status(db: Session, link_id: int, action: str) -> LinkStatusChangeSchema:
    store = LinkStore(db)
    try:
        changed = getattr(store, action)(link_id)
        link = store.get(link_id)
    except LinkerError as exc:
        raise _http_error(exc)
    return LinkStatusChangeSchema(id=link.id, status=link.status, changed=changed)


@router.post("/links/{link_id}/reject", response_model=LinkStatusChangeSchema)
def reject_link(link_id: int, db: Session = Depends(get_db)) -> LinkStatusChangeSchema:
    """
    Reject a link and blacklist its (source, target URL) pair.
    """
    return _change_status(db, link_id, "reject")


@router.post("/links/{link_id}/restore", response_model=LinkStatusChangeSchema)
def restore_link(link_id: int, db: Session = Depends(get_db)) -> LinkStatusChangeSchema:
    """
    Restore a rejected or filtered link and drop its blacklist entry.
    """
    return _change_status(db, link_id, "restore")


@router.post("/links/delete-all", response_model=ResetResponseSchema)
def delete_all(db: Session = Depends(get_db)) -> ResetResponseSchema:
    """
    Delete every link, blacklist entry and embedding, and cancel running work.
    """
    result = BatchCoordinator(db).reset_all()
    return ResetResponseSchema(
        linksDeleted=result.links,
        blacklistDeleted=result.blacklist,
        embeddingsDeleted=result.embeddings,
        message=(
            f"{result.links} link(s), {result.blacklist} blacklist entr(ies) and "
            f"{result.embeddings} embedding row(s) deleted."
        ),
    )


# === Custom targets ===


@router.get("/custom-targets", response_model=CustomTargetListSchema)
def list_custom_targets(db: Session = Depends(get_db)) -> CustomTargetListSchema:
    targets = CustomTargetStore(db).list()
    return CustomTargetListSchema(
        items=[_custom_target_schema(t) for t in targets],
        total=len(targets),
        max=MAX_CUSTOM_TARGETS,
    )


@router.post("/custom-targets", response_model=CustomTargetSchema, status_code=201)
def create_custom_target(
    payload: CustomTargetCreateSchema,
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> CustomTargetSchema:
    """
    Add a custom target and try to embed it straight away.

    A provider failure leaves the target without an embedding; it is picked up
    by the next ``embed`` call.
    """
    store = CustomTargetStore(db)
    try:
        target_id = store.add(payload.url, payload.title, payload.keywords)
    except LinkerError as exc:
        raise _http_error(exc)

    try:
        store.generate_embedding(target_id, provider)
    except ProviderError as exc:
        logger.warning("Custom target %s saved without embedding: %s", target_id, exc)
    return _custom_target_schema(store.get(target_id))


@router.patch("/custom-targets/{target_id}", response_model=CustomTargetSchema)
def update_custom_target(
    target_id: int,
    payload: CustomTargetUpdateSchema,
    db: Session = Depends(get_db),
) -> CustomTargetSchema:
    try:
        target = CustomTargetStore(db).update(
            target_id,
            url=payload.url,
            title=payload.title,
            keywords=payload.keywords,
            status=payload.status,
        )
    except LinkerError as exc:
        raise _http_error(exc)
    return _custom_target_schema(target)


@router.delete("/custom-targets/{target_id}", status_code=204)
def delete_custom_target(target_id: int, db: Session = Depends(get_db)) -> None:
    try:
        CustomTargetStore(db).delete(target_id)
    except LinkerError as exc:
        raise _http_error(exc)


@router.post("/custom-targets/{target_id}/embed", response_model=CustomTargetSchema)
def embed_custom_target(
    target_id: int,
    db: Session = Depends(get_db),
    provider: EmbeddingProvider = Depends(get_embedding_provider),
) -> CustomTargetSchema:
    store = CustomTargetStore(db)
    try:
        store.generate_embedding(target_id, provider)
    except LinkerError as exc:
        raise _http_error(exc)
    return _custom_target_schema(store.get(target_id))


@router.get("/custom-targets/threshold", response_model=ThresholdSchema)
def get_custom_target_threshold(db: Session = Depends(get_db)) -> ThresholdSchema:
    return ThresholdSchema(threshold=CustomTargetStore(db).get_threshold())


@router.put("/custom-targets/threshold", response_model=ThresholdSchema)
def save_custom_target_threshold(
    payload: ThresholdSchema,
    db: Session = Depends(get_db),
) -> ThresholdSchema:
    """
    Save the custom-target threshold, clamped to [0.20, 0.90].
    """
    try:
        value = CustomTargetStore(db).save_threshold(payload.threshold)
    except LinkerError as exc:
        raise _http_error(exc)
    return ThresholdSchema(threshold=value)


__all__ = ["router", "get_db"]
