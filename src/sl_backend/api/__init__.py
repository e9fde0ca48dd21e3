from __future__ import annotations

from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from sl_backend.db import get_session
from sl_backend.logging_config import configure_logging
from sl_backend.models import (
    BlacklistEntry,
    CustomTarget,
    Embedding,
    IndexingRun,
    MatchRun,
    SemanticLink,
)
from sl_backend.runtime_metrics import render_runtime_metrics_prometheus

from .deps import require_admin
from .routes_admin import router as admin_router

configure_logging()

app = FastAPI(
    title="Semantic Linker Backend API",
    version="0.1.0",
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """
    Inject a small set of security-related headers on all HTTP responses.
    """
    response = await call_next(request)
    headers = response.headers
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    headers.setdefault("X-Frame-Options", "DENY")
    return response


def _metrics_get_db() -> Session:
    with get_session() as session:
        yield session


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics(
    db: Session = Depends(_metrics_get_db),
    _: None = Depends(require_admin),
) -> PlainTextResponse:
    """
    Prometheus-style metrics endpoint summarising links, embeddings and runs.
    """
    lines = []

    link_rows = (
        db.query(SemanticLink.status, func.count(SemanticLink.id))
        .group_by(SemanticLink.status)
        .all()
    )
    lines.append("# HELP semanticlinker_links_total Number of links by status")
    lines.append("# TYPE semanticlinker_links_total gauge")
    for status, count in link_rows:
        lines.append(f'semanticlinker_links_total{{status="{status}"}} {int(count)}')

    blacklist_total = db.query(func.count(BlacklistEntry.id)).scalar() or 0
    lines.append("# HELP semanticlinker_blacklist_total Number of blacklisted (source, target) pairs")
    lines.append("# TYPE semanticlinker_blacklist_total gauge")
    lines.append(f"semanticlinker_blacklist_total {int(blacklist_total)}")

    embedded_items = db.query(func.count(func.distinct(Embedding.item_id))).scalar() or 0
    embedding_rows = db.query(func.count(Embedding.id)).scalar() or 0
    lines.append("# HELP semanticlinker_embedded_items_total Number of content items with embeddings")
    lines.append("# TYPE semanticlinker_embedded_items_total gauge")
    lines.append(f"semanticlinker_embedded_items_total {int(embedded_items)}")
    lines.append("# HELP semanticlinker_embedding_rows_total Number of stored chunk embeddings")
    lines.append("# TYPE semanticlinker_embedding_rows_total gauge")
    lines.append(f"semanticlinker_embedding_rows_total {int(embedding_rows)}")

    custom_rows = (
        db.query(CustomTarget.embedding.isnot(None), func.count(CustomTarget.id))
        .group_by(CustomTarget.embedding.isnot(None))
        .all()
    )
    lines.append("# HELP semanticlinker_custom_targets_total Number of custom targets")
    lines.append("# TYPE semanticlinker_custom_targets_total gauge")
    for has_embedding, count in custom_rows:
        label = "true" if has_embedding else "false"
        lines.append(f'semanticlinker_custom_targets_total{{embedded="{label}"}} {int(count)}')

    run_rows = (
        db.query(IndexingRun.status, func.count(IndexingRun.id))
        .group_by(IndexingRun.status)
        .all()
    )
    lines.append("# HELP semanticlinker_indexing_runs_total Number of indexing runs by status")
    lines.append("# TYPE semanticlinker_indexing_runs_total gauge")
    for status, count in run_rows:
        lines.append(f'semanticlinker_indexing_runs_total{{status="{status}"}} {int(count)}')

    match_rows = (
        db.query(MatchRun.status, func.count(MatchRun.id)).group_by(MatchRun.status).all()
    )
    lines.append("# HELP semanticlinker_match_runs_total Number of matching passes by status")
    lines.append("# TYPE semanticlinker_match_runs_total gauge")
    for status, count in match_rows:
        lines.append(f'semanticlinker_match_runs_total{{status="{status}"}} {int(count)}')

    lines.extend(render_runtime_metrics_prometheus())

    body = "\n".join(lines) + "\n"
    return PlainTextResponse(content=body)


app.include_router(admin_router, prefix="/api")

__all__ = ["app"]
