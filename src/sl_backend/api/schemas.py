from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class MatchSummarySchema(BaseModel):
    matchRunId: Optional[int]
    status: str
    sourcesTotal: int
    sourcesProcessed: int
    proposed: int
    duplicates: int
    blacklisted: int
    capped: int
    filtered: int
    belowThreshold: int


class IndexingInitSchema(BaseModel):
    runId: int
    total: int
    token: str
    alreadyRunning: bool


class IndexingAdvanceRequestSchema(BaseModel):
    token: str


class IndexingAdvanceSchema(BaseModel):
    runId: int
    state: str
    processed: int
    total: int
    nextToken: Optional[str]
    done: bool
    failedItems: Dict[str, str]
    match: Optional[MatchSummarySchema] = None


class IndexingCancelRequestSchema(BaseModel):
    alsoCancelDownstream: bool = False


class IndexingCancelSchema(BaseModel):
    cancelled: bool


class IndexingStatusSchema(BaseModel):
    state: str
    runId: Optional[int] = None
    total: int = 0
    processed: int = 0
    embedded: int = 0
    skipped: int = 0
    failedItems: Dict[str, str] = Field(default_factory=dict)
    failedItemId: Optional[int] = None
    errorMessage: Optional[str] = None
    nextToken: Optional[str] = None
    startedAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None
    matchRunId: Optional[int] = None
    matchState: Optional[str] = None


class LinkSchema(BaseModel):
    id: int
    sourceId: int
    anchorText: str
    targetUrl: str
    targetId: int
    score: float
    status: str
    createdAt: datetime


class LinkListResponseSchema(BaseModel):
    items: List[LinkSchema]
    total: int


class LinkStatusChangeSchema(BaseModel):
    id: int
    status: str
    changed: bool


class ResetResponseSchema(BaseModel):
    linksDeleted: int
    blacklistDeleted: int
    embeddingsDeleted: int
    message: str


class CustomTargetSchema(BaseModel):
    id: int
    url: str
    title: str
    keywords: str
    status: str
    hasEmbedding: bool
    createdAt: datetime


class CustomTargetListSchema(BaseModel):
    items: List[CustomTargetSchema]
    total: int
    max: int


class CustomTargetCreateSchema(BaseModel):
    url: str
    title: str
    keywords: str = ""


class CustomTargetUpdateSchema(BaseModel):
    url: Optional[str] = None
    title: Optional[str] = None
    keywords: Optional[str] = None
    status: Optional[str] = None


class ThresholdSchema(BaseModel):
    threshold: float
