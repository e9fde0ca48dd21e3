"""
Scoring strategies: given one source item's chunks and the target set, return
scored candidates. Thresholds, caps and dedup are applied by the Matcher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence

import numpy as np

from sl_backend.config import DEFAULT_MAX_ANCHOR_WORDS
from sl_backend.embeddings import ChunkVector

logger = logging.getLogger("semanticlinker.matching.scoring")

CONTENT = "content"
CUSTOM = "custom"

_ANCHOR_STRIP = ".,;:!?\"'()[]{}<>«»“”‘’"


@dataclass(frozen=True)
class Target:
    url: str
    vector: Sequence[float]
    kind: str = CONTENT
    # Content item id for CONTENT targets, 0 for custom ones.
    target_id: int = 0
    title: str = ""


@dataclass
class SourceItem:
    item_id: int
    url: str
    chunks: List[ChunkVector]


@dataclass
class Candidate:
    target: Target
    score: float
    anchor_text: str
    chunk_index: int


class ScoringStrategy(Protocol):
    def score(self, source: SourceItem, targets: Sequence[Target]) -> List[Candidate]:
        """Return candidates for ``source``, best first."""
        ...


def leading_words(text: str, max_words: int) -> str:
    """
    Anchor text from the first paragraph of a chunk, at most max_words words.
    """
    first = (text or "").split("\n\n", 1)[0]
    words = [w.strip(_ANCHOR_STRIP) for w in first.split()]
    words = [w for w in words if w]
    return " ".join(words[:max_words])


def _unit_rows(matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    norms = np.linalg.norm(matrix, axis=1)
    valid = norms > 0
    out = np.zeros_like(matrix)
    out[valid] = matrix[valid] / norms[valid][:, None]
    return out, valid


class CosineScorer:
    """
    Best cosine similarity between any of the source's chunks and each target.
    """

    def __init__(self, max_anchor_words: int = DEFAULT_MAX_ANCHOR_WORDS) -> None:
        self.max_anchor_words = max_anchor_words

    def score(self, source: SourceItem, targets: Sequence[Target]) -> List[Candidate]:
        if not source.chunks or not targets:
            return []

        dim = len(source.chunks[0].vector)
        chunks = [c for c in source.chunks if len(c.vector) == dim]
        usable = [t for t in targets if len(t.vector) == dim]
        if len(usable) < len(targets):
            logger.debug(
                "Skipping %d target(s) with mismatched dimension for item %s",
                len(targets) - len(usable),
                source.item_id,
            )
        if not usable:
            return []

        chunk_matrix, chunk_ok = _unit_rows(np.asarray([c.vector for c in chunks], dtype=float))
        target_matrix, target_ok = _unit_rows(np.asarray([t.vector for t in usable], dtype=float))
        if not chunk_ok.any():
            return []

        # rows: chunks, columns: targets
        sims = chunk_matrix @ target_matrix.T
        sims[~chunk_ok, :] = -1.0
        best_chunk = sims.argmax(axis=0)
        best_score = sims.max(axis=0)

        candidates: List[Candidate] = []
        for col, target in enumerate(usable):
            if not target_ok[col]:
                continue
            chunk = chunks[int(best_chunk[col])]
            anchor = leading_words(chunk.chunk_text, self.max_anchor_words)
            if not anchor:
                continue
            candidates.append(
                Candidate(
                    target=target,
                    score=float(min(1.0, max(0.0, best_score[col]))),
                    anchor_text=anchor,
                    chunk_index=chunk.chunk_index,
                )
            )

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates


__all__ = [
    "CONTENT",
    "CUSTOM",
    "Candidate",
    "CosineScorer",
    "ScoringStrategy",
    "SourceItem",
    "Target",
    "leading_words",
]
