from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Sequence

import pytest

from sl_backend.errors import ProviderError


@pytest.fixture(autouse=True)
def _isolate_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Make tests deterministic even when run in a production-like shell.

    Deployments may export SEMANTICLINKER_* variables (env, admin token,
    thresholds, caps) that change API/CLI/matching behavior. Clear them unless
    an individual test sets them.
    """
    monkeypatch.setenv("SEMANTICLINKER_ENV", "test")
    for name in (
        "SEMANTICLINKER_SQLITE_BUSY_TIMEOUT_SECONDS",
        "SEMANTICLINKER_DB_ECHO",
        "SEMANTICLINKER_ADMIN_TOKEN",
        "SEMANTICLINKER_EMBEDDING_API_URL",
        "SEMANTICLINKER_EMBEDDING_API_KEY",
        "SEMANTICLINKER_EMBEDDING_MODEL",
        "SEMANTICLINKER_EMBEDDING_TIMEOUT_SECONDS",
        "SEMANTICLINKER_EMBEDDING_MAX_CONCURRENCY",
        "SEMANTICLINKER_BATCH_SLICE_SIZE",
        "SEMANTICLINKER_CHUNK_MAX_CHARS",
        "SEMANTICLINKER_SIMILARITY_THRESHOLD",
        "SEMANTICLINKER_CUSTOM_TARGET_THRESHOLD",
        "SEMANTICLINKER_MAX_LINKS_PER_TARGET",
        "SEMANTICLINKER_MAX_LINKS_PER_ITEM",
        "SEMANTICLINKER_MAX_ANCHOR_WORDS",
        "SEMANTICLINKER_METRICS_ENABLED",
        "SEMANTICLINKER_LOG_LEVELS",
    ):
        monkeypatch.delenv(name, raising=False)


class FakeEmbeddingProvider:
    """
    Deterministic provider: the first keyword found in the text picks the vector.
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        *,
        default: Sequence[float] = (0.0, 0.0, 1.0),
        fail_on: Iterable[str] = (),
    ) -> None:
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.fail_on = set(fail_on)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        for marker in self.fail_on:
            if marker in text:
                raise ProviderError(f"provider refused {marker!r}")
        lowered = text.lower()
        for keyword, vector in self.vectors.items():
            if keyword in lowered:
                return list(vector)
        return list(self.default)


@pytest.fixture
def fake_provider_cls():
    return FakeEmbeddingProvider
