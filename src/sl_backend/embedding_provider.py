"""
Text -> vector embedding providers.

The HTTP provider speaks the OpenAI-compatible ``/embeddings`` shape:
request ``{"model": ..., "input": ...}``, response
``{"data": [{"index": 0, "embedding": [...]}, ...]}``.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Any, List, Optional, Protocol, Sequence

import httpx

from .config import EmbeddingProviderConfig, get_embedding_provider_config
from .errors import ProviderError
from .runtime_metrics import observe_embedding_call

logger = logging.getLogger("semanticlinker.embedding_provider")


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text`` or raise ProviderError."""
        ...


def coerce_vector(raw: Any) -> List[float]:
    if not isinstance(raw, list) or not raw:
        raise ProviderError("Embedding response contained an empty or non-list vector.")
    try:
        vector = [float(v) for v in raw]
    except (TypeError, ValueError) as exc:
        raise ProviderError("Embedding vector contains non-numeric values.") from exc
    if any(math.isnan(v) or math.isinf(v) for v in vector):
        raise ProviderError("Embedding vector contains NaN or infinite values.")
    return vector


def parse_embedding_response(payload: Any, *, expected: int) -> List[List[float]]:
    """
    Extract ``expected`` vectors from a decoded response body, ordered by index.
    """
    if not isinstance(payload, dict):
        raise ProviderError("Embedding response is not a JSON object.")
    data = payload.get("data")
    if not isinstance(data, list) or len(data) != expected:
        raise ProviderError(
            f"Embedding response has {len(data) if isinstance(data, list) else 'no'} "
            f"item(s); expected {expected}."
        )

    def _index(entry: Any) -> int:
        if isinstance(entry, dict) and isinstance(entry.get("index"), int):
            return entry["index"]
        return 0

    ordered = sorted(enumerate(data), key=lambda pair: (_index(pair[1]), pair[0]))
    vectors: List[List[float]] = []
    for _, entry in ordered:
        if not isinstance(entry, dict):
            raise ProviderError("Embedding response item is not a JSON object.")
        vectors.append(coerce_vector(entry.get("embedding")))
    return vectors


class HttpEmbeddingProvider:
    """
    Embedding provider backed by a remote HTTP endpoint.

    Every call is bounded by the configured timeout; timeouts, transport
    errors, non-2xx statuses and malformed bodies all surface as
    ProviderError.
    """

    def __init__(
        self,
        config: Optional[EmbeddingProviderConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config or get_embedding_provider_config()
        self._headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            self._headers["Authorization"] = f"Bearer {self.config.api_key}"
        self._client = client or httpx.Client(timeout=httpx.Timeout(self.config.timeout_seconds))
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpEmbeddingProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _post(self, inputs: Any, expected: int) -> List[List[float]]:
        started = time.perf_counter()
        ok = False
        timed_out = False
        try:
            try:
                response = self._client.post(
                    self.config.api_url,
                    json={"model": self.config.model, "input": inputs},
                    headers=self._headers,
                )
            except httpx.TimeoutException as exc:
                timed_out = True
                raise ProviderError("Embedding request timed out.") from exc
            except httpx.RequestError as exc:
                raise ProviderError(f"Embedding request failed: {exc}") from exc
            except httpx.InvalidURL as exc:
                raise ProviderError(f"Embedding endpoint URL is invalid: {exc}") from exc

            if response.status_code < 200 or response.status_code >= 300:
                raise ProviderError(f"Embedding endpoint returned HTTP {response.status_code}.")

            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderError("Embedding response is not valid JSON.") from exc

            vectors = parse_embedding_response(payload, expected=expected)
            ok = True
            return vectors
        finally:
            duration = time.perf_counter() - started
            observe_embedding_call(duration_seconds=duration, ok=ok, timed_out=timed_out)
            if not ok:
                logger.warning("Embedding call failed after %.2fs", duration)

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ProviderError("Cannot embed empty text.")
        return self._post(text, 1)[0]

    def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ProviderError("Cannot embed empty text.")
        return self._post(list(texts), len(texts))


__all__ = [
    "EmbeddingProvider",
    "HttpEmbeddingProvider",
    "coerce_vector",
    "parse_embedding_response",
]
