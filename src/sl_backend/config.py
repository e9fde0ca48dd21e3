from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# === Core paths ===

# Path to this repo root (computed from this file)
REPO_ROOT = Path(__file__).resolve().parents[2]  # src/sl_backend -> src -> repo root

# === Database configuration ===

# By default we keep things simple and use a SQLite database file in the
# repository root. This can be overridden via SEMANTICLINKER_DATABASE_URL.
DEFAULT_DATABASE_URL = f"sqlite:///{REPO_ROOT / 'semanticlinker.db'}"

# The admin API and a CLI run may write concurrently; wait this long for the
# SQLite file lock before failing.
DEFAULT_SQLITE_BUSY_TIMEOUT_SECONDS = 15.0

# === Batch indexing ===

# Number of content items processed by a single advance() call.
DEFAULT_BATCH_SLICE_SIZE = 10

# Soft cap for one body chunk (characters). Paragraphs are packed up to this.
DEFAULT_CHUNK_MAX_CHARS = 1200

# === Embedding provider ===

# OpenAI-compatible embeddings endpoint. Empty means "not configured".
DEFAULT_EMBEDDING_API_URL = "https://api.openai.com/v1/embeddings"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_TIMEOUT_SECONDS = 20
DEFAULT_EMBEDDING_MAX_CONCURRENCY = 4

# === Matching ===

DEFAULT_SIMILARITY_THRESHOLD = 0.75
DEFAULT_CUSTOM_TARGET_THRESHOLD = 0.50
CUSTOM_TARGET_THRESHOLD_MIN = 0.20
CUSTOM_TARGET_THRESHOLD_MAX = 0.90

# Cluster size cap: maximum active links pointing at one target URL (0 = no cap).
DEFAULT_MAX_LINKS_PER_TARGET = 10
# Maximum active links originating from one content item (0 = no cap).
DEFAULT_MAX_LINKS_PER_ITEM = 5
DEFAULT_MAX_ANCHOR_WORDS = 6

# === Custom targets ===

MAX_CUSTOM_TARGETS = 100


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "1" if default else "0").strip().lower()
    return raw not in ("0", "false", "no", "off")


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.environ.get(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(lo, min(value, hi))


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    raw = os.environ.get(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        value = default
    return max(lo, min(value, hi))


@dataclass
class DatabaseConfig:
    """
    Database connection settings.

    The URL plus the two knobs that matter for the SQLite deployments this
    backend usually runs on: how long a writer waits for the file lock, and
    SQL echo for debugging.
    """

    database_url: str = DEFAULT_DATABASE_URL
    sqlite_busy_timeout_seconds: float = DEFAULT_SQLITE_BUSY_TIMEOUT_SECONDS
    echo: bool = False


def get_database_config() -> DatabaseConfig:
    """
    Return the current database configuration, honouring environment overrides.
    """
    url = os.environ.get("SEMANTICLINKER_DATABASE_URL", DEFAULT_DATABASE_URL)
    return DatabaseConfig(
        database_url=url,
        sqlite_busy_timeout_seconds=_env_float(
            "SEMANTICLINKER_SQLITE_BUSY_TIMEOUT_SECONDS",
            DEFAULT_SQLITE_BUSY_TIMEOUT_SECONDS,
            lo=0.0,
            hi=300.0,
        ),
        echo=_env_flag("SEMANTICLINKER_DB_ECHO", False),
    )


@dataclass
class EmbeddingProviderConfig:
    """
    Settings for the remote embedding endpoint.
    """

    api_url: str = DEFAULT_EMBEDDING_API_URL
    model: str = DEFAULT_EMBEDDING_MODEL
    api_key: Optional[str] = None
    timeout_seconds: float = float(DEFAULT_EMBEDDING_TIMEOUT_SECONDS)
    max_concurrency: int = DEFAULT_EMBEDDING_MAX_CONCURRENCY


def get_embedding_provider_config() -> EmbeddingProviderConfig:
    api_url = os.environ.get("SEMANTICLINKER_EMBEDDING_API_URL", DEFAULT_EMBEDDING_API_URL).strip()
    model = os.environ.get("SEMANTICLINKER_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL).strip()
    api_key = os.environ.get("SEMANTICLINKER_EMBEDDING_API_KEY") or None
    return EmbeddingProviderConfig(
        api_url=api_url or DEFAULT_EMBEDDING_API_URL,
        model=model or DEFAULT_EMBEDDING_MODEL,
        api_key=api_key,
        timeout_seconds=_env_float(
            "SEMANTICLINKER_EMBEDDING_TIMEOUT_SECONDS",
            float(DEFAULT_EMBEDDING_TIMEOUT_SECONDS),
            lo=1.0,
            hi=120.0,
        ),
        max_concurrency=_env_int(
            "SEMANTICLINKER_EMBEDDING_MAX_CONCURRENCY",
            DEFAULT_EMBEDDING_MAX_CONCURRENCY,
            lo=1,
            hi=32,
        ),
    )


@dataclass
class IndexingConfig:
    """
    Batch indexing knobs.
    """

    slice_size: int = DEFAULT_BATCH_SLICE_SIZE
    chunk_max_chars: int = DEFAULT_CHUNK_MAX_CHARS


def get_indexing_config() -> IndexingConfig:
    return IndexingConfig(
        slice_size=_env_int(
            "SEMANTICLINKER_BATCH_SLICE_SIZE", DEFAULT_BATCH_SLICE_SIZE, lo=1, hi=500
        ),
        chunk_max_chars=_env_int(
            "SEMANTICLINKER_CHUNK_MAX_CHARS", DEFAULT_CHUNK_MAX_CHARS, lo=200, hi=20_000
        ),
    )


@dataclass
class MatchingConfig:
    """
    Thresholds and caps applied around the scoring step.
    """

    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    custom_target_threshold: float = DEFAULT_CUSTOM_TARGET_THRESHOLD
    max_links_per_target: int = DEFAULT_MAX_LINKS_PER_TARGET
    max_links_per_item: int = DEFAULT_MAX_LINKS_PER_ITEM
    max_anchor_words: int = DEFAULT_MAX_ANCHOR_WORDS


def clamp_custom_target_threshold(value: float) -> float:
    """
    Clamp a custom-target threshold into the accepted [0.20, 0.90] range.
    """
    return max(CUSTOM_TARGET_THRESHOLD_MIN, min(CUSTOM_TARGET_THRESHOLD_MAX, float(value)))


def get_matching_config() -> MatchingConfig:
    custom = _env_float(
        "SEMANTICLINKER_CUSTOM_TARGET_THRESHOLD",
        DEFAULT_CUSTOM_TARGET_THRESHOLD,
        lo=CUSTOM_TARGET_THRESHOLD_MIN,
        hi=CUSTOM_TARGET_THRESHOLD_MAX,
    )
    return MatchingConfig(
        similarity_threshold=_env_float(
            "SEMANTICLINKER_SIMILARITY_THRESHOLD",
            DEFAULT_SIMILARITY_THRESHOLD,
            lo=0.0,
            hi=1.0,
        ),
        custom_target_threshold=custom,
        max_links_per_target=_env_int(
            "SEMANTICLINKER_MAX_LINKS_PER_TARGET",
            DEFAULT_MAX_LINKS_PER_TARGET,
            lo=0,
            hi=10_000,
        ),
        max_links_per_item=_env_int(
            "SEMANTICLINKER_MAX_LINKS_PER_ITEM",
            DEFAULT_MAX_LINKS_PER_ITEM,
            lo=0,
            hi=1000,
        ),
        max_anchor_words=_env_int(
            "SEMANTICLINKER_MAX_ANCHOR_WORDS", DEFAULT_MAX_ANCHOR_WORDS, lo=1, hi=50
        ),
    )


def get_metrics_enabled() -> bool:
    """
    Return whether per-process runtime metrics are recorded.

    Controlled via SEMANTICLINKER_METRICS_ENABLED (truthy/falsey). Defaults to
    enabled.
    """
    return _env_flag("SEMANTICLINKER_METRICS_ENABLED", True)


def get_environment() -> str:
    return os.environ.get("SEMANTICLINKER_ENV", "development").strip().lower() or "development"


def get_admin_token() -> Optional[str]:
    """
    Read the expected admin token from the environment.

    If unset, admin endpoints are effectively open. This is convenient for
    local development but should be configured in production.
    """
    return os.environ.get("SEMANTICLINKER_ADMIN_TOKEN") or None
