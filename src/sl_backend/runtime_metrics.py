from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .config import get_metrics_enabled


@dataclass
class _EmbeddingMetrics:
    lock: Lock = field(default_factory=Lock)

    count: int = 0
    error_count: int = 0
    timeout_count: int = 0

    duration_seconds_sum: float = 0.0
    duration_seconds_max: float = 0.0

    # Prometheus-style cumulative histogram buckets.
    bucket_le_025: int = 0
    bucket_le_1: int = 0
    bucket_le_3: int = 0
    bucket_le_10: int = 0
    bucket_le_inf: int = 0


@dataclass
class _LinkMetrics:
    lock: Lock = field(default_factory=Lock)

    proposed: int = 0
    duplicates: int = 0
    rejected: int = 0
    restored: int = 0
    filtered: int = 0


EMBEDDING_METRICS = _EmbeddingMetrics()
LINK_METRICS = _LinkMetrics()


def observe_embedding_call(*, duration_seconds: float, ok: bool, timed_out: bool = False) -> None:
    """
    Record a single embedding provider call.

    These metrics are per-process and reset on restart.
    """
    if not get_metrics_enabled():
        return
    m = EMBEDDING_METRICS
    with m.lock:
        m.count += 1
        if not ok:
            m.error_count += 1
        if timed_out:
            m.timeout_count += 1

        m.duration_seconds_sum += float(duration_seconds)
        m.duration_seconds_max = max(m.duration_seconds_max, float(duration_seconds))

        if duration_seconds <= 0.25:
            m.bucket_le_025 += 1
        if duration_seconds <= 1.0:
            m.bucket_le_1 += 1
        if duration_seconds <= 3.0:
            m.bucket_le_3 += 1
        if duration_seconds <= 10.0:
            m.bucket_le_10 += 1
        m.bucket_le_inf += 1


def observe_link_event(event: str) -> None:
    """
    Count a link store event: proposed, duplicate, rejected, restored, filtered.
    """
    if not get_metrics_enabled():
        return
    m = LINK_METRICS
    with m.lock:
        if event == "proposed":
            m.proposed += 1
        elif event == "duplicate":
            m.duplicates += 1
        elif event == "rejected":
            m.rejected += 1
        elif event == "restored":
            m.restored += 1
        elif event == "filtered":
            m.filtered += 1


def render_runtime_metrics_prometheus() -> list[str]:
    """
    Render per-process metrics in Prometheus text exposition format.
    """
    lines: list[str] = []

    m = EMBEDDING_METRICS
    with m.lock:
        lines.append("# HELP semanticlinker_embedding_requests_total Total embedding provider calls")
        lines.append("# TYPE semanticlinker_embedding_requests_total counter")
        lines.append(f"semanticlinker_embedding_requests_total {m.count}")

        lines.append("# HELP semanticlinker_embedding_errors_total Embedding provider calls that failed")
        lines.append("# TYPE semanticlinker_embedding_errors_total counter")
        lines.append(f"semanticlinker_embedding_errors_total {m.error_count}")
        lines.append(f'semanticlinker_embedding_errors_total{{reason="timeout"}} {m.timeout_count}')

        lines.append("# HELP semanticlinker_embedding_duration_seconds Embedding call latency histogram (per-process)")
        lines.append("# TYPE semanticlinker_embedding_duration_seconds histogram")
        lines.append(f'semanticlinker_embedding_duration_seconds_bucket{{le="0.25"}} {m.bucket_le_025}')
        lines.append(f'semanticlinker_embedding_duration_seconds_bucket{{le="1"}} {m.bucket_le_1}')
        lines.append(f'semanticlinker_embedding_duration_seconds_bucket{{le="3"}} {m.bucket_le_3}')
        lines.append(f'semanticlinker_embedding_duration_seconds_bucket{{le="10"}} {m.bucket_le_10}')
        lines.append(f'semanticlinker_embedding_duration_seconds_bucket{{le="+Inf"}} {m.bucket_le_inf}')
        lines.append(f"semanticlinker_embedding_duration_seconds_sum {m.duration_seconds_sum}")
        lines.append(f"semanticlinker_embedding_duration_seconds_count {m.count}")

        lines.append("# HELP semanticlinker_embedding_duration_seconds_max Max observed embedding latency (seconds)")
        lines.append("# TYPE semanticlinker_embedding_duration_seconds_max gauge")
        lines.append(f"semanticlinker_embedding_duration_seconds_max {m.duration_seconds_max}")

    lm = LINK_METRICS
    with lm.lock:
        lines.append("# HELP semanticlinker_link_events_total Link store events (per-process)")
        lines.append("# TYPE semanticlinker_link_events_total counter")
        lines.append(f'semanticlinker_link_events_total{{event="proposed"}} {lm.proposed}')
        lines.append(f'semanticlinker_link_events_total{{event="duplicate"}} {lm.duplicates}')
        lines.append(f'semanticlinker_link_events_total{{event="rejected"}} {lm.rejected}')
        lines.append(f'semanticlinker_link_events_total{{event="restored"}} {lm.restored}')
        lines.append(f'semanticlinker_link_events_total{{event="filtered"}} {lm.filtered}')

    return lines


__all__ = [
    "observe_embedding_call",
    "observe_link_event",
    "render_runtime_metrics_prometheus",
]
