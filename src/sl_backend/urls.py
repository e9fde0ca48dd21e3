from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def normalize_target_url(url: str) -> str | None:
    """
    Normalize a link target URL, or return None if it is not well-formed.

    Current semantics:
    - Require an http(s) scheme and a hostname.
    - Lowercase scheme and hostname.
    - Keep path, query and fragment as given (path defaults to "/").
    """
    raw = (url or "").strip()
    if not raw or any(ch.isspace() for ch in raw):
        return None

    try:
        parts = urlsplit(raw)
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return None
    if not parts.hostname:
        return None

    netloc = parts.netloc.lower()
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def is_valid_target_url(url: str) -> bool:
    return normalize_target_url(url) is not None


__all__ = ["normalize_target_url", "is_valid_target_url"]
