from __future__ import annotations

import hashlib
import re
from typing import List, Optional, Protocol

from bs4 import BeautifulSoup

from sl_backend.config import DEFAULT_CHUNK_MAX_CHARS

_BLOCK_TAGS = [
    "p",
    "div",
    "li",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "blockquote",
    "pre",
    "section",
    "article",
    "tr",
]

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class ChunkSource(Protocol):
    title: str
    summary: Optional[str]
    body: Optional[str]


def _collapse(text: str) -> str:
    return " ".join((text or "").split())


def html_to_paragraphs(html: str) -> List[str]:
    """
    Strip markup from an HTML body and return its non-empty paragraphs.
    """
    if not html or not html.strip():
        return []

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_after("\n\n")

    paragraphs = [_collapse(p) for p in _PARAGRAPH_BREAK.split(soup.get_text())]
    return [p for p in paragraphs if p]


def _split_long(paragraph: str, max_chars: int) -> List[str]:
    # Word-boundary split for a single paragraph longer than max_chars.
    parts: List[str] = []
    current = ""
    for word in paragraph.split(" "):
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars or not current:
            current = candidate
        else:
            parts.append(current)
            current = word
    if current:
        parts.append(current)
    return parts


def pack_paragraphs(paragraphs: List[str], max_chars: int) -> List[str]:
    """
    Greedily pack paragraphs into chunks of at most max_chars characters.
    """
    chunks: List[str] = []
    current = ""
    for paragraph in paragraphs:
        for piece in _split_long(paragraph, max_chars) if len(paragraph) > max_chars else [paragraph]:
            candidate = f"{current}\n\n{piece}" if current else piece
            if len(candidate) <= max_chars:
                current = candidate
            else:
                if current:
                    chunks.append(current)
                current = piece
    if current:
        chunks.append(current)
    return chunks


def title_chunk(item: ChunkSource) -> str:
    title = _collapse(item.title)
    summary = _collapse(item.summary or "")
    if summary:
        return f"{title}\n\n{summary}" if title else summary
    return title


def build_chunks(item: ChunkSource, max_chars: int = DEFAULT_CHUNK_MAX_CHARS) -> List[str]:
    """
    Chunk 0 is title + summary; the rest is the body text.
    """
    chunks = [title_chunk(item)]
    chunks.extend(pack_paragraphs(html_to_paragraphs(item.body or ""), max_chars))
    return chunks


def content_hash(item: ChunkSource) -> str:
    """
    SHA-256 over the normalized text the chunks are built from.
    """
    parts = [title_chunk(item), *html_to_paragraphs(item.body or "")]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


__all__ = ["build_chunks", "content_hash", "html_to_paragraphs", "pack_paragraphs", "title_chunk"]
