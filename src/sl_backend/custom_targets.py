"""
Operator-curated link targets and the threshold used to match them.

A custom target becomes eligible for matching only once it has an embedding.
Changing its title or keywords clears the embedding; it is regenerated by
``generate_embedding`` (or ``embed_pending``).
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from .config import (
    MAX_CUSTOM_TARGETS,
    clamp_custom_target_threshold,
    get_matching_config,
)
from .embedding_provider import EmbeddingProvider
from .errors import NotFound, ProviderError, ValidationError
from .models import CustomTarget, Setting
from .urls import normalize_target_url

logger = logging.getLogger("semanticlinker.custom_targets")

THRESHOLD_SETTING_KEY = "custom_target_threshold"
ALLOWED_STATUSES = ("active", "inactive")


def _clean_title(title: Optional[str]) -> str:
    value = " ".join((title or "").split())
    if not value:
        raise ValidationError("Custom target title must not be empty.")
    if len(value) > 255:
        raise ValidationError("Custom target title exceeds 255 characters.")
    return value


def _clean_keywords(keywords: Optional[str]) -> str:
    return " ".join((keywords or "").split())


def _clean_url(url: Optional[str]) -> str:
    value = normalize_target_url(url or "")
    if value is None:
        raise ValidationError(f"Custom target URL is not a well-formed http(s) URL: {url!r}")
    return value


class CustomTargetStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def count(self) -> int:
        return int(self.session.query(CustomTarget).count())

    def get(self, target_id: int) -> CustomTarget:
        target = self.session.get(CustomTarget, int(target_id))
        if target is None:
            raise NotFound(f"Custom target with id={target_id} does not exist.")
        return target

    def list(self, status: Optional[str] = None) -> List[CustomTarget]:
        query = self.session.query(CustomTarget)
        if status:
            query = query.filter(CustomTarget.status == status)
        return query.order_by(CustomTarget.created_at.desc(), CustomTarget.id.desc()).all()

    def _url_taken(self, url: str, *, exclude_id: Optional[int] = None) -> bool:
        query = self.session.query(CustomTarget.id).filter(CustomTarget.url == url)
        if exclude_id is not None:
            query = query.filter(CustomTarget.id != exclude_id)
        return query.first() is not None

    def add(self, url: str, title: str, keywords: str = "") -> int:
        if self.count() >= MAX_CUSTOM_TARGETS:
            raise ValidationError(f"At most {MAX_CUSTOM_TARGETS} custom targets are allowed.")

        clean_url = _clean_url(url)
        clean_title = _clean_title(title)
        if self._url_taken(clean_url):
            raise ValidationError(f"A custom target for {clean_url} already exists.")

        target = CustomTarget(
            url=clean_url,
            title=clean_title,
            keywords=_clean_keywords(keywords),
            status="active",
            embedding=None,
        )
        self.session.add(target)
        self.session.flush()
        logger.info("Added custom target %s (%s)", target.id, clean_url)
        return target.id

    def update(
        self,
        target_id: int,
        *,
        url: Optional[str] = None,
        title: Optional[str] = None,
        keywords: Optional[str] = None,
        status: Optional[str] = None,
    ) -> CustomTarget:
        """
        Apply the given field changes. Title or keyword changes clear the
        stored embedding.
        """
        target = self.get(target_id)

        if url is not None:
            clean_url = _clean_url(url)
            if self._url_taken(clean_url, exclude_id=target.id):
                raise ValidationError(f"A custom target for {clean_url} already exists.")
            target.url = clean_url
        if title is not None:
            target.title = _clean_title(title)
        if keywords is not None:
            target.keywords = _clean_keywords(keywords)
        if title is not None or keywords is not None:
            target.embedding = None
        if status is not None:
            if status not in ALLOWED_STATUSES:
                raise ValidationError(
                    f"Unknown custom target status {status!r}; expected one of {ALLOWED_STATUSES}."
                )
            target.status = status

        self.session.flush()
        return target

    def delete(self, target_id: int) -> None:
        target = self.get(target_id)
        self.session.delete(target)
        self.session.flush()
        logger.info("Deleted custom target %s", target_id)

    def get_needing_embedding(self) -> List[CustomTarget]:
        return (
            self.session.query(CustomTarget)
            .filter(CustomTarget.embedding.is_(None), CustomTarget.status == "active")
            .order_by(CustomTarget.id)
            .all()
        )

    def get_embedded(self) -> List[CustomTarget]:
        """
        Active targets that are eligible for matching.
        """
        return (
            self.session.query(CustomTarget)
            .filter(CustomTarget.embedding.isnot(None), CustomTarget.status == "active")
            .order_by(CustomTarget.id)
            .all()
        )

    def generate_embedding(self, target_id: int, provider: EmbeddingProvider) -> List[float]:
        target = self.get(target_id)
        vector = provider.embed(target.embedding_text())
        target.embedding = [float(v) for v in vector]
        self.session.flush()
        return target.embedding

    def embed_pending(self, provider: EmbeddingProvider) -> tuple[int, int]:
        """
        Generate embeddings for every target missing one.

        Returns (embedded, failed). Provider failures are logged and skipped.
        """
        embedded = 0
        failed = 0
        for target in self.get_needing_embedding():
            try:
                self.generate_embedding(target.id, provider)
                embedded += 1
            except ProviderError as exc:
                failed += 1
                logger.warning("Could not embed custom target %s: %s", target.id, exc)
        return embedded, failed

    # === Threshold ===

    def get_threshold(self, default: Optional[float] = None) -> float:
        """
        Saved threshold if present, else ``default`` (or the environment value).
        """
        row = self.session.get(Setting, THRESHOLD_SETTING_KEY)
        if row is not None:
            try:
                return clamp_custom_target_threshold(float(row.value))
            except ValueError:
                logger.warning("Ignoring malformed %s setting: %r", THRESHOLD_SETTING_KEY, row.value)
        if default is not None:
            return clamp_custom_target_threshold(default)
        return get_matching_config().custom_target_threshold

    def save_threshold(self, value: float) -> float:
        try:
            clamped = clamp_custom_target_threshold(float(value))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Threshold must be a number, got {value!r}.") from exc

        row = self.session.get(Setting, THRESHOLD_SETTING_KEY)
        if row is None:
            self.session.add(Setting(key=THRESHOLD_SETTING_KEY, value=str(clamped)))
        else:
            row.value = str(clamped)
        self.session.flush()
        return clamped


__all__ = ["CustomTargetStore", "THRESHOLD_SETTING_KEY"]
