from __future__ import annotations

from pathlib import Path

from sl_backend import db as db_module
from sl_backend.db import Base, get_engine, get_session
from sl_backend.link_counts import ActiveCountCache, active_counts_by_target, count_active_links_to
from sl_backend.models import SemanticLink

URL_A = "https://example.com/a"
URL_B = "https://example.com/b"


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "link_counts.db"
    monkeypatch.setenv("SEMANTICLINKER_DATABASE_URL", f"sqlite:///{db_path}")

    db_module._engine = None
    db_module._SessionLocal = None

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def _seed(session) -> None:
    session.add_all(
        [
            SemanticLink(source_id=1, anchor_text="a one", target_url=URL_A, status="active"),
            SemanticLink(source_id=2, anchor_text="a two", target_url=URL_A, status="active"),
            SemanticLink(source_id=3, anchor_text="a three", target_url=URL_A, status="rejected"),
            SemanticLink(source_id=1, anchor_text="b one", target_url=URL_B, status="active"),
        ]
    )
    session.flush()


def test_preload_matches_direct_counts(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _seed(session)
        cache = ActiveCountCache(session)
        cache.preload()

        assert cache.is_loaded
        for url, count in active_counts_by_target(session).items():
            assert cache.get(url) == count == count_active_links_to(session, url)
        assert cache.get(URL_A) == 2
        assert cache.get("https://example.com/unknown") == 0


def test_increment_only_touches_loaded_cache(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _seed(session)
        cache = ActiveCountCache(session)

        # Not loaded: increment is a no-op and get() falls back to the store.
        cache.increment(URL_A)
        assert not cache.is_loaded
        assert cache.get(URL_A) == 2

        cache.preload()
        cache.increment(URL_A)
        assert cache.get(URL_A) == 3


def test_reset_falls_back_to_store(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _seed(session)
        cache = ActiveCountCache(session)
        cache.preload()
        cache.increment(URL_B)
        cache.increment(URL_B)
        assert cache.get(URL_B) == 3

        cache.reset()
        assert not cache.is_loaded
        assert cache.get(URL_B) == 1
