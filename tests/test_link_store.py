from __future__ import annotations

from pathlib import Path

import pytest

from sl_backend import db as db_module
from sl_backend.blacklist import Blacklist
from sl_backend.db import Base, get_engine, get_session
from sl_backend.errors import DuplicateRejected, NotFound, StateError, ValidationError
from sl_backend.link_counts import ActiveCountCache
from sl_backend.links import LinkStore, ProposedLink
from sl_backend.models import ContentItem, LinkStatus, SemanticLink
from sl_backend.notifications import RecordingSink

URL_1 = "https://example.com/home-loans"
URL_2 = "https://example.com/refinancing"


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "links.db"
    monkeypatch.setenv("SEMANTICLINKER_DATABASE_URL", f"sqlite:///{db_path}")

    db_module._engine = None
    db_module._SessionLocal = None

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def _link(source_id=1, anchor="home loans", url=URL_1, score=0.9, target_id=0) -> ProposedLink:
    return ProposedLink(
        source_id=source_id,
        anchor_text=anchor,
        target_url=url,
        target_id=target_id,
        score=score,
    )


class TestPropose:
    def test_accepted_link_notifies_once(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            store = LinkStore(session, sink=sink)
            link_id = store.propose(_link(anchor="  home   loans "))
            link = store.get(link_id)
            assert link.status == LinkStatus.ACTIVE.value
            assert link.anchor_text == "home loans"

        assert sink.events == [1]

    @pytest.mark.parametrize(
        "bad",
        [
            _link(url="not a url"),
            _link(url="ftp://example.com/file"),
            _link(anchor="   "),
            _link(source_id=0),
            _link(score=1.5),
        ],
    )
    def test_invalid_input_writes_nothing(self, tmp_path, monkeypatch, bad) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            with pytest.raises(ValidationError):
                LinkStore(session, sink=sink).propose(bad)
            assert session.query(SemanticLink).count() == 0

        assert sink.events == []

    def test_per_source_anchor_must_resolve_to_one_url(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            store.propose(_link(source_id=1, anchor="home loans", url=URL_1))
            with pytest.raises(DuplicateRejected) as excinfo:
                store.propose(_link(source_id=1, anchor="home loans", url=URL_2))
            assert excinfo.value.rule == "source_anchor"

    def test_global_anchor_must_resolve_to_one_url(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            store.propose(_link(source_id=1, anchor="home loans", url=URL_1))
            with pytest.raises(DuplicateRejected) as excinfo:
                store.propose(_link(source_id=2, anchor="home loans", url=URL_2))
            assert excinfo.value.rule == "global_anchor"

            # Same anchor to the same URL from another source is fine.
            store.propose(_link(source_id=2, anchor="home loans", url=URL_1))
            assert session.query(SemanticLink).count() == 2

    def test_one_link_per_source_and_target(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            store = LinkStore(session, sink=sink)
            store.propose(_link(source_id=1, anchor="home loans", url=URL_1))
            with pytest.raises(DuplicateRejected) as excinfo:
                store.propose(_link(source_id=1, anchor="loan options", url=URL_1))
            assert excinfo.value.rule == "duplicate_edge"

        assert sink.events == [1]

    def test_inactive_links_do_not_block(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            first = store.propose(_link(source_id=1, anchor="home loans", url=URL_1))
            store.filter(first)
            store.propose(_link(source_id=2, anchor="home loans", url=URL_2))

    def test_cache_is_incremented_on_accept(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            cache = ActiveCountCache(session)
            cache.preload()
            store = LinkStore(session, cache=cache)
            store.propose(_link(source_id=1, url=URL_1))
            store.propose(_link(source_id=2, url=URL_1))
            assert cache.is_loaded
            assert cache.get(URL_1) == 2


class TestStatusTransitions:
    def test_reject_blacklists_and_notifies_once(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            store = LinkStore(session, sink=sink)
            link_id = store.propose(_link(source_id=3))
            assert store.reject(link_id) is True
            assert store.get(link_id).status == "rejected"
            assert Blacklist(session).contains(3, URL_1)

            # Same-status transition is a no-op and fires nothing.
            assert store.reject(link_id) is False

        assert sink.events == [3, 3]

    def test_restore_removes_blacklist_entry(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            store = LinkStore(session, sink=sink)
            link_id = store.propose(_link(source_id=3))
            store.reject(link_id)
            assert store.restore(link_id) is True
            assert store.get(link_id).status == "active"
            assert not Blacklist(session).contains(3, URL_1)

        assert sink.events == [3, 3, 3]

    def test_restore_rechecks_dedup(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            first = store.propose(_link(source_id=1, anchor="home loans", url=URL_1))
            store.reject(first)
            store.propose(_link(source_id=2, anchor="home loans", url=URL_2))

            with pytest.raises(DuplicateRejected):
                store.restore(first)

            assert store.get(first).status == "rejected"
            assert Blacklist(session).contains(1, URL_1)

    def test_transitions_reset_cache(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            cache = ActiveCountCache(session)
            store = LinkStore(session, cache=cache)
            link_id = store.propose(_link())
            cache.preload()
            assert cache.get(URL_1) == 1

            store.filter(link_id)
            assert not cache.is_loaded
            assert cache.get(URL_1) == 0

    def test_unknown_status_and_id(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            link_id = store.propose(_link())
            with pytest.raises(ValidationError):
                store.set_status(link_id, "archived")
            with pytest.raises(NotFound):
                store.set_status(9999, "rejected")

    def test_rejected_cannot_move_to_filtered(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            link_id = store.propose(_link())
            store.reject(link_id)
            with pytest.raises(StateError):
                store.filter(link_id)


class TestQueriesAndBulkDeletes:
    def test_list_links_hides_unpublished_items(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            session.add_all(
                [
                    ContentItem(id=1, url="https://example.com/1", title="One", status="publish"),
                    ContentItem(id=2, url="https://example.com/2", title="Two", status="draft"),
                    ContentItem(id=3, url="https://example.com/3", title="Three", status="trash"),
                    ContentItem(id=4, url="https://example.com/4", title="Four", status="publish"),
                ]
            )
            session.flush()

            store = LinkStore(session)
            visible = store.propose(_link(source_id=1, anchor="four", url="https://example.com/4", target_id=4))
            custom = store.propose(_link(source_id=1, anchor="custom", url="https://partner.example.org/"))
            store.propose(_link(source_id=2, anchor="from draft", url="https://example.com/4", target_id=4))
            store.propose(_link(source_id=1, anchor="to trash", url="https://example.com/3", target_id=3))

            ids = {link.id for link in store.list_links()}
            assert ids == {visible, custom}

            store.reject(custom)
            assert [link.id for link in store.list_links("rejected")] == [custom]
            assert [link.id for link in store.list_links(LinkStatus.ACTIVE)] == [visible]

    def test_get_by_source_orders_by_score(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)

        with get_session() as session:
            store = LinkStore(session)
            low = store.propose(_link(anchor="low", url="https://example.com/low", score=0.5))
            high = store.propose(_link(anchor="high", url="https://example.com/high", score=0.95))
            assert [link.id for link in store.get_by_source(1)] == [high, low]
            assert store.active_count_for_source(1) == 2
            assert store.get_all_active_anchors() == {
                "low": "https://example.com/low",
                "high": "https://example.com/high",
            }

    def test_bulk_deletes_notify_affected_sources(self, tmp_path, monkeypatch) -> None:
        _init_test_db(tmp_path, monkeypatch)
        sink = RecordingSink()

        with get_session() as session:
            cache = ActiveCountCache(session)
            store = LinkStore(session, sink=sink, cache=cache)
            store.propose(_link(source_id=1, anchor="a", url="https://example.com/t", target_id=7))
            store.propose(_link(source_id=2, anchor="a", url="https://example.com/t", target_id=7))
            store.propose(_link(source_id=2, anchor="b", url="https://example.com/u", target_id=8))
            store.propose(_link(source_id=5, anchor="c", url="https://example.com/v"))
            sink.events.clear()

            assert store.delete_by_target(7) == 2
            assert sink.events == [1, 2]

            assert store.delete_by_source(2) == 1
            assert sink.events == [1, 2, 2]

            cache.preload()
            assert store.delete_all() == 1
            assert sink.events == [1, 2, 2, 5]
            assert not cache.is_loaded
            assert cache.get("https://example.com/v") == 0
