from __future__ import annotations

from pathlib import Path

from sl_backend import db as db_module
from sl_backend.blacklist import Blacklist
from sl_backend.config import MatchingConfig
from sl_backend.custom_targets import CustomTargetStore
from sl_backend.db import Base, get_engine, get_session
from sl_backend.embeddings import ChunkVector, EmbeddingTable
from sl_backend.links import LinkStore
from sl_backend.matching.matcher import Matcher
from sl_backend.matching.scoring import CONTENT, CosineScorer, SourceItem, Target, leading_words
from sl_backend.models import ContentItem, MatchRun, SemanticLink
from sl_backend.notifications import RecordingSink

A_URL = "https://example.com/mortgage-guide"
B_URL = "https://example.com/home-loans"
C_URL = "https://example.com/gardening"


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "matcher.db"
    monkeypatch.setenv("SEMANTICLINKER_DATABASE_URL", f"sqlite:///{db_path}")

    db_module._engine = None
    db_module._SessionLocal = None

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def _config(**overrides) -> MatchingConfig:
    values = dict(
        similarity_threshold=0.75,
        custom_target_threshold=0.50,
        max_links_per_target=10,
        max_links_per_item=5,
        max_anchor_words=6,
    )
    values.update(overrides)
    return MatchingConfig(**values)


def _add_item(session, item_id: int, url: str, title: str, vector, status: str = "publish") -> None:
    session.add(ContentItem(id=item_id, url=url, title=title, status=status))
    session.flush()
    EmbeddingTable(session).upsert(item_id, 0, title, vector, f"hash-{item_id}")


def _seed_mortgage_site(session) -> None:
    _add_item(session, 1, A_URL, "mortgage guide", [1.0, 0.1, 0.0])
    _add_item(session, 2, B_URL, "home loans", [0.95, 0.2, 0.0])
    _add_item(session, 3, C_URL, "gardening tips", [0.0, 0.0, 1.0])


def _active_links_from(session, source_id: int, url: str) -> list[SemanticLink]:
    return (
        session.query(SemanticLink)
        .filter(
            SemanticLink.source_id == source_id,
            SemanticLink.target_url == url,
            SemanticLink.status == "active",
        )
        .all()
    )


def test_leading_words_trims_punctuation_and_length() -> None:
    assert leading_words("Mortgage guide: the basics, explained for you today\n\nmore", 3) == (
        "Mortgage guide the"
    )
    assert leading_words("  \n\n  ", 3) == ""


def test_cosine_scorer_picks_best_chunk_for_anchor() -> None:
    source = SourceItem(
        item_id=1,
        url=A_URL,
        chunks=[
            ChunkVector(chunk_index=0, chunk_text="mortgage guide", vector=[1.0, 0.0]),
            ChunkVector(chunk_index=1, chunk_text="refinancing your house", vector=[0.0, 1.0]),
        ],
    )
    targets = [
        Target(url="https://example.com/refi", vector=[0.1, 1.0], kind=CONTENT, target_id=5),
        Target(url="https://example.com/other", vector=[1.0, 0.0, 0.0], kind=CONTENT, target_id=6),
    ]
    candidates = CosineScorer(max_anchor_words=2).score(source, targets)

    # The 3-dimensional target is ignored.
    assert len(candidates) == 1
    assert candidates[0].anchor_text == "refinancing your"
    assert candidates[0].chunk_index == 1
    assert 0.99 < candidates[0].score <= 1.0


def test_mortgage_guide_reject_and_restore_flow(tmp_path, monkeypatch) -> None:
    """
    First pass proposes "mortgage guide" -> B, rejecting it blacklists (A, B.url),
    a second pass does not re-propose it even with a different anchor phrase,
    and restoring removes the blacklist entry.
    """
    _init_test_db(tmp_path, monkeypatch)
    sink = RecordingSink()

    with get_session() as session:
        _seed_mortgage_site(session)

    with get_session() as session:
        summary = Matcher(session, config=_config(), sink=sink).run()
        assert summary.status == "completed"
        assert summary.sources_processed == 3

        links = _active_links_from(session, 1, B_URL)
        assert len(links) == 1
        assert links[0].anchor_text == "mortgage guide"
        assert links[0].target_id == 2
        link_id = links[0].id
        assert not _active_links_from(session, 1, C_URL)

    with get_session() as session:
        LinkStore(session, sink=sink).reject(link_id)
        assert Blacklist(session).contains(1, B_URL)

    with get_session() as session:
        # Give A a body chunk close to B with a different leading phrase.
        EmbeddingTable(session).upsert(1, 1, "refinancing your home loan", [0.95, 0.2, 0.0], "hash-1")

    with get_session() as session:
        summary = Matcher(session, config=_config(), sink=sink).run()
        assert summary.blacklisted >= 1
        assert not _active_links_from(session, 1, B_URL)
        assert session.query(SemanticLink).filter(SemanticLink.source_id == 1).count() == 1

    with get_session() as session:
        LinkStore(session, sink=sink).restore(link_id)
        assert not Blacklist(session).contains(1, B_URL)

    with get_session() as session:
        summary = Matcher(session, config=_config(), sink=sink).run(source_ids=[1])
        assert summary.blacklisted == 0
        assert len(_active_links_from(session, 1, B_URL)) == 1


def test_pass_is_recorded_and_notifies_per_link(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    sink = RecordingSink()

    with get_session() as session:
        _seed_mortgage_site(session)

    with get_session() as session:
        summary = Matcher(session, config=_config(), sink=sink).run()
        run = session.get(MatchRun, summary.match_run_id)
        assert run.status == "completed"
        assert run.proposed == summary.proposed == 2
        assert run.finished_at is not None

    assert sorted(sink.events) == [1, 2]


def test_custom_targets_use_their_own_threshold(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _add_item(session, 1, A_URL, "mortgage guide", [1.0, 0.0, 0.0])
        # cos = 0.6 with A: below the content threshold.
        _add_item(session, 4, "https://example.com/rates", "rate table", [0.6, 0.8, 0.0])

        store = CustomTargetStore(session)
        embedded = store.add("https://partner.example.org/calc", "Partner calculator")
        store.get(embedded).embedding = [0.6, 0.8, 0.0]
        # Never embedded: not part of the target set.
        store.add("https://partner.example.org/pending", "Pending target")

    with get_session() as session:
        Matcher(session, config=_config(custom_target_threshold=0.5)).run()

        assert not _active_links_from(session, 1, "https://example.com/rates")
        assert len(_active_links_from(session, 1, "https://partner.example.org/calc")) == 1
        link = _active_links_from(session, 1, "https://partner.example.org/calc")[0]
        assert link.target_id == 0
        assert (
            session.query(SemanticLink)
            .filter(SemanticLink.target_url == "https://partner.example.org/pending")
            .count()
            == 0
        )


def test_saved_custom_threshold_overrides_config(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _add_item(session, 1, A_URL, "mortgage guide", [1.0, 0.0, 0.0])
        store = CustomTargetStore(session)
        target_id = store.add("https://partner.example.org/calc", "Partner calculator")
        store.get(target_id).embedding = [0.6, 0.8, 0.0]
        store.save_threshold(0.8)

    with get_session() as session:
        summary = Matcher(session, config=_config(custom_target_threshold=0.5)).run()
        assert summary.proposed == 0
        assert summary.below_threshold >= 1


def test_quality_gate_skips_custom_targets(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _seed_mortgage_site(session)
        store = CustomTargetStore(session)
        target_id = store.add("https://partner.example.org/garden", "Partner garden shop")
        store.get(target_id).embedding = [0.0, 0.1, 1.0]

    seen: list[str] = []

    def reject_everything(link: SemanticLink) -> bool:
        seen.append(link.target_url)
        return False

    with get_session() as session:
        summary = Matcher(session, config=_config(), quality_gate=reject_everything).run()

        assert sorted(seen) == sorted([A_URL, B_URL])
        assert summary.filtered == 2
        active = session.query(SemanticLink).filter(SemanticLink.status == "active").all()
        assert active
        assert {link.target_url for link in active} == {"https://partner.example.org/garden"}


def test_target_and_item_caps(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _add_item(session, 1, "https://example.com/1", "alpha page", [1.0, 0.0, 0.0])
        _add_item(session, 2, "https://example.com/2", "beta page", [0.0, 1.0, 0.0])
        _add_item(session, 3, "https://example.com/3", "gamma page", [0.0, 0.0, 1.0])
        store = CustomTargetStore(session)
        popular = store.add("https://partner.example.org/popular", "Popular")
        store.get(popular).embedding = [1.0, 1.0, 1.0]

    with get_session() as session:
        summary = Matcher(
            session,
            config=_config(similarity_threshold=0.99, max_links_per_target=2),
        ).run()
        assert summary.proposed == 2
        assert summary.capped == 1
        assert (
            LinkStore(session).active_count_for_target("https://partner.example.org/popular") == 2
        )


def test_per_item_cap(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _add_item(session, 1, "https://example.com/1", "alpha page", [1.0, 0.0, 0.0])
        store = CustomTargetStore(session)
        for n, vector in enumerate(([1.0, 0.1, 0.0], [1.0, 0.0, 0.1]), start=1):
            target_id = store.add(f"https://partner.example.org/{n}", f"Partner {n}")
            store.get(target_id).embedding = vector

    with get_session() as session:
        summary = Matcher(session, config=_config(max_links_per_item=1)).run()
        assert summary.proposed == 1
        assert summary.capped == 1


def test_drafts_are_neither_sources_nor_targets(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _add_item(session, 1, A_URL, "mortgage guide", [1.0, 0.1, 0.0])
        _add_item(session, 2, B_URL, "home loans", [0.95, 0.2, 0.0], status="draft")

    with get_session() as session:
        summary = Matcher(session, config=_config()).run()
        assert summary.sources_total == 1
        assert summary.proposed == 0


def test_cancelled_pass_stops_before_next_source(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        _seed_mortgage_site(session)

    with get_session() as session:
        summary = Matcher(session, config=_config()).run(should_cancel=lambda: True)
        assert summary.status == "cancelled"
        assert summary.sources_processed == 0
        assert session.get(MatchRun, summary.match_run_id).status == "cancelled"
        assert session.query(SemanticLink).count() == 0


def test_filtered_link_releases_its_anchor_for_later_sources(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    rates_url = "https://example.com/rates"
    loans_url = "https://example.com/loans"

    with get_session() as session:
        _add_item(session, 1, "https://example.com/x", "mortgage basics", [1.0, 0.0, 0.0])
        _add_item(session, 2, "https://example.com/y", "mortgage basics", [0.0, 1.0, 0.0])
        _add_item(session, 3, rates_url, "rates explained", [1.0, 0.05, 0.0])
        _add_item(session, 4, loans_url, "loans explained", [0.0, 1.0, 0.05])

    def drop_rates(link: SemanticLink) -> bool:
        return link.target_url != rates_url

    with get_session() as session:
        summary = Matcher(session, config=_config(), quality_gate=drop_rates).run()

        assert summary.filtered == 1
        assert summary.duplicates == 0
        reused = _active_links_from(session, 2, loans_url)
        assert [link.anchor_text for link in reused] == ["mortgage basics"]
