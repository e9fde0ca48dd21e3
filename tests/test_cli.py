"""Tests for the sl-backend command line."""

from __future__ import annotations

import sys
from io import StringIO
from pathlib import Path

import pytest

from sl_backend import cli as cli_module
from sl_backend import db as db_module
from sl_backend.db import Base, get_engine, get_session
from sl_backend.models import ContentItem, CustomTarget, SemanticLink

VECTORS = {
    "mortgage": [1.0, 0.1, 0.0],
    "loan": [0.95, 0.2, 0.0],
}


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("SEMANTICLINKER_DATABASE_URL", f"sqlite:///{db_path}")

    db_module._engine = None
    db_module._SessionLocal = None

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def _run_cli(args_list: list[str]) -> str:
    parser = cli_module.build_parser()
    args = parser.parse_args(args_list)

    stdout = StringIO()
    old_stdout = sys.stdout
    try:
        sys.stdout = stdout
        args.func(args)
    finally:
        sys.stdout = old_stdout

    return stdout.getvalue()


def _seed_items() -> None:
    with get_session() as session:
        session.add_all(
            [
                ContentItem(
                    id=1,
                    url="https://example.com/mortgage-guide",
                    title="Mortgage guide",
                    body="<p>Everything about mortgage rates.</p>",
                    status="publish",
                ),
                ContentItem(
                    id=2,
                    url="https://example.com/home-loans",
                    title="Home loans",
                    body="<p>Compare loan offers.</p>",
                    status="publish",
                ),
            ]
        )


def test_check_db(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    out = _run_cli(["check-db"])
    assert "Database connection OK." in out
    assert "cli.db" in out


def test_index_status_when_idle(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    out = _run_cli(["index-status"])
    assert "No indexing run yet (idle)." in out


def test_index_run_embeds_and_matches(tmp_path, monkeypatch, fake_provider_cls) -> None:
    _init_test_db(tmp_path, monkeypatch)
    monkeypatch.setenv("SEMANTICLINKER_BATCH_SLICE_SIZE", "1")
    _seed_items()
    provider = fake_provider_cls(VECTORS)
    monkeypatch.setattr(cli_module, "_make_provider", lambda: provider)

    out = _run_cli(["index-run"])
    assert "Started indexing run 1 (2 item(s))." in out
    assert "Run 1: running 1/2 next=1:1" in out
    assert "Run 1: completed 2/2" in out
    assert "Proposed:      2" in out

    status = _run_cli(["index-status"])
    assert "State:      completed" in status
    assert "Embedded:   2" in status

    listing = _run_cli(["list-links", "--status", "active"])
    assert "2 link(s)" in listing
    assert '"Mortgage guide" -> https://example.com/home-loans' in listing


def test_index_run_can_stop_and_resume(tmp_path, monkeypatch, fake_provider_cls) -> None:
    _init_test_db(tmp_path, monkeypatch)
    monkeypatch.setenv("SEMANTICLINKER_BATCH_SLICE_SIZE", "1")
    _seed_items()
    provider = fake_provider_cls(VECTORS)
    monkeypatch.setattr(cli_module, "_make_provider", lambda: provider)

    out = _run_cli(["index-run", "--max-slices", "1"])
    assert "resume with token 1:1" in out

    out = _run_cli(["index-advance", "--token", "1:1"])
    assert "Run 1: completed 2/2" in out


def test_reject_and_restore_link(tmp_path, monkeypatch, fake_provider_cls) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _seed_items()
    monkeypatch.setattr(cli_module, "_make_provider", lambda: fake_provider_cls(VECTORS))
    _run_cli(["index-run"])

    with get_session() as session:
        link_id = (
            session.query(SemanticLink.id).filter(SemanticLink.source_id == 1).scalar()
        )

    assert f"Link {link_id} rejected." in _run_cli(["reject-link", str(link_id)])
    assert f"Link {link_id} already rejected." in _run_cli(["reject-link", str(link_id)])
    assert "1 link(s)" in _run_cli(["list-links", "--status", "rejected"])
    assert f"Link {link_id} restored." in _run_cli(["restore-link", str(link_id)])

    with pytest.raises(SystemExit):
        _run_cli(["reject-link", "999"])


def test_delete_all_requires_confirmation(tmp_path, monkeypatch, fake_provider_cls) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _seed_items()
    monkeypatch.setattr(cli_module, "_make_provider", lambda: fake_provider_cls(VECTORS))
    _run_cli(["index-run"])

    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["delete-all"])
    assert excinfo.value.code == 1

    with get_session() as session:
        assert session.query(SemanticLink).count() == 2

    out = _run_cli(["delete-all", "--yes"])
    assert "Links deleted:            2" in out
    assert "Embeddings deleted:       4" in out


def test_custom_targets_commands(tmp_path, monkeypatch, fake_provider_cls) -> None:
    _init_test_db(tmp_path, monkeypatch)
    monkeypatch.setattr(cli_module, "_make_provider", lambda: fake_provider_cls(VECTORS))

    out = _run_cli(
        [
            "custom-targets",
            "add",
            "--url",
            "https://partner.example.org/loans",
            "--title",
            "Partner loans",
            "--keywords",
            "mortgage",
        ]
    )
    assert "Added custom target 1." in out

    with pytest.raises(SystemExit):
        _run_cli(
            ["custom-targets", "add", "--url", "ftp://partner.example.org", "--title", "Bad"]
        )

    listing = _run_cli(["custom-targets", "list"])
    assert "1/100 custom target(s)" in listing
    assert "embedded=no" in listing

    assert "Embedded 1 custom target(s); 0 failed." in _run_cli(["custom-targets", "embed"])
    assert "embedded=yes" in _run_cli(["custom-targets", "list"])

    out = _run_cli(["custom-targets", "update", "1", "--status", "inactive"])
    assert "Updated custom target 1." in out
    with get_session() as session:
        target = session.get(CustomTarget, 1)
        assert target.status == "inactive"
        assert target.embedding is not None

    assert "Custom target threshold: 0.50" in _run_cli(["custom-targets", "threshold"])
    assert "Custom target threshold saved: 0.90" in _run_cli(
        ["custom-targets", "threshold", "--set", "0.97"]
    )
    assert "Custom target threshold: 0.90" in _run_cli(["custom-targets", "threshold"])

    assert "Deleted custom target 1." in _run_cli(["custom-targets", "delete", "1"])
    assert "0/100 custom target(s)" in _run_cli(["custom-targets", "list"])
