from __future__ import annotations

import logging

from sl_backend.logging_config import configure_logging


def test_configure_logging_sets_debug_level(monkeypatch) -> None:
    monkeypatch.setenv("SEMANTICLINKER_LOG_LEVEL", "DEBUG")
    configure_logging()
    root = logging.getLogger()
    assert root.level == logging.DEBUG


def test_configure_logging_defaults_to_info(monkeypatch) -> None:
    monkeypatch.delenv("SEMANTICLINKER_LOG_LEVEL", raising=False)
    configure_logging()
    root = logging.getLogger()
    assert root.level in (logging.INFO, logging.NOTSET)


def test_configure_logging_ignores_unknown_level(monkeypatch) -> None:
    monkeypatch.setenv("SEMANTICLINKER_LOG_LEVEL", "CHATTY")
    configure_logging()
    assert logging.getLogger().level == logging.INFO


def test_configure_logging_applies_per_logger_overrides(monkeypatch) -> None:
    monkeypatch.setenv(
        "SEMANTICLINKER_LOG_LEVELS", "semanticlinker.matching=DEBUG, httpx=ERROR, broken, x=LOUD"
    )
    configure_logging(logging.INFO)

    assert logging.getLogger("semanticlinker.matching").level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("x").level == logging.NOTSET
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
