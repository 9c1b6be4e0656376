# tests/test_logging_setup.py

from __future__ import annotations

import logging

import pytest

from taskmirror.logging_setup import _ConsoleNoiseFilter


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


@pytest.mark.parametrize(
    ("name", "level", "shown"),
    [
        ("taskmirror.core.engine", logging.INFO, True),
        ("taskmirror.cli.commands", logging.INFO, True),
        ("taskmirror.sync.breaker", logging.INFO, False),
        ("taskmirror.sync.reconciler", logging.WARNING, True),
        ("taskmirror.storage.memory_remote", logging.INFO, False),
        ("taskmirror.synchronous", logging.INFO, True),
        ("py.warnings", logging.WARNING, False),
        ("urllib3", logging.WARNING, False),
        ("urllib3", logging.ERROR, True),
    ],
)
def test_console_filter_quiets_background_loggers(name, level, shown) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown


def test_verbose_console_shows_sync_info() -> None:
    f = _ConsoleNoiseFilter(verbose=True)

    assert f.filter(_record("taskmirror.sync.tracking", logging.INFO))
    assert not f.filter(_record("urllib3", logging.WARNING))


def test_quiet_loggers_are_configurable() -> None:
    f = _ConsoleNoiseFilter(("taskmirror.cli",))

    assert not f.filter(_record("taskmirror.cli.main", logging.INFO))
    assert f.filter(_record("taskmirror.sync.breaker", logging.INFO))
