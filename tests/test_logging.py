"""Tests for logging setup."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bluepencil.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch: pytest.MonkeyPatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.captureWarnings(False)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, logging.INFO), ("", logging.INFO), ("debug", logging.DEBUG), ("WARNING", logging.WARNING), (15, 15), ("25", 25), ("chatty", logging.INFO)],
)
def test_resolve_level(value, expected: int) -> None:
    assert logging_utils.resolve_level(value) == expected


def test_setup_logging_writes_rotating_file(tmp_path: Path) -> None:
    path = logging_utils.setup_logging("debug", log_dir=tmp_path, console=False)

    assert path == tmp_path / "bluepencil.log"
    assert logging_utils.get_log_path() == path
    logging.getLogger("bluepencil.test").debug("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "hello from the test" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent_unless_forced(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(logging_utils.LOG_DIR_ENV, str(tmp_path / "env"))

    first = logging_utils.setup_logging(console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "other", console=False)
    forced = logging_utils.setup_logging(log_dir=tmp_path / "other", console=False, force=True)

    assert first == tmp_path / "env" / "bluepencil.log"
    assert second == first
    assert forced == tmp_path / "other" / "bluepencil.log"


def test_console_only_logging(tmp_path: Path) -> None:
    assert logging_utils.setup_logging(file=False, console=False) is None
    assert any(isinstance(handler, logging.StreamHandler) for handler in logging.getLogger().handlers)
