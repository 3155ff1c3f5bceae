"""
Tests for shieldsync_core.logging_config: formatter output and root setup.
"""

from __future__ import annotations

import json
import sys
import logging

import pytest

from shieldsync_core.config import LoggingConfig
from shieldsync_core.logging_config import (
    _HumanFormatter,
    _JSONFormatter,
    setup_logging,
    setup_logging_from_config,
)


def _record(msg="hello", level=logging.INFO, **extra):
    rec = logging.LogRecord("shieldsync_cache", level, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_fields(self):
        out = json.loads(_JSONFormatter().format(_record(wallet_id="w1")))
        assert out["level"] == "INFO"
        assert out["logger"] == "shieldsync_cache"
        assert out["msg"] == "hello"
        assert out["wallet_id"] == "w1"

    def test_json_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            rec = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        out = json.loads(_JSONFormatter().format(rec))
        assert "RuntimeError: boom" in out["exception"]

    def test_human_without_colour(self):
        line = _HumanFormatter(colour=False).format(_record(level=logging.WARNING))
        assert "[WARNING]" in line
        assert "shieldsync_cache: hello" in line
        assert "\033[" not in line


class TestSetup:
    def test_json_file_handler(self, tmp_path, restore_root):
        log_file = tmp_path / "logs" / "client.log"
        setup_logging(level="debug", fmt="json", log_file=str(log_file))
        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 2
        logging.getLogger("shieldsync_orchestrator").info("engine started")
        for h in restore_root.handlers:
            h.flush()
        line = log_file.read_text().strip().splitlines()[-1]
        assert json.loads(line)["msg"] == "engine started"
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_from_config(self, restore_root):
        setup_logging_from_config(LoggingConfig(level="ERROR"))
        assert restore_root.level == logging.ERROR
        assert isinstance(restore_root.handlers[0].formatter, _HumanFormatter)
