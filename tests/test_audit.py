"""Tests for the event recorder and logging setup."""

import json
import logging
import os
from unittest.mock import MagicMock

import pytest

from mcp_switchboard.audit import AuditRecorder, NullRecorder, Recorder, safe_record
from mcp_switchboard.display.logging_config import setup_logging


class TestAuditRecorder:
    def test_writes_json_lines(self, tmp_path) -> None:
        rec = AuditRecorder(log_dir=str(tmp_path), filename="events.jsonl")
        try:
            rec.record("tool.called", {"backend": "alpha", "ok": True, "duration_ms": 1.5})
            rec.record("backend.failed", {"backend": "beta", "error": ValueError("boom")})
        finally:
            rec.close()

        lines = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["event"] == "tool.called"
        assert first["backend"] == "alpha"
        assert first["ok"] is True
        assert "ts" in first
        assert json.loads(lines[1])["error"] == "boom"

    def test_event_file_holds_only_events(self, tmp_path) -> None:
        rec = AuditRecorder(log_dir=str(tmp_path), filename="events.jsonl")
        broken = MagicMock()
        broken.record.side_effect = RuntimeError("disk full")
        try:
            safe_record(broken, "backend.added", backend="beta")
            safe_record(rec, "backend.added", backend="alpha")
        finally:
            rec.close()

        lines = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["backend"] for line in lines] == ["alpha"]

    def test_close_is_idempotent(self, tmp_path) -> None:
        rec = AuditRecorder(log_dir=str(tmp_path))
        rec.close()
        rec.close()
        assert os.path.exists(tmp_path / "switchboard-events.jsonl")

    def test_without_file(self) -> None:
        rec = AuditRecorder()
        rec.record("catalog.rebuilt", {"tools": 0})
        rec.close()

    def test_protocol(self) -> None:
        assert isinstance(AuditRecorder(), Recorder)
        assert isinstance(NullRecorder(), Recorder)


class TestSafeRecord:
    def test_forwards_fields(self) -> None:
        rec = MagicMock()
        safe_record(rec, "backend.added", backend="alpha")
        rec.record.assert_called_once_with("backend.added", {"backend": "alpha"})

    def test_swallows_recorder_failure(self, caplog) -> None:
        rec = MagicMock()
        rec.record.side_effect = RuntimeError("disk full")
        with caplog.at_level(logging.WARNING, logger="mcp_switchboard.audit.logger"):
            safe_record(rec, "backend.added", backend="alpha")
        assert "backend.added" in caplog.text


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _restore_logging(self):
        names = ("mcp_switchboard", "mcp_switchboard.bridge", "mcp_switchboard.config", "mcp", "")
        saved = {
            name: (logger.handlers[:], logger.level, logger.propagate)
            for name in names
            for logger in (logging.getLogger(name or None),)
        }
        yield
        for name, (handlers, level, propagate) in saved.items():
            logger = logging.getLogger(name or None)
            for handler in logger.handlers[:]:
                if handler not in handlers:
                    handler.close()
            logger.handlers = handlers
            logger.setLevel(level)
            logger.propagate = propagate

    def test_creates_log_file(self, tmp_path) -> None:
        path, level = setup_logging("debug", log_dir=str(tmp_path / "logs"))
        assert level == "DEBUG"
        assert os.path.dirname(path) == str(tmp_path / "logs")
        assert os.path.basename(path).startswith("switchboard_")
        assert logging.getLogger("mcp_switchboard").level == logging.DEBUG

    def test_invalid_level_falls_back(self, tmp_path) -> None:
        path, level = setup_logging("chatty", log_dir=str(tmp_path))
        assert level == "INFO"
        assert path.endswith("_INFO.log")
        assert logging.getLogger("mcp").level == logging.INFO
