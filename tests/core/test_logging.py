"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog

from tasksync.core.logging import (
    LOG_FILE_BACKUPS,
    LOG_FILE_MAX_BYTES,
    QUIET_LOGGERS,
    add_trace_context,
    configure_logging,
    log_file_path,
)

pytestmark = pytest.mark.unit


def _installed_handlers() -> list[logging.Handler]:
    return [h for h in logging.getLogger().handlers if getattr(h, "_tasksync_handler", False)]


@pytest.fixture(autouse=True)
def _reset_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in _installed_handlers():
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
    structlog.contextvars.clear_contextvars()


class TestTraceContext:
    def test_no_ids_outside_a_span(self):
        assert add_trace_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_ids_of_active_span(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        with provider.get_tracer("test").start_as_current_span("sync") as span:
            result = add_trace_context(None, "info", {"event": "x"})
            ctx = span.get_span_context()
        provider.shutdown()

        assert result["trace_id"] == format(ctx.trace_id, "032x")
        assert result["span_id"] == format(ctx.span_id, "016x")


class TestConfigureLogging:
    def test_text_format_renders_for_console(self):
        configure_logging(fmt="text")
        (handler,) = _installed_handlers()
        assert isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(handler.formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_renders_json(self):
        configure_logging(fmt="json")
        (handler,) = _installed_handlers()
        assert isinstance(handler.formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_replaces_only_own_handlers(self):
        foreign = logging.NullHandler()
        logging.getLogger().addHandler(foreign)
        try:
            configure_logging()
            configure_logging(fmt="json")
            assert len(_installed_handlers()) == 1
            assert foreign in logging.getLogger().handlers
        finally:
            logging.getLogger().removeHandler(foreign)

    def test_command_is_bound(self):
        configure_logging(command="serve")
        assert structlog.contextvars.get_contextvars() == {"command": "serve"}

    def test_rebinding_drops_previous_context(self):
        structlog.contextvars.bind_contextvars(cycle_id="stale")
        configure_logging(command="sync")
        assert structlog.contextvars.get_contextvars() == {"command": "sync"}

    def test_transport_loggers_quieted(self):
        configure_logging(level="DEBUG")
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_level_is_case_insensitive(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="chatty")
        assert logging.getLogger().level == logging.INFO


class TestLogFile:
    def test_path_named_after_command(self, tmp_path: Path):
        assert log_file_path(tmp_path, "serve") == tmp_path / "serve.jsonl"
        assert log_file_path(tmp_path, None) == tmp_path / "tasksync.jsonl"

    def test_rotating_handler_created_under_missing_root(self, tmp_path: Path):
        root = tmp_path / "var" / "log"
        configure_logging(log_root=root, command="serve")

        file_handlers = [h for h in _installed_handlers() if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(root / "serve.jsonl")
        assert file_handlers[0].maxBytes == LOG_FILE_MAX_BYTES
        assert file_handlers[0].backupCount == LOG_FILE_BACKUPS

    def test_file_lines_are_json_with_context(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path, command="sync")
        with structlog.contextvars.bound_contextvars(cycle_id="abc12345"):
            logging.getLogger("tasksync.sync.orchestrator").info("Placed %d tasks", 3)
        for handler in _installed_handlers():
            handler.flush()

        line = (tmp_path / "sync.jsonl").read_text(encoding="utf-8").strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "Placed 3 tasks"
        assert data["command"] == "sync"
        assert data["cycle_id"] == "abc12345"
        assert data["logger"] == "tasksync.sync.orchestrator"
        assert data["level"] == "info"
        assert "trace_id" not in data
