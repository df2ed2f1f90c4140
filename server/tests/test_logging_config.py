"""Tests for the unified logging configuration."""

from __future__ import annotations

import logging

import pytest

_HANDLER_NAMES = ("_chat_stream", "_chat_file")


@pytest.fixture(autouse=True)
def _clean_root_logger():
    """Remove any handlers we add during tests so they don't leak."""
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    root.handlers = [h for h in root.handlers if getattr(h, "name", None) not in _HANDLER_NAMES]
    yield
    # Restore original handlers
    root.handlers = before
    root.setLevel(level)


def _record(name="test", level=logging.INFO, lineno=1, msg="msg", exc_info=None, **context):
    record = logging.LogRecord(name, level, "", lineno, msg, (), exc_info)
    record.role = context.get("role", "Server")  # type: ignore[attr-defined]
    record.request_id = context.get("request_id", "")  # type: ignore[attr-defined]
    record.user_id = context.get("user_id", "")  # type: ignore[attr-defined]
    return record


# ── ContextFilter tests ────────────────────────────────────────────────────


def test_context_filter_stamps_role():
    from logging_config import ContextFilter

    f = ContextFilter("Server")
    record = logging.LogRecord("test", logging.INFO, "", 0, "msg", (), None)
    f.filter(record)
    assert record.role == "Server"  # type: ignore[attr-defined]
    assert record.request_id == ""  # type: ignore[attr-defined]
    assert record.user_id == ""  # type: ignore[attr-defined]


def test_context_filter_reads_contextvars():
    from logging_config import ContextFilter, request_id_var, user_id_var

    f = ContextFilter("Server")
    token_req = request_id_var.set("req-abc")
    token_user = user_id_var.set("42")
    try:
        record = logging.LogRecord("test", logging.INFO, "", 0, "msg", (), None)
        assert f.filter(record) is True
        assert record.request_id == "req-abc"  # type: ignore[attr-defined]
        assert record.user_id == "42"  # type: ignore[attr-defined]
    finally:
        user_id_var.reset(token_user)
        request_id_var.reset(token_req)


# ── ContextFormatter tests ─────────────────────────────────────────────────


def test_formatter_no_context():
    from logging_config import ContextFormatter

    fmt = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    line = fmt.format(_record("services.ledger", lineno=42, msg="hello"))
    assert "[Server]" in line
    assert "[INFO]" in line
    assert "services.ledger:42" in line
    assert "hello" in line
    assert "[Req" not in line
    assert "[User" not in line


def test_formatter_with_request_and_user():
    from logging_config import ContextFormatter

    fmt = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    record = _record(
        "services.chat", logging.WARNING, 55, "Allowance overrun",
        request_id="1f3a9c2e77aa", user_id="7",
    )
    line = fmt.format(record)
    assert "[Req 1f3a9c2e]" in line  # truncated to 8 chars
    assert "[User 7]" in line
    assert "[WARNING]" in line


def test_formatter_includes_exception():
    from logging_config import ContextFormatter

    fmt = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    try:
        raise ValueError("boom")
    except ValueError:
        import sys
        exc_info = sys.exc_info()

    line = fmt.format(_record(level=logging.ERROR, msg="failed", exc_info=exc_info))
    assert "failed" in line
    assert "ValueError: boom" in line


# ── setup_logging tests ───────────────────────────────────────────────────


def test_setup_logging_adds_stream_handler(monkeypatch):
    from logging_config import setup_logging

    monkeypatch.setattr("config.settings.LOG_FILE", "")
    setup_logging("TestServer")

    handler_names = [getattr(h, "name", None) for h in logging.getLogger().handlers]
    assert "_chat_stream" in handler_names
    assert "_chat_file" not in handler_names


def test_setup_logging_idempotent(monkeypatch):
    from logging_config import setup_logging

    monkeypatch.setattr("config.settings.LOG_FILE", "")
    root = logging.getLogger()
    setup_logging("TestServer")
    count_before = len(root.handlers)
    setup_logging("TestServer")
    assert len(root.handlers) == count_before


def test_setup_logging_file_handler(monkeypatch, tmp_path):
    from logging_config import request_id_var, setup_logging

    log_file = tmp_path / "logs" / "chat.log"
    monkeypatch.setattr("config.settings.LOG_FILE", str(log_file))
    setup_logging("TestFile")

    handler_names = [getattr(h, "name", None) for h in logging.getLogger().handlers]
    assert "_chat_file" in handler_names

    token = request_id_var.set("deadbeef00")
    try:
        logging.getLogger("test.file_handler").warning("file handler test message")
    finally:
        request_id_var.reset(token)

    for handler in logging.getLogger().handlers:
        handler.flush()
    content = log_file.read_text()
    assert "file handler test message" in content
    assert "[Req deadbeef]" in content


def test_setup_logging_tames_noisy_loggers(monkeypatch):
    from logging_config import setup_logging

    monkeypatch.setattr("config.settings.LOG_FILE", "")
    setup_logging("TestTame")
    for name in ("httpx", "httpcore", "openai"):
        assert logging.getLogger(name).level == logging.WARNING
    assert logging.getLogger("uvicorn").propagate is True
