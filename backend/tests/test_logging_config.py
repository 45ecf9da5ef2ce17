"""Tests for the unified logging configuration."""

from __future__ import annotations

import logging

import pytest

from logging_config import FILE_HANDLER_NAME, NOISY_LOGGERS, STREAM_HANDLER_NAME

_HANDLER_NAMES = (STREAM_HANDLER_NAME, FILE_HANDLER_NAME)


@pytest.fixture(autouse=True)
def _clean_root_logger():
    """Remove any handlers we add during tests so they don't leak."""
    root = logging.getLogger()
    before = list(root.handlers)
    root.handlers = [h for h in root.handlers if getattr(h, "name", None) not in _HANDLER_NAMES]
    yield
    root.handlers = before


# ── ContextFilter tests ────────────────────────────────────────────────────


def test_context_filter_stamps_role():
    from logging_config import ContextFilter

    f = ContextFilter("Server")
    record = logging.LogRecord("test", logging.INFO, "", 0, "msg", (), None)
    assert f.filter(record) is True
    assert record.role == "Server"  # type: ignore[attr-defined]
    assert record.connection_id == ""  # type: ignore[attr-defined]
    assert record.conversation_id == ""  # type: ignore[attr-defined]


def test_context_filter_reads_contextvars():
    from logging_config import ContextFilter, connection_id_var, conversation_id_var

    f = ContextFilter("Server")
    token_conn = connection_id_var.set("conn-abc")
    token_conv = conversation_id_var.set("42")
    try:
        record = logging.LogRecord("test", logging.INFO, "", 0, "msg", (), None)
        f.filter(record)
        assert record.connection_id == "conn-abc"  # type: ignore[attr-defined]
        assert record.conversation_id == "42"  # type: ignore[attr-defined]
    finally:
        conversation_id_var.reset(token_conv)
        connection_id_var.reset(token_conn)


# ── ContextFormatter tests ─────────────────────────────────────────────────


def _record(name="services.relay", level=logging.INFO, msg="hello", exc_info=None, **ctx):
    record = logging.LogRecord(name, level, "", 42, msg, (), exc_info)
    record.role = ctx.get("role", "Server")  # type: ignore[attr-defined]
    record.connection_id = ctx.get("connection_id", "")  # type: ignore[attr-defined]
    record.conversation_id = ctx.get("conversation_id", "")  # type: ignore[attr-defined]
    return record


def test_formatter_no_context():
    from logging_config import ContextFormatter

    line = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S").format(_record())
    assert "[Server][INFO]" in line
    assert "services.relay:42 - hello" in line
    assert "[Conn" not in line
    assert "[Conv" not in line


def test_formatter_with_connection_and_conversation():
    from logging_config import ContextFormatter

    line = ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S").format(
        _record(level=logging.WARNING, connection_id="3f9a1c2e99", conversation_id="7"),
    )
    assert "[Conn 3f9a1c2e]" in line  # truncated to 8 chars
    assert "[Conv 7]" in line
    assert "[WARNING]" in line


def test_formatter_includes_exception():
    import sys

    from logging_config import ContextFormatter

    try:
        raise ValueError("boom")
    except ValueError:
        exc_info = sys.exc_info()

    line = ContextFormatter().format(_record(level=logging.ERROR, msg="failed", exc_info=exc_info))
    assert "failed" in line
    assert "ValueError: boom" in line


# ── setup_logging tests ───────────────────────────────────────────────────


def test_setup_logging_adds_stream_handler_once():
    from logging_config import setup_logging

    root = logging.getLogger()
    setup_logging("Server")
    count = len(root.handlers)
    setup_logging("Server")

    assert STREAM_HANDLER_NAME in [getattr(h, "name", None) for h in root.handlers]
    assert len(root.handlers) == count


def test_setup_logging_file_handler(monkeypatch, tmp_path):
    import config
    from logging_config import setup_logging

    log_file = tmp_path / "logs" / "chat.log"
    monkeypatch.setattr(config.settings, "LOG_FILE", str(log_file))

    setup_logging("Server")
    assert FILE_HANDLER_NAME in [getattr(h, "name", None) for h in logging.getLogger().handlers]

    logging.getLogger("test.file_handler").warning("file handler test message")
    for h in logging.getLogger().handlers:
        h.flush()
    assert "file handler test message" in log_file.read_text()


def test_setup_logging_tames_noisy_loggers_and_uvicorn():
    from logging_config import setup_logging

    setup_logging("Server")

    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level >= logging.WARNING
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        assert logging.getLogger(name).propagate is True


def test_file_lines_carry_conversation_tag(monkeypatch, tmp_path):
    import config
    from logging_config import conversation_id_var, setup_logging

    log_file = tmp_path / "chat.log"
    monkeypatch.setattr(config.settings, "LOG_FILE", str(log_file))
    setup_logging("Worker")

    token = conversation_id_var.set("7")
    try:
        logging.getLogger("services.payments").warning("order credited")
    finally:
        conversation_id_var.reset(token)
    for h in logging.getLogger().handlers:
        h.flush()

    line = log_file.read_text().strip()
    assert "[Worker][Conv 7][WARNING] services.payments:" in line
    assert line.endswith("- order credited")
