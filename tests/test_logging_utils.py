import json
import logging
import uuid

from src.backend.logging_utils import (
    JsonFormatter,
    LoggingContextFilter,
    MaxLevelFilter,
    build_formatter,
    clear_log_context,
    get_logger,
    log_context,
    set_log_context,
    summarize_payload,
)
from src.ingest.state import WorkflowStatus


def _has_file_handler(logger: logging.Logger) -> bool:
    return any(isinstance(handler, logging.FileHandler) for handler in logger.handlers)


def _record(level=logging.INFO, msg="hello"):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test_path.py",
        lineno=12,
        msg=msg,
        args=(),
        exc_info=None,
        func="test_func",
    )


def test_get_logger_in_prod_has_no_file_handler(monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    logger = get_logger(f"test_logger_prod_{uuid.uuid4().hex}")
    assert not _has_file_handler(logger)
    assert logger.propagate is True


def test_get_logger_in_dev_has_file_handler(monkeypatch, tmp_path):
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    logger_name = f"test_logger_dev_{uuid.uuid4().hex}"
    logger = get_logger(logger_name)
    assert _has_file_handler(logger)
    assert (tmp_path / f"{logger_name}.log").exists()
    assert get_logger(logger_name).handlers == logger.handlers


def test_empty_log_dir_disables_file_handler(monkeypatch):
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("LOG_DIR", "")
    logger = get_logger(f"test_logger_nofile_{uuid.uuid4().hex}")
    assert not _has_file_handler(logger)


def test_log_format_includes_context_fields(monkeypatch):
    monkeypatch.delenv("LOG_JSON", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    formatter = build_formatter()
    record = _record()
    set_log_context(session_id="s1", stage="OCR", user_id="user-123")
    try:
        LoggingContextFilter().filter(record)
        formatted = formatter.format(record)
    finally:
        clear_log_context()
    assert "session_id=s1" in formatted
    assert "stage=OCR" in formatted
    assert "user_id=" in formatted
    assert "user-123" not in formatted


def test_json_format_includes_context_fields(monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    formatter = build_formatter()
    assert isinstance(formatter, JsonFormatter)
    record = _record()
    set_log_context(session_id="s1", stage="COMMIT", user_id="user-123")
    try:
        LoggingContextFilter().filter(record)
        payload = json.loads(formatter.format(record))
    finally:
        clear_log_context()
    assert payload["session_id"] == "s1"
    assert payload["stage"] == "COMMIT"
    assert len(payload["user_id"]) == 12
    assert payload["severity"] == "INFO"
    assert payload["message"] == "hello"


def test_log_context_restores_previous_values():
    clear_log_context()
    set_log_context(session_id="outer")
    try:
        with log_context(session_id="inner", stage="OCR"):
            record = _record()
            LoggingContextFilter().filter(record)
            assert (record.session_id, record.stage) == ("inner", "OCR")
        record = _record()
        LoggingContextFilter().filter(record)
        assert (record.session_id, record.stage) == ("outer", "-")
    finally:
        clear_log_context()


def test_max_level_filter_keeps_errors_off_stdout():
    level_filter = MaxLevelFilter("warning")
    assert level_filter.filter(_record(logging.WARNING))
    assert not level_filter.filter(_record(logging.ERROR))


def test_prod_env_logs_propagate(caplog, monkeypatch):
    monkeypatch.setenv("APP_ENV", "prod")
    logger = get_logger(f"test_logger_prod_emit_{uuid.uuid4().hex}")
    caplog.set_level(logging.INFO)
    logger.info("prod_log_test")
    assert any(record.message == "prod_log_test" for record in caplog.records)


def test_summarize_payload_truncates():
    summary = summarize_payload(
        {"status": WorkflowStatus.FAILED, "reasons": list(range(30)), "note": "x" * 300}
    )
    assert summary["status"] == "FAILED"
    assert summary["reasons"]["__len__"] == 30
    assert summary["note"].endswith("...(truncated)")
    assert summarize_payload(b"abc") == {"__bytes__": 3}
