from __future__ import annotations

"""Logging helpers for structured payloads and per-session context.

Every record carries the current session id, pipeline stage and a hashed user
id. Dev runs additionally write one log file per module under LOG_DIR.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional
import contextvars
import hashlib
import json
import logging
import logging.config
import os

_TRUNCATED_SUFFIX = "...(truncated)"
_SAMPLE_SIZE = 5


def summarize_payload(value: Any, *, max_list: int = 20, max_str: int = 200, depth: int = 3) -> Any:
    """Return a size-limited summary of a payload for logging."""
    if depth <= 0:
        return f"<{type(value).__name__}>"
    if isinstance(value, Enum):
        return value.value
    if callable(getattr(value, "to_dict", None)):
        value = value.to_dict()

    def _child(item: Any) -> Any:
        return summarize_payload(item, max_list=max_list, max_str=max_str, depth=depth - 1)

    if isinstance(value, dict):
        keys = list(value)
        summary: Dict[str, Any] = {str(key): _child(value[key]) for key in keys[:max_list]}
        if len(keys) > max_list:
            summary.update({"__truncated__": True, "__len__": len(keys)})
        return summary
    if isinstance(value, (list, tuple)):
        if len(value) <= max_list:
            return [_child(item) for item in value]
        return {"__len__": len(value), "sample": [_child(item) for item in value[:_SAMPLE_SIZE]]}
    if isinstance(value, str) and len(value) > max_str:
        return value[:max_str] + _TRUNCATED_SUFFIX
    if isinstance(value, bytes):
        return {"__bytes__": len(value)}
    if isinstance(value, Path):
        return str(value)
    return value


DEFAULT_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(filename)s:%(lineno)d:%(funcName)s "
    "session_id=%(session_id)s stage=%(stage)s user_id=%(user_id)s %(message)s"
)

_CONTEXT_FIELDS = ("session_id", "stage", "user_id")
_RESERVED_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_context: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(f"log_{name}", default="-") for name in _CONTEXT_FIELDS
}


def _hash_user_id(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def set_log_context(
    *, session_id: Optional[str] = None, stage: Optional[str] = None, user_id: Optional[str] = None
) -> None:
    """Set context variables for log enrichment; user ids are stored hashed."""
    if session_id is not None:
        _context["session_id"].set(session_id)
    if stage is not None:
        _context["stage"].set(stage)
    if user_id is not None:
        _context["user_id"].set(_hash_user_id(user_id))


def clear_log_context() -> None:
    for var in _context.values():
        var.set("-")


@contextmanager
def log_context(*, session_id: Optional[str] = None, stage: Optional[str] = None) -> Iterator[None]:
    """Scope session/stage context to a block, restoring the previous values after."""
    updates = {"session_id": session_id, "stage": stage}
    tokens = [
        (_context[name], _context[name].set(value))
        for name, value in updates.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class LoggingContextFilter(logging.Filter):
    """Copy the session/stage/user context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _context.items():
            setattr(record, name, var.get())
        return True


class MaxLevelFilter(logging.Filter):
    """Pass records at or below max_level; stdout handlers leave errors to stderr."""

    def __init__(self, max_level: int | str) -> None:
        super().__init__()
        self._max_level = (
            logging.getLevelName(max_level.upper()) if isinstance(max_level, str) else max_level
        )

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self._max_level


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with severity keys understood by Cloud Logging."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "severity": record.levelname,
            "logger": record.name,
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            payload[name] = getattr(record, name, "-")
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_RECORD_KEYS and key not in payload
        }
        if extras:
            payload.update(summarize_payload(extras))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _env_name() -> str:
    return (os.getenv("APP_ENV") or os.getenv("ENV") or "dev").lower()


def is_dev_env() -> bool:
    return _env_name() in {"dev", "development", "local", "test"}


def is_prod_env() -> bool:
    return _env_name() in {"prod", "production"}


def _json_requested() -> bool:
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return True
    return os.getenv("LOG_JSON", "").lower() in {"1", "true", "yes"}


def build_formatter() -> logging.Formatter:
    return JsonFormatter() if _json_requested() else logging.Formatter(DEFAULT_LOG_FORMAT)


def attach_context_filter(handler: logging.Handler) -> None:
    if not any(isinstance(existing, LoggingContextFilter) for existing in handler.filters):
        handler.addFilter(LoggingContextFilter())


def ensure_timestamped_handlers(logger_names: Iterable[str] | None = None) -> None:
    """Give the root and uvicorn handlers our formatter and context filter."""
    formatter = build_formatter()
    for name in logger_names or ("", "uvicorn", "uvicorn.error", "uvicorn.access"):
        for handler in logging.getLogger(name).handlers:
            handler.setFormatter(formatter)
            attach_context_filter(handler)


def _logging_config_path(root_dir: Path) -> Path:
    override = os.getenv("LOG_CONFIG")
    if override:
        path = Path(override)
        return path if path.is_absolute() else root_dir / path
    return root_dir / "config" / ("logging.prod.json" if is_prod_env() else "logging.dev.json")


def configure_logging() -> None:
    """Apply config/logging.{dev,prod}.json (or LOG_CONFIG), then env overrides."""
    config_path = _logging_config_path(Path(__file__).resolve().parents[2])
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO)
    else:
        config = json.loads(config_path.read_text(encoding="utf-8"))
        if _json_requested() and "json" in config.get("formatters", {}):
            for handler in config.get("handlers", {}).values():
                handler["formatter"] = "json"
        logging.config.dictConfig(config)
    level = os.getenv("BACKEND_LOG_LEVEL")
    if level:
        logging.getLogger().setLevel(level.upper())
    ensure_timestamped_handlers()


def _module_file_handler(module_name: str) -> logging.FileHandler:
    log_dir = Path(os.getenv("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / f"{module_name.replace('.', '_')}.log", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(build_formatter())
    attach_context_filter(handler)
    return handler


def get_logger(module_name: str) -> logging.Logger:
    """Return a propagating logger; in dev, also log to LOG_DIR/<module>.log (LOG_DIR="" disables)."""
    logger = logging.getLogger(module_name)
    logger.propagate = True
    if getattr(logger, "_file_handler_attached", False):
        return logger
    if is_dev_env() and os.getenv("LOG_DIR") != "":
        logger.addHandler(_module_file_handler(module_name))
        setattr(logger, "_file_handler_attached", True)
    return logger
