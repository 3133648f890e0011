import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import orjson
from rich.logging import RichHandler

from feedrelay.main.config import get_loglevel
from feedrelay.main.log_context import get_log_context

JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "false").lower() in {"1", "true", "yes", "on"}

# Attributes every LogRecord has; anything else on a record came from extra={} or the log context
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "context_prefix"}


def context_prefix(context: dict[str, Any]) -> str:
    """Short console tag such as ``[default#3]`` or ``[channel 123]``."""
    if "schedule_name" in context:
        run_number = context.get("run_number")
        tag = context["schedule_name"] if run_number is None else f"{context['schedule_name']}#{run_number}"
        if "worker_pid" in context:
            tag = f"{tag} pid={context['worker_pid']}"
        return f"[{tag}] "
    if "channel_id" in context:
        return f"[channel {context['channel_id']}] "
    return ""


class LogContextFilter(logging.Filter):
    """Copy the current log context onto each record so every handler sees it."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_log_context()
        for key, value in context.items():
            if value is not None and not hasattr(record, key):
                setattr(record, key, value)
        record.context_prefix = context_prefix(context)
        return True


class ContextJSONFormatter(logging.Formatter):
    """One JSON object per line with the log context and ``extra`` fields inlined."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting logic
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Records that skipped LogContextFilter still carry the context
        for key, value in get_log_context().items():
            if value is not None:
                log.setdefault(key, value)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or value is None:
                continue
            log.setdefault(key, value)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log["stack"] = record.stack_info

        return orjson.dumps(log, default=str).decode()


# Quiet third-party loggers unless we are debugging
for _logger in logging.root.manager.loggerDict:
    if get_loglevel() <= logging.DEBUG:
        logging.getLogger(_logger).setLevel(logging.INFO)
    else:
        logging.getLogger(_logger).setLevel(logging.CRITICAL)

# Engine chatter and arq's per-job lines drown out cycle logs
for logger_name in ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.orm", "arq.worker", "arq.jobs"):
    _noisy = logging.getLogger(logger_name)
    _noisy.setLevel(logging.WARNING)
    _noisy.propagate = False


def _console_handler(level: int) -> logging.Handler:
    if JSON_LOGS_ENABLED:
        handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(ContextJSONFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, markup=False, show_path=True)
        handler.setFormatter(logging.Formatter("%(context_prefix)s%(message)s"))
    handler.setLevel(level)
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(filename=path)
    if JSON_LOGS_ENABLED:
        handler.setFormatter(ContextJSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s : %(context_prefix)s%(message)s")
        )
    handler.setLevel(level)
    return handler


class SimpleLogger(logging.Logger):
    def __init__(self, name="main", level=logging.WARNING, console=True, files=None):
        logging.Logger.__init__(self, name, level)
        self.addFilter(LogContextFilter())

        if isinstance(files, str):
            files = [files]

        if console:
            self.addHandler(_console_handler(level))
        for path in files or []:
            self.addHandler(_file_handler(path, level))


def get_logger(module_name: str):
    return SimpleLogger(name=module_name, level=get_loglevel())
