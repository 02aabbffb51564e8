from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Protocol, runtime_checkable

import structlog
from rich.logging import RichHandler
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

from .config import LogFormat

_CONFIGURED = False

# Libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore")


@runtime_checkable
class ILogger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def exception(self, event: str, **kw: Any) -> Any: ...
    def bind(self, **kw: Any) -> "ILogger": ...


def _add_thread(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # job output interleaves across pool threads
    name = threading.current_thread().name
    if name != "MainThread":
        event_dict.setdefault("thread", name)
    return event_dict


def _processors(fmt: LogFormat) -> list[Any]:
    shared: list[Any] = [
        merge_contextvars,
        structlog.processors.add_log_level,
        _add_thread,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "console":
        return shared + [structlog.processors.KeyValueRenderer(sort_keys=True, key_order=["event"])]
    return shared + [structlog.processors.JSONRenderer(sort_keys=True)]


def _handler(fmt: LogFormat) -> logging.Handler:
    if fmt == "console":
        return RichHandler(
            rich_tracebacks=True,
            markup=False,
            show_time=False,
            show_path=False,
        )
    return logging.StreamHandler(stream=sys.stdout)


def configure_logging(*, level: str = "INFO", fmt: LogFormat = "console", force: bool = False) -> None:
    """
    Route structlog through stdlib logging. `console` renders key/value
    lines through rich; `json` writes one object per line to stdout.
    Later calls are ignored unless `force` is set.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    lvl = level.upper()
    handler = _handler(fmt)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(lvl)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(lvl)
    root.addHandler(handler)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLevelName(lvl)))

    structlog.configure(
        processors=_processors(fmt),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(lvl)),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str = "blocklist_sync") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind(**values: Any) -> None:
    """Bind run-wide context (run id, command, artifact class) for this thread of control."""
    bind_contextvars(**values)


def clear_bindings() -> None:
    clear_contextvars()
