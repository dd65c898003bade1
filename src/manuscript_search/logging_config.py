"""
Logging setup shared by every manuscript_search module.

Module loggers are attached to the handlers of one trace logger:

- a stderr handler whose level comes from MANUSCRIPT_SEARCH_LOG_LEVEL
  (default INFO) and which flushes on every record;
- a DEBUG file handler writing ``index_trace.log`` into the log directory.
  Setting MANUSCRIPT_SEARCH_DEBUG_LOG to an empty string turns it off.

The log directory is MANUSCRIPT_SEARCH_LOG_DIR, else
``<MANUSCRIPT_SEARCH_PROJECTS_ROOT>/.manuscript_search``, else
``./.manuscript_search``.
"""

import logging
import os
import sys
from pathlib import Path
from typing import List

TRACE_LOGGER_NAME = "manuscript_search.debug_trace"
TRACE_LOG_FILENAME = "index_trace.log"

_FORMATTER = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DEBUG_LOG_ENABLED = os.getenv("MANUSCRIPT_SEARCH_DEBUG_LOG") != ""


def log_directory() -> Path:
    explicit = os.getenv("MANUSCRIPT_SEARCH_LOG_DIR")
    if explicit:
        return Path(explicit)
    base = os.getenv("MANUSCRIPT_SEARCH_PROJECTS_ROOT")
    return (Path(base) if base else Path.cwd()) / ".manuscript_search"


def stderr_level() -> int:
    level = logging.getLevelName(os.getenv("MANUSCRIPT_SEARCH_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


class FlushingStreamHandler(logging.StreamHandler):
    """Stream handler that flushes after each record.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a handler.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def emit(self, record):
        super().emit(record)
        self.flush()


def _build_handlers() -> List[logging.Handler]:
    console = FlushingStreamHandler(sys.stderr)
    console.setLevel(stderr_level())
    handlers: List[logging.Handler] = [console]

    if DEBUG_LOG_ENABLED:
        try:
            directory = log_directory()
            directory.mkdir(parents=True, exist_ok=True)
            trace_file = logging.FileHandler(directory / TRACE_LOG_FILENAME, encoding='utf-8')
        except OSError as e:
            # Read-only location: keep logging to stderr only
            sys.stderr.write(f"manuscript_search: trace log disabled ({e})\n")
        else:
            trace_file.setLevel(logging.DEBUG)
            handlers.append(trace_file)

    for handler in handlers:
        handler.setFormatter(_FORMATTER)
    return handlers


def get_debug_trace_logger() -> logging.Logger:
    """The root of the trace handlers; configured on first call."""
    trace = logging.getLogger(TRACE_LOGGER_NAME)
    if not trace.handlers:
        trace.setLevel(logging.DEBUG)
        trace.propagate = False
        for handler in _build_handlers():
            trace.addHandler(handler)
    return trace


def configure_logger_for_debug_trace(logger_name: str) -> logging.Logger:
    """
    Return the named logger wired to the shared trace handlers.

    Args:
        logger_name: Usually the calling module's ``__name__``
    """
    module_logger = logging.getLogger(logger_name)
    module_logger.setLevel(logging.DEBUG)
    for handler in get_debug_trace_logger().handlers:
        if handler not in module_logger.handlers:
            module_logger.addHandler(handler)
    return module_logger


_stderr_suppressed = False


def _console_handlers():
    return [h for h in get_debug_trace_logger().handlers if isinstance(h, FlushingStreamHandler)]


def suppress_stderr_logging() -> None:
    """Silence the stderr handler; the trace file keeps logging."""
    global _stderr_suppressed
    for handler in _console_handlers():
        handler.setLevel(logging.CRITICAL + 1)
    _stderr_suppressed = True


def restore_stderr_logging() -> None:
    global _stderr_suppressed
    for handler in _console_handlers():
        handler.setLevel(stderr_level())
    _stderr_suppressed = False


def is_stderr_suppressed() -> bool:
    return _stderr_suppressed
