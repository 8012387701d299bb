"""Runtime monitoring and logging helpers for the save manager."""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
import traceback
from typing import Callable, Optional

LOGGER_NAME = "savemanager"
DEFAULT_LOG_FILE = os.path.expanduser("~/.kazeta-saves/logs/events.log")

_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_HOOKS_INSTALLED = False


def setup_monitoring(log_file: Optional[str] = None, echo: bool = False,
                     level: int = logging.INFO) -> logging.Logger:
    """Route the package logger to ``log_file`` (and stderr when ``echo``).

    Calling it again replaces the handlers, so a CLI run and a test can each
    point the logger somewhere different.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    path = log_file or DEFAULT_LOG_FILE
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if echo:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    _install_thread_hook(logger)
    logger.info("Monitoring initialized (log file: %s)", path)
    return logger


def _install_thread_hook(logger: logging.Logger) -> None:
    global _HOOKS_INSTALLED
    if _HOOKS_INSTALLED:
        return

    def _thread_hook(args: threading.ExceptHookArgs):
        thread_name = args.thread.name if args.thread else "<unknown>"
        logger.critical(
            "Unhandled thread exception in %s",
            thread_name,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        stream = getattr(sys, "__stderr__", None) or sys.stderr
        if stream is not None:
            traceback.print_exception(args.exc_type, args.exc_value, args.exc_traceback, file=stream)

    threading.excepthook = _thread_hook
    _HOOKS_INSTALLED = True


def log_event(event: str, message: str, level: int = logging.INFO) -> None:
    """Emit a dotted-name event, e.g. ``transfer.copy.start``."""
    logging.getLogger(LOGGER_NAME).log(level, "%s | %s", event, message)


def monitor_action(action: str, *, logger: Optional[logging.Logger] = None) -> None:
    (logger or logging.getLogger(LOGGER_NAME)).info("action: %s", action)


def start_monitored_thread(
    target: Callable[[], None],
    *,
    name: str,
    logger: Optional[logging.Logger] = None,
    daemon: bool = True,
) -> threading.Thread:
    """Start a thread that logs start/end and never fails silently."""
    log = logger or logging.getLogger(LOGGER_NAME)

    def _wrapped():
        log.debug("thread start: %s", name)
        started = time.time()
        try:
            target()
            log.debug("thread end: %s (%.2fs)", name, time.time() - started)
        except Exception:
            log.exception("thread crash: %s", name)
            raise

    th = threading.Thread(target=_wrapped, name=name, daemon=daemon)
    th.start()
    return th
