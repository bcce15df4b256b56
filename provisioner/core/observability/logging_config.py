"""
Logging configuration for the ``provision`` CLI.

``setup_logging`` is called once by main.py; modules log through
``logging.getLogger(__name__)`` as usual. Two filters sit on every
handler it installs:

- ``StepFilter`` tags each record with the step being applied, taken
  from ``step_context`` (``-`` outside a step). The scheduler enters
  that context inside the worker thread of each apply and rollback.
- ``SecretFilter`` replaces every credential value registered with
  ``mask_secret`` by ``***``. Adapters log full command lines at DEBUG,
  and those can carry freshly issued secrets.

Levels: CLI flag > PROVISION_LOG_LEVEL > WARNING. An optional file
handler (PROVISION_LOG_FILE, PROVISION_LOG_FILE_LEVEL) keeps a full
trace of an unattended run while the console stays quiet.
"""

from __future__ import annotations

import contextlib
import logging
import sys
import threading
from collections.abc import Iterator
from contextvars import ContextVar

_CONSOLE_FORMATS = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s [%(step)s] %(name)s:%(lineno)d: %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(step)s] %(message)s", "%H:%M:%S"),
}
_FMT_FILE = "%(asctime)s %(levelname)-5s [%(step)s] %(name)s:%(lineno)d: %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

# Libraries that get chatty below WARNING
_NOISY_LOGGERS = ("urllib3", "asyncio")

MASK = "***"

_current_step: ContextVar[str | None] = ContextVar("provision_step", default=None)

_secrets: set[str] = set()
_secrets_lock = threading.Lock()


# ── Step tagging ────────────────────────────────────────────────


@contextlib.contextmanager
def step_context(name: str) -> Iterator[None]:
    """Tag log records emitted in this context with ``name``."""
    token = _current_step.set(name)
    try:
        yield
    finally:
        _current_step.reset(token)


def current_step() -> str | None:
    return _current_step.get()


class StepFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.step = _current_step.get() or "-"
        return True


# ── Secret masking ──────────────────────────────────────────────


def mask_secret(value: str) -> None:
    """Never let ``value`` reach a log handler verbatim."""
    # Short values would mask ordinary words
    if len(value) >= 8:
        with _secrets_lock:
            _secrets.add(value)


def clear_secrets() -> None:
    with _secrets_lock:
        _secrets.clear()


class SecretFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        with _secrets_lock:
            values = sorted(_secrets, key=len, reverse=True)
        if not values:
            return True
        message = record.getMessage()
        masked = message
        for value in values:
            masked = masked.replace(value, MASK)
        if masked != message:
            record.msg, record.args = masked, None
        return True


# ── Setup ───────────────────────────────────────────────────────


def _handler(handler: logging.Handler, level: int, fmt: str, datefmt: str | None) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handler.addFilter(StepFilter())
    handler.addFilter(SecretFilter())
    return handler


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Install the console handler and, optionally, a file handler.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file.
        log_file_level: Separate level for the log file; defaults to ``level``.
        quiet_third_party: Keep noisy third-party loggers at WARNING
            unless the console is at DEBUG.
    """
    console_level = parse_level(level)
    fmt, datefmt = _console_format(console_level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_level, fmt, datefmt))

    effective = console_level
    if log_file:
        file_level = parse_level(log_file_level) if log_file_level else console_level
        effective = min(effective, file_level)
        root.addHandler(_handler(
            logging.FileHandler(log_file, encoding="utf-8"), file_level, _FMT_FILE, _DATEFMT_FILE,
        ))
    root.setLevel(effective)

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _console_format(level: int) -> tuple[str, str | None]:
    for threshold in sorted(_CONSOLE_FORMATS):
        if level <= threshold:
            return _CONSOLE_FORMATS[threshold]
    return "%(message)s", None


def parse_level(level: str | None) -> int:
    """Convert a level name to its numeric constant (WARNING when unknown)."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
