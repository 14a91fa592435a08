from __future__ import annotations

import logging
import sys
import time
import traceback
import contextvars
from contextlib import contextmanager
from typing import Any, Optional, Dict

# Correlation id of the verification attempt currently running in this context
_CORRELATION_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("verification_correlation_id", default=None)

_CONFIGURED = False

DEFAULT_PREFIX = "verification_bot"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s [corr=%(correlation_id)s] %(message)s"


class ContextFilter(logging.Filter):
    """Attach correlation id to LogRecord as `correlation_id` for formatters."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.correlation_id = _CORRELATION_ID.get() or "-"
        return True


class VerificationFormatter(logging.Formatter):
    """Logging formatter that tolerates missing correlation_id values."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _CORRELATION_ID.get() or "-"
        return super().format(record)


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: Optional[str] = None,
    force: bool = False,
    fmt: Optional[str] = None,
) -> None:
    """
    Configure root logging for the bot.

    - level: logging level or level name ("DEBUG", "INFO", ...).
    - log_file: optional file path to also write logs to.
    - force: if True, reconfigure even if already configured.
    - fmt: optional printf-style format. Default includes timestamp, level, name, corr-id.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = fmt or DEFAULT_FORMAT

    handler_stream = logging.StreamHandler(stream=sys.stdout)
    handler_stream.setFormatter(VerificationFormatter(fmt, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)

    root.setLevel(level)
    root.addHandler(handler_stream)

    if log_file:
        try:
            fh = logging.FileHandler(log_file, encoding="utf-8")
        except OSError:
            root.exception("Failed to create log file handler, continuing without file logging")
        else:
            fh.setFormatter(VerificationFormatter(fmt))
            root.addHandler(fh)

    root.addFilter(ContextFilter())
    for handler in root.handlers:
        handler.addFilter(ContextFilter())

    _CONFIGURED = True


def set_correlation_id(cid: Optional[str]) -> contextvars.Token:
    """
    Set a correlation id for the current context.

    Call once at the start of a verification attempt; returns the token so the
    caller can reset it afterwards.
    """
    return _CORRELATION_ID.set(cid)


def reset_correlation_id(token: contextvars.Token) -> None:
    _CORRELATION_ID.reset(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Returns a logger under the ``verification_bot`` prefix with ContextFilter attached.

    Usage:
        logger = get_logger("image_ingestor")
        logger.debug("Downloading %s", url)
    """
    full_name = f"{DEFAULT_PREFIX}.{name}" if name else DEFAULT_PREFIX
    logger = logging.getLogger(full_name)
    if not any(isinstance(f, ContextFilter) for f in logger.filters):
        logger.addFilter(ContextFilter())
    return logger


def log_exception(logger: logging.Logger, exc: BaseException, *, context: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Log an exception with traceback and structured context.

    Example:
        try:
            ...
        except aiosqlite.Error as e:
            log_exception(logger, e, context="audit.persist", extra={"owner": owner})
    """
    msg = f"Exception in {context or 'unknown'}: {type(exc).__name__}: {exc}"
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    if extra:
        logger.error("%s | extra=%r\n%s", msg, extra, tb)
    else:
        logger.error("%s\n%s", msg, tb)


@contextmanager
def timed(logger: logging.Logger, action: str, *, level: int = logging.INFO, extra: Optional[Dict[str, Any]] = None):
    """
    Context manager to log elapsed time around an action.

    Usage:
        with timed(logger, "vision-extraction", extra={"hash": digest[:16]}):
            await client.chat.completions.create(...)
    """
    start = time.monotonic()
    try:
        yield
    except Exception:
        elapsed = time.monotonic() - start
        msg = f"{action} failed after {elapsed:.3f}s"
        if extra:
            logger.warning("%s | extra=%r", msg, extra)
        else:
            logger.warning(msg)
        raise
    else:
        elapsed = time.monotonic() - start
        msg = f"{action} completed in {elapsed:.3f}s"
        if extra:
            logger.log(level, "%s | extra=%r", msg, extra)
        else:
            logger.log(level, msg)


__all__ = [
    "configure_logging",
    "get_logger",
    "set_correlation_id",
    "reset_correlation_id",
    "log_exception",
    "timed",
]
