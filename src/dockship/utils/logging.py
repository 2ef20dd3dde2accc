"""Logging helpers."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

_LOGGING_CONFIGURED = False

_MASK = "***"
_secret_values: set[str] = set()
_secret_lock = threading.Lock()


class SecretRedactingFilter(logging.Filter):
    """Masks registered secret values in formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        with _secret_lock:
            secrets = sorted(_secret_values, key=len, reverse=True)
        if not secrets:
            return True
        message = record.getMessage()
        for value in secrets:
            message = message.replace(value, _MASK)
        record.msg = message
        record.args = None
        return True


def register_secrets(values: Iterable[str]) -> None:
    with _secret_lock:
        # very short values would mask unrelated text
        _secret_values.update(v for v in values if v and len(v) >= 3)


def unregister_secrets(values: Iterable[str]) -> None:
    with _secret_lock:
        for value in values:
            _secret_values.discard(value)


def _install_filter(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        if not any(isinstance(f, SecretRedactingFilter) for f in handler.filters):
            handler.addFilter(SecretRedactingFilter())


def configure_logging(verbose: bool = False) -> None:
    global _LOGGING_CONFIGURED
    level = logging.DEBUG if verbose else logging.INFO
    if not _LOGGING_CONFIGURED:
        logging.basicConfig(
            level=level,
            format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        )
        _LOGGING_CONFIGURED = True
    root = logging.getLogger()
    root.setLevel(level)
    _install_filter(root)
    # quiet paramiko's transport chatter unless asked
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)
