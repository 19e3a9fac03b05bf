"""Logging configuration for Trellis.

Modules log through ``logging.getLogger(__name__)``; nothing is configured
on import. Applications call :func:`configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

from .settings import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_HANDLER_MARK = "_trellis_handler"


def configure_logging(
    level: str | None = None,
    log_path: Path | None = None,
    *,
    stderr: bool = True,
) -> logging.Logger:
    """Attach a rotating file handler (and optionally stderr) to the package logger.

    Idempotent: handlers installed by a previous call are replaced.

    Args:
        level: Log level name. Defaults to settings.log_level.
        log_path: Log file. Defaults to settings.log_path.
        stderr: Also log to stderr.

    Returns:
        The configured ``trellis`` logger.
    """
    root = logging.getLogger("trellis")
    root.setLevel((level or settings.log_level).upper())

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_FORMAT)

    path = Path(log_path or settings.log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_MARK, True)
    root.addHandler(file_handler)

    if stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_MARK, True)
        root.addHandler(stream_handler)

    return root
