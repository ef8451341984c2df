"""Soundbox Ledger: reconcile soundbox payment amounts against a shop catalog.

The package logger writes to a rotating file and to stderr. The file starts in
``.logs`` beside the project (or ``$SOUNDBOX_LOG_DIR``) and moves to the
directory named by the ``[Logging]`` section of ``config.ini`` once a runtime
context is loaded; see :func:`apply_logging_settings`.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_LOG_DIR = Path(os.environ.get("SOUNDBOX_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE_NAME = "soundbox_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _open_file_handler(log_dir: Path) -> Optional[RotatingFileHandler]:
    log_file = log_dir / LOG_FILE_NAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{log_file}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and console handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    file_handler = _open_file_handler(DEFAULT_LOG_DIR)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(console_handler)
    return logger


def apply_logging_settings(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """Apply the ``[Logging]`` options from ``config.ini`` to the package logger.

    Args:
        level (str): Standard logging level name such as ``"DEBUG"``.
        log_dir (Path | None): Directory for the rotating log file. ``None``
            keeps the current file. A directory that cannot be created also
            keeps the current file.

    Raises:
        KeyError: If ``level`` is not a known logging level name.
    """
    log.setLevel(logging.getLevelNamesMapping()[level.upper()])
    if log_dir is None:
        return

    target = (Path(log_dir) / LOG_FILE_NAME).resolve()
    current = [handler for handler in log.handlers if isinstance(handler, RotatingFileHandler)]
    if any(Path(handler.baseFilename) == target for handler in current):
        return

    replacement = _open_file_handler(Path(log_dir))
    if replacement is None:
        return
    for handler in current:
        log.removeHandler(handler)
        handler.close()
    log.addHandler(replacement)
    log.info("Logging to '%s'", target)


log = _configure_logging()
