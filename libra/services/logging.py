"""
libra/services/logging.py

Centralised logging for the monitor: rotating file plus stderr.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_DIR = Path.home() / ".libra" / "logs"
FALLBACK_LOG_DIR = Path("/tmp") / "libra_logs"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _log_file(log_dir: Optional[Path]) -> Optional[Path]:
    candidates = [log_dir] if log_dir is not None else [DEFAULT_LOG_DIR, FALLBACK_LOG_DIR]
    for directory in candidates:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            return directory / "libra.log"
        except OSError as exc:
            print(f"Warning: cannot create log directory {directory}: {exc}", file=sys.stderr)
    return None


def setup_logging(level: Union[int, str] = logging.INFO, log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Configure the ``libra`` logger once.
    - Rotating file: 1 MB, 3 backups
    - Console handler on stderr, always present
    """
    logger = logging.getLogger("libra")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    log_file = _log_file(log_dir)
    if log_file is not None:
        try:
            file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as exc:
            print(f"Warning: cannot write log file {log_file}: {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.info("Logging initialised")
    return logger
