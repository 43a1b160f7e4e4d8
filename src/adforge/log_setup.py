"""Centralised logging configuration.

Call configure() once at startup (from the API app or a script).
All modules then use logging.getLogger(__name__) normally.

Output:
  console            INFO level, compact single-line format
  <data_dir>/logs    DEBUG level, full format, rotating (5 x 5 MB)
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from adforge.config import settings

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s  %(levelname)-7s  %(name)-28s  %(filename)s:%(lineno)d: %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

_NOISY = ("urllib3", "httpx", "httpcore", "google_genai", "openai")


def configure(level: str | None = None, logs_dir: Path | None = None) -> None:
    """Set up console + rotating file handlers. Safe to call multiple times."""
    root = logging.getLogger()
    if root.handlers:
        return  # Already configured

    logs_dir = Path(logs_dir or Path(settings.data_dir) / "logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root.setLevel(logging.DEBUG)  # handlers apply their own levels

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(ch)

    fh = logging.handlers.RotatingFileHandler(
        logs_dir / "adforge.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(fh)

    for noisy in _NOISY:
        logging.getLogger(noisy).setLevel(logging.WARNING)
