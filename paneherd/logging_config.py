"""paneherd logging configuration.

The daemon runs inside the tmux pane that hosts the main agent UI, so nothing
may be written to stderr while it runs. Logs go to a rotating file instead
(default: `~/.local/state/paneherd/paneherd.log`, override with
`PANEHERD_LOG_FILE`). The level comes from `PANEHERD_LOG_LEVEL`.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from paneherd.constants import DEFAULT_LOG_FILE, DEFAULT_LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3


def resolve_log_file() -> Path:
    return Path(os.getenv("PANEHERD_LOG_FILE", DEFAULT_LOG_FILE)).expanduser()


def setup_logging(level: Optional[str] = None) -> Path:
    """Configure the `paneherd` logger hierarchy.

    Args:
        level: Optional override for `PANEHERD_LOG_LEVEL`.

    Returns:
        Path of the log file being written.
    """
    level_name = (level or os.getenv("PANEHERD_LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()

    log_file = resolve_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(log_file, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("paneherd")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.propagate = False
    return log_file
