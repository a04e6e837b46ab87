"""
Root-logger setup for the media core process.

Every run writes to `latest.log`; the previous run's file is kept under a
timestamped name. Console output goes to stderr so stdout stays free for the
gateway URL printed by `main.py`.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def _archive_previous_log(latest: Path):
    """Renames last run's `latest.log` after its modification time."""
    if not latest.exists():
        return
    stamp = datetime.fromtimestamp(latest.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
    try:
        latest.rename(latest.with_name(f"{stamp}.log"))
    except OSError as e:
        print(f"Could not archive {latest}: {e}", file=sys.stderr)


def setup_logging(log_level_str: str = 'INFO', console: bool = True, log_dir: Optional[Path] = None):
    """
    Replaces the root logger's handlers with a file handler and, optionally, a
    stderr handler.

    The root logger itself passes everything; `log_level_str` filters at the
    handlers, so `MediaCoreApp.update_settings` can change it at runtime.

    Args:
        log_level_str: Handler level name such as 'INFO'. Unknown names mean INFO.
        console: Also log to stderr.
        log_dir: Where log files go; defaults to the per-user log directory.
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    latest = log_dir / 'latest.log'
    _archive_previous_log(latest)

    level = getattr(logging, log_level_str.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    handlers = [logging.FileHandler(str(latest), encoding='utf-8')]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # The gateway's middleware already logs each request.
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)

    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(level)}")
