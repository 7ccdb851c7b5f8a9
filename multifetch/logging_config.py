"""
Logging setup for multifetch.

Every run writes to ``logs/latest.log``. The log left behind by the previous
run is renamed after its modification time, and only the newest archives are
kept. Warnings and errors are echoed to stderr so the CLI stays readable.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-28s - %(message)s'
KEEP_ARCHIVED_LOGS = 10


def _archive_previous_log(log_dir: Path, keep: int):
    current = log_dir / 'latest.log'
    if current.exists():
        stamp = datetime.fromtimestamp(current.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
        current.rename(log_dir / f"{stamp}.log")

    # Archive names sort chronologically.
    archives = sorted(p for p in log_dir.glob('*.log') if p.name != 'latest.log')
    for stale in archives[:-keep] if keep > 0 else archives:
        stale.unlink()


def setup_logging(level_name: str = 'INFO', console: bool = True, log_dir: Path = LOG_DIR,
                  keep: int = KEEP_ARCHIVED_LOGS):
    """
    Configures the root logger.

    Args:
        level_name: Minimum level for the log file, e.g. 'INFO'.
        console: Attach a stderr handler. It shows warnings and above, or
            everything down to `level_name` when that is DEBUG.
        log_dir: Directory holding ``latest.log`` and its archives.
        keep: Number of archived logs to retain.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    try:
        _archive_previous_log(log_dir, keep)
    except OSError as e:
        print(f"Could not rotate logs in {log_dir}: {e}", file=sys.stderr)

    level = getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_dir / 'latest.log', encoding='utf-8')
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(level if level <= logging.DEBUG else max(level, logging.WARNING))
        stream.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        root.addHandler(stream)

    logging.getLogger('aiohttp').setLevel(max(level, logging.WARNING))
    logging.info(f"Logging to {log_dir / 'latest.log'} at {logging.getLevelName(level)}")
