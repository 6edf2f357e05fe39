"""Logging setup for hosts embedding the directory core.

Log files go to ``<log_dir>/ldap.log`` (``data/logs`` under the CWD by
default), rotated at midnight and kept for ``retention_days`` days.
Hosts with their own logging config can skip this module entirely: the
package only ever logs through ``logging.getLogger(__name__)``.
"""
from __future__ import annotations

import glob
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler

LOG_FILE_NAME = "ldap.log"
LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
# noisy third-party loggers, never below WARNING
_QUIET = ("ldap3",)

# handlers we added to the root logger; swapped out on reconfiguration
_installed: list[logging.Handler] = []


def _parse_level(level: str | None) -> tuple[str, int]:
    name = (level or "").strip().upper()
    if name not in _LEVELS:
        name = "INFO"
    return name, getattr(logging, name)


def _remove_installed(root: logging.Logger) -> None:
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()


def _file_handler(path: str, retention_days: int) -> logging.Handler:
    handler = TimedRotatingFileHandler(
        path, when="midnight", backupCount=retention_days, encoding="utf-8", utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    return handler


def setup_logging(level: str = "INFO", log_dir: str = "", retention_days: int = 30) -> str:
    """Configure the root logger; returns the log file path."""
    level_name, log_level = _parse_level(level)
    retention_days = min(365, max(1, int(retention_days or 30)))

    log_dir = log_dir or os.path.join(os.getcwd(), "data", "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, LOG_FILE_NAME)

    root = logging.getLogger()
    _remove_installed(root)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in (_file_handler(log_file, retention_days), logging.StreamHandler()):
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _installed.append(handler)
    root.setLevel(log_level)

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    removed = _cleanup_old_logs(log_dir, retention_days)
    logging.getLogger("ldap_membership").info(
        "logging to %s at %s, keeping %d days (%d stale files removed)",
        log_file, level_name, retention_days, removed,
    )
    return log_file


def setup_logging_from_settings(settings) -> str:
    return setup_logging(settings.log_level, settings.log_dir, settings.log_retention_days)


def _cleanup_old_logs(log_dir: str, retention_days: int) -> int:
    cutoff = time.time() - retention_days * 86400
    removed = 0
    for path in glob.glob(os.path.join(log_dir, LOG_FILE_NAME + ".*")):
        try:
            if os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        except OSError:
            # rotated away or removed concurrently
            continue
    return removed
