from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_LEVEL_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}


def _level_tag(levelno: int) -> str:
    return _LEVEL_TAGS.get(levelno, f"[lvl{levelno}]")


def resolve_level(name: Optional[str]) -> int:
    """Map a level name such as 'warn' to its logging constant; unknown names give INFO."""
    return _LEVELS.get(str(name or "info").lower(), logging.INFO)


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output; syslog stamps its own time."""

    def __init__(self, tag: str = "prodoh") -> None:
        super().__init__()
        self.tag = tag

    def format(self, record):
        record.level_tag = _level_tag(record.levelno)
        return f"{self.tag}: {record.level_tag} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Formatter producing '<UTC ISO time> [level] logger: message' lines."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _level_tag(record.levelno)
        return super().format(record)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    opts = syslog_cfg if isinstance(syslog_cfg, Mapping) else {}
    address = opts.get("address", "/dev/log")
    if isinstance(address, (list, tuple)):
        address = (str(address[0]), int(address[1]))
    facility = getattr(
        logging.handlers.SysLogHandler,
        f"LOG_{str(opts.get('facility', 'USER')).upper()}",
        logging.handlers.SysLogHandler.LOG_USER,
    )
    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter(tag=str(opts.get("tag", "prodoh"))))
    return handler


def init_logging(cfg: Optional[Mapping[str, Any]]) -> None:
    """
    Initialize root logging for the proxy.

    Args:
        cfg: Mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of a log file to append to
            - syslog: True, or a mapping with address ('/dev/log' or
              [host, port]), facility (default USER) and tag (default prodoh)

    Calling it again replaces the handlers installed by the previous call.

    Example config:
        {"level": "debug", "file": "./prodoh.log", "syslog": {"tag": "dns"}}
    """
    cfg = cfg or {}
    formatter = BracketLevelFormatter(
        fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s"
    )

    root = logging.getLogger()
    root.setLevel(resolve_level(cfg.get("level")))
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            root.addHandler(_syslog_handler(syslog_cfg))
        except (OSError, ValueError) as e:
            root.warning("Failed to configure syslog: %s", e)

    logging.captureWarnings(True)
