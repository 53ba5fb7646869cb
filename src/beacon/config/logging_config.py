from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from typing import Any, Dict, List, Optional

# (config name, logging level, short tag); first name per level is canonical.
_LEVEL_TABLE = (
    ("debug", logging.DEBUG, "debug"),
    ("info", logging.INFO, "info"),
    ("warn", logging.WARNING, "warn"),
    ("warning", logging.WARNING, "warn"),
    ("error", logging.ERROR, "error"),
    ("crit", logging.CRITICAL, "crit"),
    ("critical", logging.CRITICAL, "crit"),
)
_BY_NAME = {name: level for name, level, _ in _LEVEL_TABLE}
_BY_LEVEL = {level: f"[{tag}]" for _, level, tag in reversed(_LEVEL_TABLE)}

LINE_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """Map a level name (debug, info, warn, error, crit) to a logging constant."""
    return _BY_NAME.get(str(value or "").strip().lower(), default)


def _tag_record(record: logging.LogRecord) -> str:
    record.level_tag = _BY_LEVEL.get(record.levelno, f"[lvl{record.levelno}]")
    return record.level_tag


class BracketLevelFormatter(logging.Formatter):
    """Formats `<UTC time> [level] logger: message` for stderr and log files."""

    converter = time.gmtime
    default_time_format = "%Y-%m-%dT%H:%M:%SZ"
    default_msec_format = None

    def format(self, record):
        _tag_record(record)
        return super().format(record)


class SyslogFormatter(logging.Formatter):
    """Formats `tag: [level] logger: message`; syslog stamps the time itself.

    Inputs:
      - tag: Program identifier (empty string for none).
    """

    def __init__(self, tag: str = "beacon"):
        super().__init__()
        self.tag = tag

    def format(self, record):
        line = f"{_tag_record(record)} {record.name}: {record.getMessage()}"
        return f"{self.tag}: {line}" if self.tag else line


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    """
    Brief: Build a SysLogHandler from `logging.syslog`.

    Inputs:
      - syslog_cfg: True for /dev/log with facility USER, or a mapping with
        address (socket path or [host, port]), facility (name) and tag.

    Outputs:
      - logging.Handler
    """
    opts = syslog_cfg if isinstance(syslog_cfg, dict) else {}
    syslog_cls = logging.handlers.SysLogHandler

    address = opts.get("address", "/dev/log")
    if isinstance(address, (list, tuple)):
        host, port = address
        address = (str(host), int(port))

    facility_name = "LOG_" + str(opts.get("facility", "user")).upper()
    facility = getattr(syslog_cls, facility_name, syslog_cls.LOG_USER)

    handler = syslog_cls(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter(str(opts.get("tag", "beacon"))))
    return handler


def _file_handler(file_path: str) -> logging.Handler:
    path = os.path.abspath(os.path.expanduser(file_path))
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    return logging.FileHandler(path, mode="a", encoding="utf-8")


def _build_handlers(cfg: Dict[str, Any]) -> List[logging.Handler]:
    formatter = BracketLevelFormatter(fmt=LINE_FORMAT)
    handlers: List[logging.Handler] = []
    if cfg.get("stderr", True):
        handlers.append(logging.StreamHandler(sys.stderr))
    file_path = str(cfg.get("file") or "").strip()
    if file_path:
        handlers.append(_file_handler(file_path))
    for h in handlers:
        h.setFormatter(formatter)
    return handlers


def init_logging(cfg: Optional[Dict[str, Any]], level: Optional[str] = None) -> int:
    """
    Brief: Configure the root logger from the `logging` config section.

    Inputs:
      - cfg: mapping read from the `logging` section; recognised keys are
        level (debug|info|warn|error|crit, default info), stderr (bool,
        default true), file (path appended to), and syslog (true, or a
        mapping with address, facility and tag).
      - level: level name from the --log-level flag; wins over cfg["level"].

    Outputs:
      - int: the level applied to the root logger.

    Calling it again replaces the handlers installed by the earlier call.

    Example:
      >>> init_logging({"level": "debug", "file": "/var/log/beacon.log"})
      10
    """
    cfg = cfg or {}
    effective = parse_level(level or cfg.get("level", "info"))

    root = logging.getLogger()
    root.setLevel(effective)
    for old in list(root.handlers):
        root.removeHandler(old)
    for h in _build_handlers(cfg):
        root.addHandler(h)

    if cfg.get("syslog"):
        try:
            root.addHandler(_syslog_handler(cfg["syslog"]))
        except (OSError, ValueError) as e:
            # No syslog socket (containers, macOS); other handlers stay.
            root.warning("Failed to configure syslog: %s", e)

    logging.captureWarnings(True)
    return effective
