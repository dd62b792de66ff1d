# pkglet/modules/logging.py
# -*- coding: utf-8 -*-
"""
pkglet logging

Features:
 - Integration with modules.config (re-applied on reload)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration and metrics
"""

from __future__ import annotations

import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pkglet.modules import config

_logger = logging.getLogger("pkglet.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            return f"{self.COLORS.get(record.levelno, '')}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "pkglet_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    """Applies module_levels and guarantees every record carries `pkglet_module`."""

    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "pkglet_module", None)
        if mod is None:
            mod = record.name.split(".", 1)[-1]
            record.pkglet_module = mod
        if mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

# ----------------------
# PkgletLogger (singleton)
# ----------------------
class PkgletLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("pkglet")
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}

        self._apply_config(config.get("logging", {}) or {})
        config.register_watch_callback(lambda new_cfg: self._apply_config(new_cfg.get("logging", {}) or {}))
        self._root.addFilter(self._count_levels_filter)
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration (apply/reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            # logger-level filters only see records logged on this logger, so handlers carry it too
            self._root.addFilter(self._module_filter)

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(pkglet_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            console_cfg = cfg.get("console", {"enabled": True}) or {}
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO))
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
                self._add_handler(ch)

            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = _parse_size(cfg.get("max_size", "10M"))
                    fh = logging.handlers.RotatingFileHandler(
                        str(file_path),
                        maxBytes=max_bytes or 10 * 1024 * 1024,
                        backupCount=int(cfg.get("backups", 5)),
                        encoding="utf-8",
                    )
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                    self._add_handler(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled") and jsonl_cfg.get("path"):
                try:
                    path = Path(jsonl_cfg["path"]).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.setFormatter(JSONLineFormatter())
                    self._add_handler(jh)
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")

            self._root.setLevel(logging.DEBUG if self._handlers else logging.WARNING)

    def _add_handler(self, handler: logging.Handler):
        handler.addFilter(self._module_filter)
        self._root.addHandler(handler)
        self._handlers.append(handler)

    def reload_config(self):
        """Re-apply the logging section of the current configuration."""
        self._apply_config(config.get("logging", {}) or {})

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'pkglet_module' into records."""
        return logging.LoggerAdapter(logging.getLogger("pkglet"), {"pkglet_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Helper parse size
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[PkgletLogger] = None


def _manager() -> PkgletLogger:
    global _GLOBAL_LOGGER
    if _GLOBAL_LOGGER is None:
        _GLOBAL_LOGGER = PkgletLogger()
    return _GLOBAL_LOGGER


def get_logger(module: str) -> logging.LoggerAdapter:
    _manager()
    return logging.LoggerAdapter(logging.getLogger("pkglet"), {"pkglet_module": module})


def reload_config():
    return _manager().reload_config()


def get_metrics() -> Dict[str, int]:
    return _manager().get_metrics()
