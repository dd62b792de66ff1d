# pkglet/modules/config.py
# -*- coding: utf-8 -*-
"""
pkglet central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit path, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and coerce types
- Root vs unprivileged default paths; PKGLET_PREFIX relocates the root-mode prefix
- Validate structure and types, warn or error (fatal optional)
- Typed access via Config dataclass (get_config(), get(), helpers)
- Legacy flat files: repos.conf, package.mask, package.lock, package.opts/<pkg>
- Thread-safe load/reload and watcher notification
- Save writes only the overrides (diff against DEFAULTS)
"""

from __future__ import annotations

import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger("pkglet.config")

# ----------------------------
# Filesystem layout
# ----------------------------
def _is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid) and geteuid() == 0


def default_paths(root: Optional[bool] = None) -> Dict[str, str]:
    """Paths used when nothing is configured; depends on privilege."""
    if root is None:
        root = _is_root()
    if not root:
        home = Path(os.environ.get("HOME") or Path.home())
        local = home / ".local"
        return {
            "prefix": str(local),
            "db_dir": str(local / "var" / "lib" / "pkglet"),
            "cache_dir": str(home / ".cache" / "pkglet"),
            "config_dir": str(home / ".config" / "pkglet"),
        }
    prefix = os.environ.get("PKGLET_PREFIX", "")
    return {
        "prefix": prefix or "/",
        "db_dir": f"{prefix}/var/lib/pkglet",
        "cache_dir": "/var/cache/pkglet",
        "config_dir": "/etc/pkglet",
    }


_PATHS = default_paths()

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": None, "level": "INFO"},
    },
    "paths": dict(_PATHS),
    "db": {
        "path": os.path.join(_PATHS["db_dir"], "pkglet.sqlite3"),
        "timeout": 5.0,
        "journal_mode": "WAL",
        "busy_timeout_ms": 5000,
    },
    # name -> {location, kind: local|vcs, priority}
    "repos": {},
    "repos_conf": os.path.join(_PATHS["config_dir"], "repos.conf"),
    "masks": {
        "file": os.path.join(_PATHS["config_dir"], "package.mask"),
        "packages": [],
    },
    "pins": {
        "file": os.path.join(_PATHS["config_dir"], "package.lock"),
    },
    "package_options": {
        "dir": os.path.join(_PATHS["config_dir"], "package.opts"),
    },
    "catalog": {
        "manifest_names": ["manifest.yaml", "manifest.yml", "manifest.toml", "manifest.json"],
        "parallel_scan": True,
        "workers": 4,
    },
    "resolver": {
        "pins_transitive": True,
        "strict_kinds": False,
        "max_depth": 256,
    },
    "conflicts": {
        "report_dir": os.path.join(_PATHS["cache_dir"], "reports"),
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    source: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("PKGLET_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "pkglet.yaml",
        Path.cwd() / "pkglet.yml",
        Path.cwd() / "pkglet.json",
        Path(_PATHS["config_dir"]) / "config.yaml",
        Path("/etc") / "pkglet" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e)
        return None

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
            return data or {}
        except yaml.YAMLError as e:
            logger.debug("config: yaml parse fail %s: %s", path, e)

    try:
        return json.loads(txt)
    except ValueError as e:
        logger.debug("config: json parse fail %s: %s", path, e)
    return None


def _normalize_repos(repos: Any) -> Dict[str, Dict[str, Any]]:
    """Accept {name: location} or {name: {...}} or [{name, location}] and return canonical entries."""
    out: Dict[str, Dict[str, Any]] = {}
    if isinstance(repos, list):
        items = [(r.get("name"), r) for r in repos if isinstance(r, dict) and r.get("name")]
    elif isinstance(repos, dict):
        items = list(repos.items())
    else:
        return out
    for name, entry in items:
        if isinstance(entry, str):
            entry = {"location": entry}
        entry = dict(entry or {})
        location = str(entry.get("location") or entry.get("path") or entry.get("url") or "")
        kind = entry.get("kind") or ("vcs" if _looks_like_vcs(location) else "local")
        out[str(name)] = {
            "location": location if kind == "vcs" else _expand_path(location),
            "kind": kind,
            "priority": int(entry.get("priority", 0) or 0),
        }
    return out


def _looks_like_vcs(location: str) -> bool:
    return location.startswith(("http://", "https://", "git@")) or location.endswith(".git")


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("db", "path"),
        ("logging", "file"),
        ("masks", "file"),
        ("pins", "file"),
        ("package_options", "dir"),
        ("conflicts", "report_dir"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])
    if isinstance(out.get("repos_conf"), str):
        out["repos_conf"] = _expand_path(out["repos_conf"])
    if isinstance(out.get("paths"), dict):
        out["paths"] = {k: _expand_path(v) if isinstance(v, str) else v for k, v in out["paths"].items()}

    out["repos"] = _normalize_repos(out.get("repos"))

    try:
        out["catalog"]["workers"] = max(1, int(out["catalog"].get("workers", 1)))
        out["resolver"]["max_depth"] = int(out["resolver"].get("max_depth", 256))
    except (KeyError, TypeError, ValueError):
        logger.debug("config: failed to coerce numeric fields", exc_info=True)
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    p = cfg.get("db", {}).get("path")
    if p and not isinstance(p, str):
        warnings.append("db.path must be a string")
    pkgs = cfg.get("masks", {}).get("packages")
    if pkgs is not None and not isinstance(pkgs, list):
        warnings.append("masks.packages should be a list")
    for name, repo in (cfg.get("repos") or {}).items():
        if repo.get("kind") not in ("local", "vcs"):
            warnings.append(f"repos.{name}.kind must be 'local' or 'vcs'")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.exists():
            return p
    return None


def _build(raw: Dict[str, Any], source: Optional[Path], fatal: bool) -> Config:
    merged = _deep_merge(DEFAULTS, raw)
    normalized = _normalize_and_coerce(merged)
    ok, issues = _validate_structure(normalized)
    if not ok:
        msg = f"config: validation issues: {issues}"
        if fatal:
            logger.error(msg)
            raise ValueError(msg)
        logger.warning(msg)
    return Config(raw=raw, merged=normalized, source=source)


def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                logger.warning("config: file found but could not be parsed: %s", cfg_path)
            else:
                raw = data
        _CONFIG = _build(raw, cfg_path, fatal)
        logger.debug("config: loaded merged config (from=%s)", cfg_path or "<defaults>")
        return _CONFIG


def load_from_dict(data: Dict[str, Any], fatal: bool = False) -> Config:
    """Install a configuration built from an in-memory mapping (embedding, tests)."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = _build(deepcopy(data), None, fatal)
    _notify_watchers(_CONFIG)
    return _CONFIG


def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG


def get(path: str, default: Any = None) -> Any:
    return get_config().get(path, default)


def reload(explicit_path: Optional[str] = None) -> Config:
    cfg = load(explicit_path)
    _notify_watchers(cfg)
    return cfg


def set_bootstrap_root(path: str) -> Config:
    """Relocate prefix and installed-state database under an alternate root."""
    root = _expand_path(path)
    db_dir = os.path.join(root, "var", "lib", "pkglet")
    cfg = get_config()
    raw = _deep_merge(cfg.raw, {
        "paths": {"prefix": root, "db_dir": db_dir},
        "db": {"path": os.path.join(db_dir, "pkglet.sqlite3")},
    })
    with _CONFIG_LOCK:
        global _CONFIG
        _CONFIG = _build(raw, cfg.source, False)
    logger.info("config: bootstrap root set to %s", root)
    _notify_watchers(_CONFIG)
    return _CONFIG

# ----------------------------
# Save: write only override (diff) to avoid clobbering defaults
# ----------------------------
def _compute_override(merged: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    def diff(a: Any, b: Any) -> Any:
        if type(a) != type(b):
            return deepcopy(a)
        if isinstance(a, dict):
            out = {}
            for k, v in a.items():
                if k not in b:
                    out[k] = deepcopy(v)
                else:
                    d = diff(v, b[k])
                    if d is not None:
                        out[k] = d
            return out or None
        return deepcopy(a) if a != b else None
    return diff(merged, defaults) or {}


def save(path: Optional[str] = None, override_only: bool = True) -> Path:
    with _CONFIG_LOCK:
        cfg = get_config()
        out_path = Path(path) if path else (cfg.source or Path(_PATHS["config_dir"]) / "config.yaml")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        to_write = _compute_override(cfg.merged, _normalize_and_coerce(DEFAULTS)) if override_only else cfg.as_dict()
        with open(out_path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(to_write, fh, default_flow_style=False, sort_keys=False)
        logger.info("config: saved config to %s (override_only=%s)", out_path, override_only)
        return out_path

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)


def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)


def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            logger.exception("config: watcher callback error")

# ----------------------------
# Legacy flat files
# ----------------------------
def _config_lines(path: Optional[str]):
    """Yield non-empty lines with '#' comments stripped."""
    if not path or not os.path.isfile(path):
        return
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.split("#", 1)[0].strip()
            if line:
                yield line


def read_repos_conf(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Parse `name location` lines; declaration order is preserved."""
    path = path or get("repos_conf")
    entries: Dict[str, Any] = {}
    for line in _config_lines(path):
        parts = line.split()
        if len(parts) < 2:
            logger.warning("config: ignoring malformed repos.conf line: %r", line)
            continue
        entry: Dict[str, Any] = {"location": parts[1]}
        if len(parts) > 2:
            try:
                entry["priority"] = int(parts[2])
            except ValueError:
                logger.warning("config: bad priority %r for repo %s", parts[2], parts[0])
        entries[parts[0]] = entry
    return _normalize_repos(entries)


def get_repositories() -> Dict[str, Dict[str, Any]]:
    """repos.conf entries followed by the `repos` section; the latter wins on name clash."""
    repos = read_repos_conf()
    for name, entry in (get("repos") or {}).items():
        repos.pop(name, None)
        repos[name] = entry
    return repos


def add_repo(name: str, location: str, priority: int = 0, path: Optional[str] = None) -> Dict[str, Any]:
    path = path or get("repos_conf")
    current = read_repos_conf(path)
    if name in current:
        raise ValueError(f"repository already configured: {name}")
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(f"{name} {location}" + (f" {priority}" if priority else "") + "\n")
    logger.info("config: added repository %s -> %s", name, location)
    return _normalize_repos({name: {"location": location, "priority": priority}})[name]


def remove_repo(name: str, path: Optional[str] = None) -> bool:
    path = path or get("repos_conf")
    if not os.path.isfile(path):
        return False
    with open(path, "r", encoding="utf-8") as fh:
        lines = fh.readlines()
    kept = [ln for ln in lines if ln.split("#", 1)[0].split()[:1] != [name]]
    if len(kept) == len(lines):
        return False
    with open(path, "w", encoding="utf-8") as fh:
        fh.writelines(kept)
    logger.info("config: removed repository %s", name)
    return True


def read_mask_file(path: Optional[str] = None) -> List[Tuple[Optional[str], str]]:
    """Return (repository, name) pairs from `name` or `repo/name` lines."""
    out: List[Tuple[Optional[str], str]] = []
    for line in _config_lines(path or get("masks.file")):
        if "/" in line:
            repo, name = line.split("/", 1)
            out.append((repo, name))
        else:
            out.append((None, line))
    return out


def read_pin_file(path: Optional[str] = None) -> Dict[str, str]:
    pins: Dict[str, str] = {}
    for line in _config_lines(path or get("pins.file")):
        parts = line.split(None, 1)
        if len(parts) == 2:
            pins[parts[0]] = parts[1].strip()
        else:
            logger.warning("config: ignoring malformed package.lock line: %r", line)
    return pins


def read_package_options(name: str, directory: Optional[str] = None) -> Dict[str, Any]:
    """Options enabled for one package in package.opts/<name>; `-opt` disables."""
    directory = directory or get("package_options.dir")
    opts: Dict[str, Any] = {}
    if not directory:
        return opts
    for line in _config_lines(os.path.join(directory, name)):
        for tok in line.split():
            if "=" in tok:
                k, v = tok.split("=", 1)
                opts[k] = v
            elif tok.startswith("-"):
                opts[tok[1:]] = False
            else:
                opts[tok] = True
    return opts
