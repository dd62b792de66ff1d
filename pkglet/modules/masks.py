# pkglet/modules/masks.py
"""
masks.py - package masks for pkglet

Features:
- Masks from three sources: the `masks.packages` config section, the legacy
  package.mask file (`name` or `repo/name` lines) and the `masks` DB table
- Name patterns: exact name, shell glob ("libfoo-*") or regex with "re:" prefix
- Optional repository scope: a scoped mask only blocks that repository's package
- Optional version rule (any pkglet constraint: "<2.0", "^1.4", "=1.2.3", "*")
- Temporary masks (valid_until timestamp)
- Public API:
    - is_masked(name, repository=None, version=None) -> bool
    - get_mask_reason(name, repository=None, version=None) -> Optional[str]
    - enforce_masks(pkg_list) -> filtered pkg_list
    - add_mask(...), remove_mask(mask_id), unmask(name), list_masks(...)
- History entries 'mask_add', 'mask_remove', 'mask_blocked'
"""

from __future__ import annotations

import re
import time
import fnmatch
from typing import Any, Dict, List, Optional

from pkglet.modules import config
from pkglet.modules.db import DB, add_history, get_db
from pkglet.modules.errors import MalformedVersion
from pkglet.modules.logging import get_logger
from pkglet.modules.version import satisfies

logger = get_logger("masks")


def _now_ts() -> int:
    return int(time.time())


def _match_name_pattern(name: str, pattern: str) -> bool:
    if not pattern:
        return False
    pattern = str(pattern)
    if pattern.startswith("re:"):
        try:
            return re.fullmatch(pattern[3:], name) is not None
        except re.error:
            logger.warning("invalid mask regex %r", pattern)
            return False
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(name, pattern)
    return name == pattern


def _match_version_rule(version: Optional[str], rule: Optional[str]) -> bool:
    rule = (rule or "*").strip()
    if rule in ("", "*"):
        return True
    # a version-scoped mask says nothing about the package as a whole
    if version is None:
        return False
    try:
        return satisfies(rule, version)
    except MalformedVersion:
        logger.warning("ignoring mask with bad version rule %r", rule)
        return False

# ---------------------------------------------------------------------
# Mask model
# ---------------------------------------------------------------------
class MaskRecord:
    """
    One mask, persisted or loaded from config/file.
      id: DB row id (None when not persisted)
      name_pattern: exact name, glob or 're:...'
      repository: restrict to this repository (None = any)
      version_rule: constraint selecting masked versions ('*' = all)
      source: 'config' | 'file' | 'db'
    """

    def __init__(self,
                 id: Optional[int],
                 name_pattern: str,
                 repository: Optional[str] = None,
                 version_rule: str = "*",
                 reason: Optional[str] = None,
                 added_by: Optional[str] = None,
                 valid_until: Optional[int] = None,
                 created_at: Optional[int] = None,
                 source: str = "db"):
        self.id = id
        self.name_pattern = name_pattern
        self.repository = repository
        self.version_rule = version_rule or "*"
        self.reason = reason
        self.added_by = added_by
        self.valid_until = valid_until
        self.created_at = created_at or _now_ts()
        self.source = source

    def is_expired(self) -> bool:
        return self.valid_until is not None and _now_ts() > int(self.valid_until)

    def matches(self, package_name: str, repository: Optional[str] = None, version: Optional[str] = None) -> bool:
        if self.is_expired():
            return False
        if self.repository and self.repository != repository:
            return False
        if not _match_name_pattern(package_name, self.name_pattern):
            return False
        return _match_version_rule(version, self.version_rule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name_pattern": self.name_pattern,
            "repository": self.repository,
            "version_rule": self.version_rule,
            "reason": self.reason,
            "added_by": self.added_by,
            "valid_until": self.valid_until,
            "created_at": self.created_at,
            "source": self.source,
        }

    def __repr__(self) -> str:
        scope = f"{self.repository}/" if self.repository else ""
        return f"MaskRecord({scope}{self.name_pattern} {self.version_rule})"

# ---------------------------------------------------------------------
# Manager class
# ---------------------------------------------------------------------
class MasksManager:
    """In-memory cache of config/file masks plus persisted masks in the DB."""

    def __init__(self, db: Optional[DB] = None, mask_file: Optional[str] = None,
                 config_masks: Optional[List[Any]] = None):
        self._db = db
        self._mask_file = mask_file
        self._config_masks = config_masks
        self._masks: List[MaskRecord] = []
        self._loaded = False

    @property
    def db(self) -> DB:
        if self._db is None:
            self._db = get_db()
        return self._db

    # -----------------------------
    # Loading
    # -----------------------------
    def _load_static(self) -> List[MaskRecord]:
        out: List[MaskRecord] = []
        entries = self._config_masks if self._config_masks is not None else (config.get("masks.packages") or [])
        for p in entries:
            if isinstance(p, str):
                p = {"name": p}
            if not isinstance(p, dict) or not p.get("name"):
                logger.warning("ignoring malformed mask entry in config: %r", p)
                continue
            repo, name = p.get("repository"), str(p["name"])
            if repo is None and "/" in name and not name.startswith("re:"):
                repo, name = name.split("/", 1)
            out.append(MaskRecord(None, name, repository=repo, version_rule=str(p.get("version", "*")),
                                  reason=p.get("reason"), added_by="config", valid_until=p.get("valid_until"),
                                  source="config"))
        for repo, name in config.read_mask_file(self._mask_file):
            out.append(MaskRecord(None, name, repository=repo, reason="package.mask", added_by="file", source="file"))
        return out

    def _load(self) -> None:
        if self._loaded:
            return
        masks = self._load_static()
        for r in self.db.fetchall("SELECT * FROM masks ORDER BY id"):
            masks.append(MaskRecord(
                id=int(r["id"]),
                name_pattern=r["name_pattern"],
                repository=r["repository"],
                version_rule=r["version_rule"] or "*",
                reason=r["reason"],
                added_by=r["added_by"],
                valid_until=int(r["valid_until"]) if r["valid_until"] else None,
                created_at=int(r["created_at"]) if r["created_at"] else None,
                source="db",
            ))
        self._masks = masks
        self._loaded = True
        logger.debug("loaded %d mask(s)", len(masks))

    def reload(self) -> None:
        self._loaded = False
        self._load()

    # -----------------------------
    # CRUD operations (persisted)
    # -----------------------------
    def add_mask(self,
                 name_pattern: str,
                 version_rule: str = "*",
                 repository: Optional[str] = None,
                 reason: Optional[str] = None,
                 added_by: Optional[str] = "manual",
                 valid_until: Optional[int] = None) -> MaskRecord:
        self._load()
        if version_rule not in ("", "*"):
            satisfies(version_rule, "0")  # reject malformed rules up front
        now = _now_ts()
        cur = self.db.execute(
            "INSERT INTO masks (name_pattern, repository, version_rule, reason, added_by, valid_until, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (name_pattern, repository, version_rule or "*", reason, added_by, valid_until, now),
            commit=True,
        )
        mr = MaskRecord(cur.lastrowid, name_pattern, repository=repository, version_rule=version_rule,
                        reason=reason, added_by=added_by, valid_until=valid_until, created_at=now)
        self._masks.append(mr)
        logger.info("mask added: id=%s %r reason=%s", mr.id, mr, reason)
        add_history(name_pattern, "mask_add", f"id={mr.id} version={version_rule} reason={reason}", db=self.db)
        return mr

    def remove_mask(self, mask_id: int) -> bool:
        self._load()
        cur = self.db.execute("DELETE FROM masks WHERE id = ?", (mask_id,), commit=True)
        if cur.rowcount == 0:
            return False
        self._masks = [m for m in self._masks if m.id != mask_id]
        logger.info("mask removed: id=%s", mask_id)
        add_history(None, "mask_remove", f"id={mask_id}", db=self.db)
        return True

    def unmask(self, name_pattern: str, repository: Optional[str] = None) -> int:
        """Remove persisted masks with this exact pattern. Config and file masks are left alone."""
        self._load()
        ids = [m.id for m in self._masks
               if m.source == "db" and m.name_pattern == name_pattern and (repository is None or m.repository == repository)]
        removed = sum(1 for i in ids if self.remove_mask(i))
        static = [m for m in self._masks if m.source != "db" and m.name_pattern == name_pattern]
        if static:
            logger.warning("%s is also masked by %s; edit it there", name_pattern,
                           ", ".join(sorted({m.source for m in static})))
        return removed

    def list_masks(self, active_only: bool = True) -> List[Dict[str, Any]]:
        self._load()
        return [m.to_dict() for m in self._masks if not (active_only and m.is_expired())]

    # -----------------------------
    # Matching / enforcement API
    # -----------------------------
    def _find_matching_masks(self, package_name: str, repository: Optional[str] = None,
                             version: Optional[str] = None) -> List[MaskRecord]:
        self._load()
        return [m for m in self._masks if m.matches(package_name, repository, version)]

    def is_masked(self, package_name: str, repository: Optional[str] = None, version: Optional[str] = None) -> bool:
        return bool(self._find_matching_masks(package_name, repository, version))

    def get_mask_reason(self, package_name: str, repository: Optional[str] = None,
                        version: Optional[str] = None) -> Optional[str]:
        matches = self._find_matching_masks(package_name, repository, version)
        for m in matches:
            if m.reason:
                return m.reason
        return None

    def enforce_masks(self, pkg_list: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Keep only unmasked entries of pkg_list (dicts with name, version?, repository?).
        Blocked attempts are logged and recorded in history.
        """
        allowed = []
        for item in pkg_list:
            name, ver, repo = item.get("name"), item.get("version"), item.get("repository")
            if self.is_masked(name, repository=repo, version=ver):
                reason = self.get_mask_reason(name, repository=repo, version=ver)
                logger.warning("package masked: %s %s reason=%s", name, ver or "", reason)
                add_history(name, "mask_blocked", f"version={ver} repository={repo} reason={reason}", db=self.db)
            else:
                allowed.append(item)
        return allowed

# ---------------------------------------------------------------------
# Module-level manager singleton and convenience functions
# ---------------------------------------------------------------------
_manager: Optional[MasksManager] = None


def get_masks() -> MasksManager:
    global _manager
    if _manager is None:
        _manager = MasksManager()
    return _manager


def set_masks(manager: Optional[MasksManager]) -> None:
    global _manager
    _manager = manager


def is_masked(name: str, repository: Optional[str] = None, version: Optional[str] = None) -> bool:
    return get_masks().is_masked(name, repository=repository, version=version)


def get_mask_reason(name: str, repository: Optional[str] = None, version: Optional[str] = None) -> Optional[str]:
    return get_masks().get_mask_reason(name, repository=repository, version=version)


def enforce_masks(pkg_list: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return get_masks().enforce_masks(pkg_list)


def add_mask(name_pattern: str, version_rule: str = "*", repository: Optional[str] = None,
             reason: Optional[str] = None, added_by: Optional[str] = "manual",
             valid_until: Optional[int] = None) -> MaskRecord:
    return get_masks().add_mask(name_pattern, version_rule=version_rule, repository=repository,
                                reason=reason, added_by=added_by, valid_until=valid_until)


def remove_mask(mask_id: int) -> bool:
    return get_masks().remove_mask(mask_id)


def unmask(name_pattern: str, repository: Optional[str] = None) -> int:
    return get_masks().unmask(name_pattern, repository=repository)


def list_masks(active_only: bool = True) -> List[Dict[str, Any]]:
    return get_masks().list_masks(active_only=active_only)


def reload() -> None:
    get_masks().reload()
