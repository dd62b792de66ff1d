# pkglet/modules/installed.py
"""
Installed-state store.

One record per installed package name: version, install time and the ordered
list of owned file paths (relative to the install root). Records are written
and deleted inside a single transaction, so readers only ever see the state
after the last completed install or uninstall.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from pkglet.modules.db import DB, add_history, get_db
from pkglet.modules.logging import get_logger
from pkglet.modules.version import parse

logger = get_logger("installed")


def normalize_path(path: str) -> str:
    return os.path.normpath(str(path)).lstrip("/")


@dataclass(frozen=True)
class InstalledRecord:
    name: str
    version: str
    installed_at: int = field(default_factory=lambda: int(time.time()))
    owned_files: Tuple[str, ...] = ()
    repository: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "version": self.version,
            "installed_at": self.installed_at,
            "owned_files": list(self.owned_files),
            "repository": self.repository,
        }


class InstalledStore:
    def __init__(self, db: Optional[DB] = None):
        self._db = db

    @property
    def db(self) -> DB:
        if self._db is None:
            self._db = get_db()
        return self._db

    # ------------------------
    # Queries
    # ------------------------
    def is_installed(self, name: str) -> bool:
        return self.db.fetchone("SELECT 1 FROM installed_packages WHERE name = ?", (name,)) is not None

    def installed_version(self, name: str) -> Optional[str]:
        row = self.db.fetchone("SELECT version FROM installed_packages WHERE name = ?", (name,))
        return row["version"] if row else None

    def owned_files(self, name: str) -> List[str]:
        rows = self.db.fetchall("SELECT path FROM installed_files WHERE package = ? ORDER BY seq", (name,))
        return [r["path"] for r in rows]

    def get(self, name: str) -> Optional[InstalledRecord]:
        row = self.db.fetchone("SELECT * FROM installed_packages WHERE name = ?", (name,))
        if row is None:
            return None
        return InstalledRecord(
            name=row["name"],
            version=row["version"],
            installed_at=int(row["installed_at"]),
            owned_files=tuple(self.owned_files(name)),
            repository=row["repository"],
        )

    def list_installed(self) -> List[InstalledRecord]:
        names = [r["name"] for r in self.db.fetchall("SELECT name FROM installed_packages ORDER BY name")]
        return [rec for rec in (self.get(n) for n in names) if rec is not None]

    def who_owns(self, path: str) -> List[str]:
        """Installed packages that own `path` (absolute or root-relative)."""
        rows = self.db.fetchall(
            "SELECT DISTINCT package FROM installed_files WHERE path = ? ORDER BY package",
            (normalize_path(path),),
        )
        return [r["package"] for r in rows]

    def file_owners(self, paths: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
        """path -> owning packages, for `paths` or for every recorded file."""
        owners: Dict[str, List[str]] = {}
        if paths is None:
            for rows in self.db.iterate("SELECT path, package FROM installed_files ORDER BY path, package"):
                for r in rows:
                    owners.setdefault(r["path"], []).append(r["package"])
            return owners
        for p in paths:
            p = normalize_path(p)
            found = self.who_owns(p)
            if found:
                owners[p] = found
        return owners

    # ------------------------
    # Mutations (atomic, whole-record)
    # ------------------------
    def record_install(self, record: InstalledRecord) -> InstalledRecord:
        parse(record.version)
        files = [normalize_path(f) for f in record.owned_files]
        with self.db.transaction() as cur:
            cur.execute("DELETE FROM installed_files WHERE package = ?", (record.name,))
            cur.execute(
                "INSERT OR REPLACE INTO installed_packages (name, version, repository, installed_at) VALUES (?, ?, ?, ?)",
                (record.name, record.version, record.repository, int(record.installed_at)),
            )
            cur.executemany(
                "INSERT INTO installed_files (package, seq, path) VALUES (?, ?, ?)",
                [(record.name, i, p) for i, p in enumerate(files)],
            )
        logger.info("recorded install of %s %s (%d files)", record.name, record.version, len(files))
        add_history(record.name, "install", record.version, db=self.db)
        return InstalledRecord(record.name, record.version, record.installed_at, tuple(files), record.repository)

    def remove(self, name: str) -> Optional[InstalledRecord]:
        """Delete the record for `name`; returns what was removed, or None."""
        existing = self.get(name)
        if existing is None:
            return None
        with self.db.transaction() as cur:
            cur.execute("DELETE FROM installed_files WHERE package = ?", (name,))
            cur.execute("DELETE FROM installed_packages WHERE name = ?", (name,))
        logger.info("removed install record of %s %s", name, existing.version)
        add_history(name, "uninstall", existing.version, db=self.db)
        return existing


_store: Optional[InstalledStore] = None


def get_installed() -> InstalledStore:
    global _store
    if _store is None:
        _store = InstalledStore()
    return _store


def set_installed(store: Optional[InstalledStore]) -> None:
    global _store
    _store = store
