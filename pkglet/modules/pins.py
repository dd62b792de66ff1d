# pkglet/modules/pins.py
"""
Version pins: name -> version, independent of installed state.

Pins come from the `pins` DB table and from the legacy package.lock file
(`name version` lines). A DB pin overrides a file pin for the same name.
"""

from __future__ import annotations

import time
from typing import Dict, Optional

from pkglet.modules import config
from pkglet.modules.db import DB, add_history, get_db
from pkglet.modules.logging import get_logger
from pkglet.modules.version import parse

logger = get_logger("pins")


class PinStore:
    def __init__(self, db: Optional[DB] = None, pin_file: Optional[str] = None):
        self._db = db
        self._pin_file = pin_file
        self._file_pins: Optional[Dict[str, str]] = None

    @property
    def db(self) -> DB:
        if self._db is None:
            self._db = get_db()
        return self._db

    def _from_file(self) -> Dict[str, str]:
        if self._file_pins is None:
            self._file_pins = config.read_pin_file(self._pin_file)
            for name, version in self._file_pins.items():
                parse(version)
        return self._file_pins

    def pinned_version(self, name: str) -> Optional[str]:
        row = self.db.fetchone("SELECT version FROM pins WHERE name = ?", (name,))
        if row:
            return row["version"]
        return self._from_file().get(name)

    def pin(self, name: str, version: str) -> None:
        parse(version)
        self.db.execute(
            "INSERT OR REPLACE INTO pins (name, version, created_at) VALUES (?, ?, ?)",
            (name, version, int(time.time())),
            commit=True,
        )
        logger.info("pinned %s to %s", name, version)
        add_history(name, "pin", version, db=self.db)

    def unpin(self, name: str) -> bool:
        cur = self.db.execute("DELETE FROM pins WHERE name = ?", (name,), commit=True)
        if cur.rowcount:
            logger.info("unpinned %s", name)
            add_history(name, "unpin", "", db=self.db)
        if name in self._from_file():
            logger.warning("%s stays pinned by %s", name, self._pin_file or config.get("pins.file"))
        return bool(cur.rowcount)

    def list_pins(self) -> Dict[str, str]:
        pins = dict(self._from_file())
        for row in self.db.fetchall("SELECT name, version FROM pins ORDER BY name"):
            pins[row["name"]] = row["version"]
        return pins

    def reload(self) -> None:
        self._file_pins = None


_store: Optional[PinStore] = None


def get_pins() -> PinStore:
    global _store
    if _store is None:
        _store = PinStore()
    return _store


def set_pins(store: Optional[PinStore]) -> None:
    global _store
    _store = store


def pinned_version(name: str) -> Optional[str]:
    return get_pins().pinned_version(name)
