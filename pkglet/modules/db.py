# pkglet/modules/db.py
"""
DB module for pkglet.

Main features:
- Thread-safe sqlite3 wrapper (check_same_thread=False)
- Row factory (sqlite3.Row) for column access by name
- Configurable pragmas (WAL, foreign_keys, busy_timeout)
- Transaction context manager (automatic commit/rollback)
- Simple migrations (pkglet_migrations table + apply_migrations)
- Schema for installed state, pins, masks and history
- Online backup via sqlite3.Connection.backup
- get_db() shared default instance, set_default_db() for tests
"""

from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Sequence, Tuple

from pkglet.modules import config
from pkglet.modules.errors import PkgletError
from pkglet.modules.logging import get_logger

_logger = get_logger("db")


class DBError(PkgletError):
    """Generic database failure."""


@dataclass
class DBConfig:
    path: str
    timeout: float = 5.0
    journal_mode: str = "WAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    synchronous: str = "NORMAL"


# version, name, sql
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "installed state", """
        CREATE TABLE IF NOT EXISTS installed_packages (
            name TEXT PRIMARY KEY,
            version TEXT NOT NULL,
            repository TEXT,
            installed_at INTEGER NOT NULL
        );
        CREATE TABLE IF NOT EXISTS installed_files (
            package TEXT NOT NULL REFERENCES installed_packages(name) ON DELETE CASCADE,
            seq INTEGER NOT NULL,
            path TEXT NOT NULL,
            PRIMARY KEY (package, seq)
        );
        CREATE INDEX IF NOT EXISTS idx_installed_files_path ON installed_files(path);
    """),
    (2, "pins and masks", """
        CREATE TABLE IF NOT EXISTS pins (
            name TEXT PRIMARY KEY,
            version TEXT NOT NULL,
            created_at INTEGER NOT NULL
        );
        CREATE TABLE IF NOT EXISTS masks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name_pattern TEXT NOT NULL,
            repository TEXT,
            version_rule TEXT DEFAULT '*',
            reason TEXT,
            added_by TEXT,
            valid_until INTEGER,
            created_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_masks_name ON masks(name_pattern);
    """),
    (3, "history", """
        CREATE TABLE IF NOT EXISTS history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            package TEXT,
            action TEXT NOT NULL,
            detail TEXT,
            ts INTEGER NOT NULL
        );
    """),
]


class DB:
    """
    sqlite3 wrapper.

        db = DB("/tmp/state.sqlite3")
        with db.transaction() as cur:
            cur.execute("INSERT ...")
        rows = db.fetchall("SELECT * FROM installed_packages")
    """

    def __init__(self, path: Optional[str | Path] = None, cfg: Optional[DBConfig] = None, migrate: bool = True) -> None:
        if cfg is None:
            if path is None:
                path = config.get("db.path")
                if not path:
                    raise DBError("db.path is not configured")
            cfg = DBConfig(
                path=str(path),
                timeout=float(config.get("db.timeout") or 5.0),
                journal_mode=str(config.get("db.journal_mode") or "WAL"),
                busy_timeout_ms=int(config.get("db.busy_timeout_ms") or 5000),
            )
        self._cfg = cfg
        self._path = Path(self._cfg.path).expanduser().resolve()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        if migrate:
            self.apply_migrations(MIGRATIONS)

    # ------------------------
    # Connection and pragmas
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self._path), timeout=self._cfg.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    if self._cfg.journal_mode:
                        cur.execute(f"PRAGMA journal_mode = {self._cfg.journal_mode};")
                    if self._cfg.foreign_keys:
                        cur.execute("PRAGMA foreign_keys = ON;")
                    if self._cfg.busy_timeout_ms:
                        cur.execute(f"PRAGMA busy_timeout = {int(self._cfg.busy_timeout_ms)};")
                    if self._cfg.synchronous:
                        cur.execute(f"PRAGMA synchronous = {self._cfg.synchronous};")
                finally:
                    cur.close()
            except sqlite3.Error as e:
                _logger.exception("cannot open database %s", self._path)
                raise DBError(f"cannot open database {self._path}: {e}") from e
            self._conn = conn
            _logger.debug("connected to %s", self._path)
            return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------
    # Execution
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False) -> sqlite3.Cursor:
        with self._lock:
            conn = self.connect()
            try:
                cur = conn.execute(sql, params or ())
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.error("SQL failed: %s | params=%s", sql, params)
                conn.rollback()
                raise DBError(f"SQL failed: {e}") from e

    def executescript(self, script: str) -> None:
        with self._lock:
            conn = self.connect()
            try:
                conn.executescript(script)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise DBError(f"SQL script failed: {e}") from e

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchone()
            finally:
                cur.close()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            try:
                return cur.fetchall()
            finally:
                cur.close()

    def iterate(self, sql: str, params: Optional[Sequence[Any]] = None, chunk: int = 200) -> Generator[List[sqlite3.Row], None, None]:
        """Yield result rows in lists of at most `chunk`."""
        cur = self.execute(sql, params)
        try:
            while True:
                rows = cur.fetchmany(chunk)
                if not rows:
                    break
                yield rows
        finally:
            cur.close()

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """
        Everything executed on the yielded cursor commits together or not at all:
            with db.transaction() as cur:
                cur.execute(...)
        """
        with self._lock:
            conn = self.connect()
            cur = conn.cursor()
            try:
                if not conn.in_transaction:
                    cur.execute("BEGIN IMMEDIATE")
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def get_current_version(self) -> int:
        row = self.fetchone("SELECT MAX(version) AS v FROM pkglet_migrations;")
        return int(row["v"]) if row and row["v"] is not None else 0

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]]) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current schema version."""
        applied: List[int] = []
        with self._lock:
            self.execute(
                "CREATE TABLE IF NOT EXISTS pkglet_migrations (version INTEGER PRIMARY KEY, name TEXT, applied_at TEXT);",
                commit=True,
            )
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda x: int(x[0])):
                if int(version) <= current:
                    continue
                _logger.debug("applying migration %s: %s", version, name)
                self.executescript(sql)
                self.execute(
                    "INSERT INTO pkglet_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                    (int(version), name, time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
                    commit=True,
                )
                applied.append(int(version))
        return applied

    # ------------------------
    # Backup
    # ------------------------
    def backup_to(self, dest_path: str | Path) -> Path:
        dest = Path(dest_path).expanduser().resolve()
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self.connect()
            dest_conn = sqlite3.connect(str(dest))
            try:
                conn.backup(dest_conn)
            finally:
                dest_conn.close()
        _logger.info("database backup written to %s", dest)
        return dest

    def __enter__(self) -> "DB":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# Module singleton / helpers
# ------------------------
_default_db_lock = threading.RLock()
_default_db: Optional[DB] = None


def _on_config_reload(cfg) -> None:
    global _default_db
    with _default_db_lock:
        if _default_db is not None and Path(cfg.get("db.path")).expanduser().resolve() != _default_db.path:
            _logger.info("db.path changed; reopening database")
            _default_db.close()
            _default_db = None


config.register_watch_callback(_on_config_reload)


def get_db() -> DB:
    """Shared DB instance built from config on first use."""
    global _default_db
    with _default_db_lock:
        if _default_db is None:
            _default_db = DB()
        return _default_db


def set_default_db(db: Optional[DB]) -> None:
    global _default_db
    with _default_db_lock:
        _default_db = db


def add_history(package: Optional[str], action: str, detail: str = "", db: Optional[DB] = None) -> None:
    """Append one entry to the audit trail."""
    (db or get_db()).execute(
        "INSERT INTO history (package, action, detail, ts) VALUES (?, ?, ?, ?)",
        (package, action, detail, int(time.time())),
        commit=True,
    )


def list_history(package: Optional[str] = None, limit: int = 100, db: Optional[DB] = None) -> List[dict]:
    db = db or get_db()
    if package:
        rows = db.fetchall("SELECT * FROM history WHERE package = ? ORDER BY id DESC LIMIT ?", (package, limit))
    else:
        rows = db.fetchall("SELECT * FROM history ORDER BY id DESC LIMIT ?", (limit,))
    return [dict(r) for r in rows]
