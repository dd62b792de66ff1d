"""Shared fixtures: a temporary config tree, a temporary sqlite database and in-memory catalogs."""

from typing import Any, Iterable, Optional

import pytest

from pkglet.modules import config
from pkglet.modules.catalog import Repository, RepositoryCatalog, set_catalog
from pkglet.modules.conflicts import ConflictDetector
from pkglet.modules.db import DB, set_default_db
from pkglet.modules.installed import InstalledRecord, InstalledStore, set_installed
from pkglet.modules.masks import MasksManager, set_masks
from pkglet.modules.meta import Manifest
from pkglet.modules.pins import PinStore, set_pins
from pkglet.modules.resolver import Resolver, set_resolver


@pytest.fixture
def pkglet_env(tmp_path):
    """Point every configured path into tmp_path and install a fresh database."""
    etc = tmp_path / "etc"
    etc.mkdir()
    cfg = config.load_from_dict({
        "logging": {"level": "CRITICAL", "color": False},
        "paths": {
            "prefix": str(tmp_path / "root"),
            "db_dir": str(tmp_path / "db"),
            "cache_dir": str(tmp_path / "cache"),
            "config_dir": str(etc),
        },
        "db": {"path": str(tmp_path / "db" / "pkglet.sqlite3")},
        "repos_conf": str(etc / "repos.conf"),
        "masks": {"file": str(etc / "package.mask"), "packages": []},
        "pins": {"file": str(etc / "package.lock")},
        "package_options": {"dir": str(etc / "package.opts")},
        "catalog": {"parallel_scan": True, "workers": 2},
        "conflicts": {"report_dir": str(tmp_path / "reports")},
    })
    db = DB(tmp_path / "db" / "pkglet.sqlite3")
    set_default_db(db)
    yield cfg
    for reset in (set_catalog, set_installed, set_masks, set_pins, set_resolver):
        reset(None)
    db.close()
    set_default_db(None)


@pytest.fixture
def db(pkglet_env):
    from pkglet.modules.db import get_db
    return get_db()


@pytest.fixture
def installed(db):
    return InstalledStore(db)


@pytest.fixture
def masks(db):
    return MasksManager(db)


@pytest.fixture
def pins(db):
    return PinStore(db)


@pytest.fixture
def make_manifest():
    """Factory for valid manifests; extra keyword arguments become manifest fields."""
    def _make(name: str, version: str = "1.0.0", repository: str = "main", **fields: Any) -> Manifest:
        data = {"name": name, "version": version, "description": f"{name} package", "license": "MIT"}
        data.update(fields)
        return Manifest.from_dict(data, repository=repository)
    return _make


@pytest.fixture
def install(installed):
    """Record an installed package directly in the store."""
    def _install(name: str, version: str = "1.0.0", files: Iterable[str] = (), repository: Optional[str] = "main"):
        return installed.record_install(InstalledRecord(name, version, owned_files=tuple(files), repository=repository))
    return _install


@pytest.fixture
def build(installed, masks, pins):
    """Wire catalog, detector and resolver over the given manifests."""
    def _build(manifests, repositories: Optional[Iterable[Repository]] = None, **cfg: Any):
        catalog = RepositoryCatalog.from_manifests(manifests, repositories=repositories, masks=masks,
                                                   installed=installed)
        detector = ConflictDetector(catalog, installed, masks)
        settings = {"pins_transitive": True, "strict_kinds": False, "max_depth": 256}
        settings.update(cfg)
        return Resolver(catalog, installed, pins, masks, detector, cfg=settings)
    return _build
