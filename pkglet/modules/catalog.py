# pkglet/modules/catalog.py
"""
catalog.py - multi-repository manifest catalog for pkglet

Features:
- Repositories come from repos.conf and the `repos` config section
  (name -> {location, kind: local|vcs, priority})
- Iteration order: higher priority first, declaration order among equals.
  VCS repositories are read from their checkout under <cache_dir>/repos/<name>
- Manifest discovery walks each repository for the configured manifest file
  names (manifest.yaml, manifest.toml, ...); several versions of one package
  may live side by side
- Repositories are scanned in parallel (pure reads); the per-repository
  results are merged into the index by a single aggregation step
- Qualified names "repo/name" restrict lookups to one repository
- Masked packages are rejected by load() before a manifest is handed out
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from pkglet.modules import config
from pkglet.modules.errors import ManifestError, NotFound, PackageMasked
from pkglet.modules.logging import get_logger
from pkglet.modules.masks import MasksManager, get_masks
from pkglet.modules.meta import Manifest, ManifestLoader
from pkglet.modules.version import Version, compare, get_latest_version, parse, sort_versions

logger = get_logger("catalog")


def split_qualified(name: str) -> Tuple[Optional[str], str]:
    """'core/zlib' -> ('core', 'zlib'); 'zlib' -> (None, 'zlib')."""
    if "/" in name:
        repo, bare = name.split("/", 1)
        return (repo or None), bare
    return None, name


@dataclass(frozen=True)
class Repository:
    name: str
    location: str = ""
    kind: str = "local"
    priority: int = 0

    @property
    def root(self) -> str:
        if self.kind == "vcs":
            return os.path.join(config.get("paths.cache_dir"), "repos", self.name)
        return os.path.abspath(os.path.expanduser(self.location))

    @classmethod
    def from_config(cls, name: str, entry: Dict[str, Any]) -> "Repository":
        return cls(name=name, location=str(entry.get("location") or ""),
                   kind=str(entry.get("kind") or "local"), priority=int(entry.get("priority") or 0))


def order_repositories(repos: Iterable[Repository]) -> List[Repository]:
    # sorted() is stable: declaration order survives among equal priorities
    return sorted(repos, key=lambda r: -r.priority)


class RepositoryCatalog:
    """
    Aggregated view of every configured repository.

    The index maps package name -> manifests, ordered by repository
    iteration order and then by manifest path, so every query is stable
    within (and across) resolution runs until refresh() is called.
    """

    def __init__(self,
                 repositories: Optional[Iterable[Repository]] = None,
                 loader: Optional[ManifestLoader] = None,
                 masks: Optional[MasksManager] = None,
                 installed: Any = None):
        if repositories is None:
            repositories = [Repository.from_config(n, e) for n, e in config.get_repositories().items()]
        self.repositories: List[Repository] = order_repositories(repositories)
        self.loader = loader or ManifestLoader()
        self._masks = masks
        self._installed = installed
        self._index: Optional[Dict[str, List[Manifest]]] = None

    @classmethod
    def from_manifests(cls,
                       manifests: Iterable[Union[Manifest, Dict[str, Any]]],
                       repositories: Optional[Iterable[Repository]] = None,
                       repository: str = "local",
                       masks: Optional[MasksManager] = None,
                       installed: Any = None) -> "RepositoryCatalog":
        """In-memory catalog; manifests without a repository are assigned to `repository`."""
        items: List[Manifest] = []
        for m in manifests:
            if isinstance(m, dict):
                m = Manifest.from_dict(m, repository=m.get("repository") or repository)
            elif m.repository is None:
                m = replace(m, repository=repository)
            items.append(m)
        if repositories is None:
            seen: Dict[str, Repository] = {}
            for m in items:
                seen.setdefault(m.repository, Repository(m.repository))
            repositories = list(seen.values())
        cat = cls(repositories=repositories, masks=masks, installed=installed)
        by_repo: Dict[str, List[Manifest]] = {}
        for m in items:
            by_repo.setdefault(m.repository, []).append(m)
        cat._index = cat._aggregate(by_repo)
        return cat

    @property
    def masks(self) -> MasksManager:
        if self._masks is None:
            self._masks = get_masks()
        return self._masks

    @property
    def installed(self):
        if self._installed is None:
            from pkglet.modules.installed import get_installed
            self._installed = get_installed()
        return self._installed

    # ---------------------------
    # Scanning
    # ---------------------------
    def _discover(self, repo: Repository) -> List[str]:
        names = set(config.get("catalog.manifest_names") or [])
        root = repo.root
        if not os.path.isdir(root):
            if repo.kind == "vcs":
                logger.warning("repository %s has no checkout at %s; sync it first", repo.name, root)
            else:
                logger.warning("repository %s: %s is not a directory", repo.name, root)
            return []
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for fn in sorted(filenames):
                if fn in names:
                    found.append(os.path.join(dirpath, fn))
        return found

    def _scan_repo(self, repo: Repository) -> List[Manifest]:
        out: List[Manifest] = []
        for path in self._discover(repo):
            try:
                out.append(self.loader.load(path, repository=repo.name))
            except ManifestError as e:
                logger.warning("skipping %s: %s", path, e)
        logger.debug("repository %s: %d manifest(s)", repo.name, len(out))
        return out

    def _aggregate(self, by_repo: Dict[str, List[Manifest]]) -> Dict[str, List[Manifest]]:
        index: Dict[str, List[Manifest]] = {}
        for repo in self.repositories:
            for m in by_repo.get(repo.name, []):
                index.setdefault(m.name, []).append(m)
        return index

    def _scan(self) -> Dict[str, List[Manifest]]:
        by_repo: Dict[str, List[Manifest]] = {}
        workers = int(config.get("catalog.workers") or 1)
        if config.get("catalog.parallel_scan") and len(self.repositories) > 1 and workers > 1:
            with ThreadPoolExecutor(max_workers=min(workers, len(self.repositories))) as exc:
                futures = {exc.submit(self._scan_repo, r): r for r in self.repositories}
                for fut in as_completed(futures):
                    by_repo[futures[fut].name] = fut.result()
        else:
            for r in self.repositories:
                by_repo[r.name] = self._scan_repo(r)
        index = self._aggregate(by_repo)
        logger.info("catalog: %d package(s) in %d repositories", len(index), len(self.repositories))
        return index

    @property
    def index(self) -> Dict[str, List[Manifest]]:
        if self._index is None:
            self._index = self._scan()
        return self._index

    def refresh(self) -> None:
        self._index = None

    # ---------------------------
    # Queries
    # ---------------------------
    def manifests(self, name: str) -> List[Manifest]:
        repo, bare = split_qualified(name)
        found = self.index.get(bare, [])
        if repo is not None:
            found = [m for m in found if m.repository == repo]
        return list(found)

    def available_versions(self, name: str) -> List[str]:
        """
        Published versions of `name`, ascending by precedence.

        Equal-precedence versions keep repository iteration order, so the
        first maximal entry comes from the highest-priority repository.
        """
        return [str(v) for v in sort_versions(m.version for m in self.manifests(name))]

    def has_package(self, name: str) -> bool:
        return bool(self.manifests(name))

    def package_names(self) -> List[str]:
        return sorted(self.index)

    def all_manifests(self) -> Iterator[Manifest]:
        for repo in self.repositories:
            for manifests in self.index.values():
                for m in manifests:
                    if m.repository == repo.name:
                        yield m

    def find(self, name: str, version: Union[str, Version, None] = None,
             repository: Optional[str] = None) -> Optional[Manifest]:
        """Manifest for name (and version), ignoring masks. Highest version when none is given."""
        if repository is not None:
            name = f"{repository}/{split_qualified(name)[1]}"
        candidates = self.manifests(name)
        if version is None:
            best: Optional[Manifest] = None
            for m in candidates:
                if best is None or compare(m.version, best.version) > 0:
                    best = m
            return best
        wanted = str(version)
        for m in candidates:
            if m.version == wanted:
                return m
        target = parse(version)
        for m in candidates:
            if compare(m.version, target) == 0:
                return m
        return None

    def load(self, name: str, version: Union[str, Version, None] = None,
             repository: Optional[str] = None) -> Manifest:
        """Manifest loader contract: NotFound, or PackageMasked for masked packages."""
        m = self.find(name, version, repository)
        bare = split_qualified(name)[1]
        if m is None:
            raise NotFound(bare, str(version) if version is not None else None)
        if self.masks.is_masked(m.name, repository=m.repository, version=m.version):
            raise PackageMasked(m.name, self.masks.get_mask_reason(m.name, m.repository, m.version), m.repository)
        return m

    def latest_version(self, name: str, current: Optional[str] = None,
                       constraint: Optional[str] = None) -> Optional[Version]:
        return get_latest_version(self.available_versions(name), current=current, constraint=constraint)

    def search(self, pattern: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on name and description; newest version per repository."""
        needle = (pattern or "").lower()
        results: List[Dict[str, Any]] = []
        for name in self.package_names():
            newest: Dict[str, Manifest] = {}
            for m in self.index[name]:
                cur = newest.get(m.repository)
                if cur is None or compare(m.version, cur.version) > 0:
                    newest[m.repository] = m
            for m in newest.values():
                if needle not in m.name.lower() and needle not in m.description.lower():
                    continue
                results.append({
                    "name": m.name,
                    "version": m.version,
                    "repository": m.repository,
                    "description": m.description,
                    "masked": self.masks.is_masked(m.name, repository=m.repository, version=m.version),
                    "installed": self.installed.installed_version(m.name),
                })
        return results

# ---------------------------
# Module-level helpers
# ---------------------------
_catalog: Optional[RepositoryCatalog] = None


def get_catalog() -> RepositoryCatalog:
    global _catalog
    if _catalog is None:
        _catalog = RepositoryCatalog()
    return _catalog


def set_catalog(catalog: Optional[RepositoryCatalog]) -> None:
    global _catalog
    _catalog = catalog


def add_repo(name: str, location: str, priority: int = 0, path: Optional[str] = None) -> Repository:
    entry = config.add_repo(name, location, priority=priority, path=path)
    set_catalog(None)
    return Repository.from_config(name, entry)


def remove_repo(name: str, path: Optional[str] = None) -> bool:
    removed = config.remove_repo(name, path=path)
    if removed:
        set_catalog(None)
    return removed
