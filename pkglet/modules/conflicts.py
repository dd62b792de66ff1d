# pkglet/modules/conflicts.py
"""
conflicts.py - virtual packages and install conflicts for pkglet

Features:
- Virtual packages: a name no repository publishes a manifest for; its
  providers are the packages listing it in `provides`
- select_provider(): an installed provider that still satisfies the
  constraint wins; otherwise the highest-versioned uninstalled, unmasked
  provider whose manifest version satisfies it
- check_conflicts(): explicit `conflicts`, `replaces` and file-path overlaps
  against the installed set
- resolve_conflicts(): forced or interactive removal; file overlaps are
  reported but never block on their own
- audit_file_overlaps(): paths owned by more than one installed package
- export_report(): JSON/YAML dump of a conflict list
"""

from __future__ import annotations

import os
import json
import time
import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from pkglet.modules import config
from pkglet.modules.catalog import RepositoryCatalog, get_catalog
from pkglet.modules.errors import PkgletError, UnresolvableConflict
from pkglet.modules.installed import InstalledStore, get_installed
from pkglet.modules.logging import get_logger
from pkglet.modules.masks import MasksManager, get_masks
from pkglet.modules.meta import DependencySpec, Manifest
from pkglet.modules.version import ConstraintLike, compare, parse_constraint

logger = get_logger("conflicts")

# ---------------------------
# Conflict model
# ---------------------------
class ConflictReason(enum.Enum):
    EXPLICIT = "explicit"
    REPLACES = "replaces"
    FILE_OVERLAP = "file_overlap"


class ConflictAction(enum.Enum):
    REMOVE = "remove"
    REMOVE_THEN_CONTINUE = "remove_then_continue"
    FLAG = "flag"


@dataclass(frozen=True)
class Conflict:
    package: str
    reason: ConflictReason
    action: ConflictAction
    candidate: Optional[str] = None
    paths: Tuple[str, ...] = field(default=())

    @property
    def blocking(self) -> bool:
        return self.action is not ConflictAction.FLAG

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "reason": self.reason.value,
            "action": self.action.value,
            "candidate": self.candidate,
            "paths": list(self.paths),
        }

    def __str__(self) -> str:
        s = f"{self.candidate or '?'} vs {self.package}: {self.reason.value}"
        if self.paths:
            s += f" ({len(self.paths)} path(s), e.g. {self.paths[0]})"
        return s


def _confirm_removal(conflicts: List[Conflict]) -> bool:
    console = Console(stderr=True)
    table = Table(title="Conflicting packages")
    table.add_column("Installed")
    table.add_column("Reason")
    table.add_column("Candidate")
    for c in conflicts:
        table.add_row(c.package, c.reason.value, c.candidate or "")
    console.print(table)
    return Confirm.ask("Remove the packages above and continue?", default=False, console=console)

# ---------------------------
# Detector
# ---------------------------
class ConflictDetector:
    def __init__(self,
                 catalog: Optional[RepositoryCatalog] = None,
                 installed: Optional[InstalledStore] = None,
                 masks: Optional[MasksManager] = None):
        self.catalog = catalog or get_catalog()
        self.installed = installed or get_installed()
        self.masks = masks or get_masks()
        self._providers: Optional[Dict[str, List[str]]] = None

    # -----------------------
    # Virtual packages
    # -----------------------
    def is_virtual(self, name: str) -> bool:
        return not self.catalog.has_package(name)

    def _provider_map(self) -> Dict[str, List[str]]:
        # one scan per detector; refresh() after the catalog changes
        if self._providers is None:
            pmap: Dict[str, List[str]] = {}
            for m in self.catalog.all_manifests():
                for cap in m.provides:
                    names = pmap.setdefault(cap, [])
                    if m.name not in names:
                        names.append(m.name)
            self._providers = pmap
        return self._providers

    def refresh(self) -> None:
        self._providers = None

    def providers(self, virtual_name: str) -> List[str]:
        return list(self._provider_map().get(virtual_name, []))

    def _masked(self, name: str, repository: Optional[str], version: str) -> bool:
        return self.masks.is_masked(name, repository=repository, version=version)

    def select_provider(self, virtual_name: str, constraint: ConstraintLike = "*") -> Optional[str]:
        c = parse_constraint(constraint)
        names = self.providers(virtual_name)
        for name in names:
            rec = self.installed.get(name)
            if rec is None:
                continue
            if c.matches(rec.version) and not self._masked(name, rec.repository, rec.version):
                logger.debug("%s: keeping installed provider %s %s", virtual_name, name, rec.version)
                return name
        best: Optional[Manifest] = None
        for name in names:
            if self.installed.is_installed(name):
                continue
            for m in self.catalog.manifests(name):
                if virtual_name not in m.provides or not c.matches(m.version):
                    continue
                if self._masked(m.name, m.repository, m.version):
                    continue
                if best is None or compare(m.version, best.version) > 0:
                    best = m
        if best is None:
            logger.debug("%s: no provider satisfies %s", virtual_name, c)
            return None
        logger.debug("%s: selected provider %s %s", virtual_name, best.name, best.version)
        return best.name

    def resolve_virtual_dependencies(self, deps: Iterable[DependencySpec]) -> List[DependencySpec]:
        """Rewrite capability names to providers; names without a provider pass through."""
        out: List[DependencySpec] = []
        for dep in deps:
            if not self.is_virtual(dep.name):
                out.append(dep)
                continue
            provider = self.select_provider(dep.name, dep.constraint)
            if provider is None:
                if self.providers(dep.name):
                    logger.warning("no usable provider of %s satisfies %s", dep.name, dep.constraint)
                out.append(dep)
            else:
                out.append(dep.renamed(provider))
        return out

    # -----------------------
    # Conflicts
    # -----------------------
    def check_conflicts(self, candidate_name: str, manifest: Manifest) -> List[Conflict]:
        found: List[Conflict] = []
        for name in manifest.conflicts:
            if name != candidate_name and self.installed.is_installed(name):
                found.append(Conflict(name, ConflictReason.EXPLICIT, ConflictAction.REMOVE, candidate_name))
        for name in manifest.replaces:
            if name != candidate_name and self.installed.is_installed(name):
                found.append(Conflict(name, ConflictReason.REPLACES, ConflictAction.REMOVE_THEN_CONTINUE,
                                      candidate_name))
        overlaps: Dict[str, List[str]] = {}
        for path, owners in self.installed.file_owners(manifest.files).items():
            for owner in owners:
                if owner != candidate_name:
                    overlaps.setdefault(owner, []).append(path)
        for owner, paths in overlaps.items():
            found.append(Conflict(owner, ConflictReason.FILE_OVERLAP, ConflictAction.FLAG, candidate_name,
                                  tuple(paths)))
        if found:
            logger.info("%s: %d conflict(s) with installed packages", candidate_name, len(found))
        return found

    def resolve_conflicts(self,
                          conflicts: List[Conflict],
                          force: bool = False,
                          chooser: Optional[Callable[[List[Conflict]], bool]] = None,
                          uninstall: Optional[Callable[[str], Any]] = None) -> bool:
        """
        Clear the blocking conflicts in `conflicts`.

        With force, every conflicting or replaced package is uninstalled.
        Otherwise `chooser` (an interactive prompt by default) decides; a
        refusal returns False and leaves installed state untouched. A failing
        removal raises UnresolvableConflict.
        """
        for c in conflicts:
            if not c.blocking:
                logger.warning("file overlap: %s", c)
        blocking = [c for c in conflicts if c.blocking]
        if not blocking:
            return True
        if not force:
            chooser = chooser or _confirm_removal
            if not chooser(blocking):
                logger.info("conflict removal declined for %s", ", ".join(sorted({c.package for c in blocking})))
                return False
        remove = uninstall or self.installed.remove
        done: List[str] = []
        for c in blocking:
            if c.package in done:
                continue
            try:
                remove(c.package)
            except (PkgletError, OSError) as e:
                raise UnresolvableConflict(c.candidate or "?", blocking, detail=f"removing {c.package}: {e}") from e
            logger.info("removed %s (%s of %s)", c.package, c.reason.value, c.candidate)
            done.append(c.package)
        return True

    def audit_file_overlaps(self) -> List[Conflict]:
        """Paths owned by several installed packages, grouped per owner pair."""
        pairs: Dict[Tuple[str, str], List[str]] = {}
        for path, owners in self.installed.file_owners().items():
            if len(owners) < 2:
                continue
            for other in owners[1:]:
                pairs.setdefault((owners[0], other), []).append(path)
        return [Conflict(other, ConflictReason.FILE_OVERLAP, ConflictAction.FLAG, first, tuple(paths))
                for (first, other), paths in sorted(pairs.items())]

# ---------------------------
# Reporting
# ---------------------------
def export_report(conflicts: List[Conflict], fmt: str = "json", path: Optional[str] = None) -> str:
    """Write conflicts as JSON or YAML; returns the file path."""
    if fmt not in ("json", "yaml"):
        raise ValueError(f"unsupported report format: {fmt}")
    if not path:
        report_dir = config.get("conflicts.report_dir")
        os.makedirs(report_dir, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S")
        path = os.path.join(report_dir, f"conflicts-{stamp}.{fmt}")
    data = [c.to_dict() for c in conflicts]
    with open(path, "w", encoding="utf-8") as f:
        if fmt == "json":
            json.dump(data, f, indent=2, ensure_ascii=False)
        else:
            yaml.safe_dump(data, f, sort_keys=False)
    logger.info("conflict report written to %s", path)
    return path
