# pkglet/modules/resolver.py
"""
resolver.py - dependency resolver for pkglet

Features:
- Greedy resolution: highest satisfying version, first success wins, no backtracking
- Ordered install plan built post-order (dependencies precede dependents)
- Cycle/diamond guard threaded through the walk as an immutable value, so
  one resolution never shares mutable state with another
- depends/build_depends/optional_depends merged per name (last kind wins,
  or DependencyKindConflict with resolver.strict_kinds)
- Virtual dependencies rewritten to providers before version selection
- Installed dependencies are verified, not reinstalled; an optional
  dependency mismatch only warns
- Pins (direct installs always, transitive with resolver.pins_transitive)
- Masks enforced at every candidate-selection point
- Separate optional pass: resolve_optional()
- Lockfile (JSON) read/write and Graphviz DOT export of the plan
"""

from __future__ import annotations

import os
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, NamedTuple, Optional, Tuple, Union

from pkglet.modules import config
from pkglet.modules.catalog import RepositoryCatalog, get_catalog, split_qualified
from pkglet.modules.conflicts import ConflictDetector
from pkglet.modules.errors import (
    DependencyKindConflict,
    InstalledVersionMismatch,
    PackageMasked,
    ResolutionError,
    UnsatisfiableConstraint,
)
from pkglet.modules.installed import InstalledStore, get_installed
from pkglet.modules.logging import get_logger
from pkglet.modules.masks import MasksManager, get_masks
from pkglet.modules.meta import DependencyKind, DependencySpec, Manifest
from pkglet.modules.pins import PinStore, get_pins
from pkglet.modules.version import compare, highest_satisfying

logger = get_logger("resolver")

LOCKFILE_VERSION = 1

# -----------------------
# Plan
# -----------------------
@dataclass(frozen=True)
class PlanEntry:
    name: str
    version: str
    repository: Optional[str] = None
    reason: str = "dependency"  # root | dependency | optional

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "version": self.version, "repository": self.repository, "reason": self.reason}


class Edge(NamedTuple):
    dependent: str
    dependency: str
    kind: str


@dataclass(frozen=True)
class Plan:
    """Ordered, duplicate-free install plan. Consumers install entries strictly in order."""

    entries: Tuple[PlanEntry, ...] = ()
    edges: Tuple[Edge, ...] = ()

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: object) -> bool:
        return any(e.name == name for e in self.entries)

    def names(self) -> List[str]:
        return [e.name for e in self.entries]

    def index(self, name: str) -> int:
        return self.names().index(name)

    def version_of(self, name: str) -> Optional[str]:
        for e in self.entries:
            if e.name == name:
                return e.version
        return None

    def pairs(self) -> List[Tuple[str, str]]:
        return [(e.name, e.version) for e in self.entries]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packages": [e.to_dict() for e in self.entries],
            "edges": [list(e) for e in self.edges],
        }


class _Walk(NamedTuple):
    """Accumulator threaded through one resolution; never mutated in place."""

    visited: FrozenSet[str]
    decided: Mapping[str, str]
    entries: Tuple[PlanEntry, ...]
    edges: Tuple[Edge, ...]

    @classmethod
    def start(cls, visited: FrozenSet[str] = frozenset()) -> "_Walk":
        return cls(visited, {}, (), ())

    @classmethod
    def seeded(cls, plan: "Plan") -> "_Walk":
        """Start from the decisions already taken in `plan`."""
        return cls(frozenset(plan.names()), {e.name: e.version for e in plan}, (), ())

    def visit(self, m: Manifest) -> "_Walk":
        return self._replace(visited=self.visited | {m.name}, decided={**self.decided, m.name: m.version})

    def plan(self, entry: PlanEntry) -> "_Walk":
        return self._replace(entries=self.entries + (entry,))

    def edge(self, dependent: str, dep: DependencySpec) -> "_Walk":
        return self._replace(edges=self.edges + (Edge(dependent, split_qualified(dep.name)[1], dep.kind.value),))

    def to_plan(self) -> Plan:
        return Plan(self.entries, self.edges)

# -----------------------
# Resolver
# -----------------------
class Resolver:
    def __init__(self,
                 catalog: Optional[RepositoryCatalog] = None,
                 installed: Optional[InstalledStore] = None,
                 pins: Optional[PinStore] = None,
                 masks: Optional[MasksManager] = None,
                 detector: Optional[ConflictDetector] = None,
                 cfg: Optional[Dict[str, Any]] = None):
        self._cfg = cfg if cfg is not None else (config.get("resolver") or {})
        self.catalog = catalog or get_catalog()
        self.installed = installed or get_installed()
        self.pins = pins or get_pins()
        self.masks = masks or get_masks()
        self.detector = detector or ConflictDetector(self.catalog, self.installed, self.masks)
        self.pins_transitive = bool(self._cfg.get("pins_transitive", True))
        self.strict_kinds = bool(self._cfg.get("strict_kinds", False))
        self.max_depth = int(self._cfg.get("max_depth", 256))

    # -----------------------
    # Dependency view
    # -----------------------
    def merge_dependencies(self, manifest: Manifest) -> List[DependencySpec]:
        """
        One DependencySpec per name across depends, build_depends and
        optional_depends, processed in that order. A name listed under
        several kinds keeps the later kind and constraint.
        """
        merged: Dict[str, DependencySpec] = {}
        for kind in (DependencyKind.REQUIRED, DependencyKind.BUILD_ONLY, DependencyKind.OPTIONAL):
            for dep in manifest.dependencies(kind):
                prev = merged.get(dep.name)
                if prev is not None and prev.kind is not dep.kind:
                    if self.strict_kinds:
                        raise DependencyKindConflict(manifest.name, dep.name, [prev.kind.value, dep.kind.value])
                    logger.warning("%s: %s listed as %s and %s; using %s '%s'", manifest.name, dep.name,
                                   prev.kind.value, dep.kind.value, dep.kind.value, dep.constraint)
                merged[dep.name] = dep
        return list(merged.values())

    # -----------------------
    # Candidate selection
    # -----------------------
    def _select(self, dep: DependencySpec, required_by: Optional[str], direct: bool = False) -> Manifest:
        repo, name = split_qualified(dep.name)
        published = self.catalog.manifests(dep.name)
        if not published:
            if self.detector.providers(name):
                detail = "virtual package; no installable provider satisfies it"
            elif self.detector.is_virtual(name):
                detail = "not published by any repository and no package provides it"
            else:
                detail = "not published by any repository"
            raise UnsatisfiableConstraint(dep.name, dep.constraint, required_by, detail)

        matching = [m for m in published if dep.constraint.matches(m.version)]
        pinned = self.pins.pinned_version(name) if (direct or self.pins_transitive) else None
        if pinned is not None:
            matching = [m for m in matching if compare(m.version, pinned) == 0]
            if not matching:
                raise UnsatisfiableConstraint(dep.name, dep.constraint, required_by,
                                              f"pinned to {pinned}, which is unpublished or outside the constraint")
            logger.debug("%s: using pinned version %s", name, pinned)
        if not matching:
            raise UnsatisfiableConstraint(dep.name, dep.constraint, required_by,
                                          "published: " + ", ".join(self.catalog.available_versions(dep.name)))

        # no history writes here; InstallTransaction records mask_blocked
        allowed: List[Manifest] = []
        for m in matching:
            if self.masks.is_masked(m.name, repository=m.repository, version=m.version):
                logger.info("skipping masked %s %s from %s", m.name, m.version, m.repository)
            else:
                allowed.append(m)
        if not allowed:
            first = matching[0]
            raise PackageMasked(name, self.masks.get_mask_reason(first.name, first.repository, first.version),
                                repo or first.repository)

        best = highest_satisfying((m.version for m in allowed), dep.constraint)
        for chosen in allowed:
            if compare(chosen.version, best) == 0:
                logger.debug("selected %s %s from %s for %s", chosen.name, chosen.version, chosen.repository,
                             required_by or "request")
                return chosen
        raise UnsatisfiableConstraint(dep.name, dep.constraint, required_by)

    def _check_installed(self, dep: DependencySpec, version: str, required_by: str) -> None:
        if dep.constraint.matches(version):
            return
        if dep.kind is DependencyKind.OPTIONAL:
            logger.warning("%s: installed %s %s does not satisfy optional '%s'", required_by, dep.name, version,
                           dep.constraint)
            return
        raise InstalledVersionMismatch(dep.name, version, dep.constraint, required_by)

    # -----------------------
    # Walk
    # -----------------------
    def _needs_install(self, m: Manifest, force: bool) -> bool:
        current = self.installed.installed_version(m.name)
        return force or current is None or compare(current, m.version) != 0

    def _follow(self, dep: DependencySpec, walk: _Walk, parent: Manifest, depth: int) -> _Walk:
        decided = walk.decided.get(split_qualified(dep.name)[1])
        if decided is not None:
            # no backtracking: an earlier decision must also satisfy this edge
            if not dep.constraint.matches(decided):
                raise UnsatisfiableConstraint(dep.name, dep.constraint, parent.name,
                                              f"{decided} was already selected")
            return walk.edge(parent.name, dep)
        child = self._select(dep, parent.name)
        walk = self._walk(child, walk, depth + 1, force=False)
        return walk.edge(parent.name, dep)

    def _walk(self, m: Manifest, walk: _Walk, depth: int, force: bool, reason: str = "dependency") -> _Walk:
        if m.name in walk.visited:
            return walk
        if depth > self.max_depth:
            raise ResolutionError(f"dependency chain through {m.name} is deeper than {self.max_depth}")
        walk = walk.visit(m)
        deps = self.detector.resolve_virtual_dependencies(self.merge_dependencies(m))
        for dep in deps:
            if split_qualified(dep.name)[1] == m.name:
                continue
            current = self.installed.installed_version(split_qualified(dep.name)[1])
            if current is not None:
                self._check_installed(dep, current, m.name)
                continue
            if dep.kind is DependencyKind.OPTIONAL:
                continue
            walk = self._follow(dep, walk, m, depth)
        if self._needs_install(m, force):
            walk = walk.plan(PlanEntry(m.name, m.version, m.repository, reason))
        return walk

    def _root(self, root: Union[Manifest, str]) -> Manifest:
        if isinstance(root, Manifest):
            if self.masks.is_masked(root.name, repository=root.repository, version=root.version):
                raise PackageMasked(root.name, self.masks.get_mask_reason(root.name, root.repository, root.version),
                                    root.repository)
            return root
        return self._select(DependencySpec.from_entry(root), None, direct=True)

    # -----------------------
    # Public API
    # -----------------------
    def resolve_install(self, root: Union[Manifest, str], force: bool = False) -> Plan:
        """
        Ordered plan for installing `root` (a Manifest, or a dependency
        string such as "nginx>=1.20" resolved against the catalog).

        Installed dependencies are kept when they satisfy their constraint.
        `force` re-plans the root even if that exact version is installed.
        """
        m = self._root(root)
        started = time.time()
        plan = self._walk(m, _Walk.start(), 0, force, reason="root").to_plan()
        logger.info("resolved %s %s: %d package(s) to install in %.3fs", m.name, m.version, len(plan),
                    time.time() - started)
        return plan

    def resolve_optional(self, root: Union[Manifest, str], planned: Optional[Plan] = None) -> Plan:
        """
        Plan for the optional dependencies of `root` that are not installed,
        each preceded by whatever it requires. The root itself is excluded.

        With `planned` (the resolve_install() plan for the same root) its
        decisions stand: its entries are not repeated, and an optional
        package that needs a different version of one of them fails with
        UnsatisfiableConstraint.
        """
        m = self._root(root)
        walk = (_Walk.seeded(planned) if planned is not None else _Walk.start()).visit(m)
        for dep in self.detector.resolve_virtual_dependencies(m.optional_depends):
            current = self.installed.installed_version(split_qualified(dep.name)[1])
            if current is not None:
                self._check_installed(dep, current, m.name)
                continue
            decided = walk.decided.get(split_qualified(dep.name)[1])
            if decided is not None:
                if not dep.constraint.matches(decided):
                    raise UnsatisfiableConstraint(dep.name, dep.constraint, m.name, f"{decided} was already selected")
                continue
            child = self._select(dep, m.name)
            walk = self._walk(child, walk, 1, force=False, reason="optional").edge(m.name, dep)
        plan = walk.to_plan()
        logger.info("optional dependencies of %s: %d package(s)", m.name, len(plan))
        return plan

# -----------------------
# Lockfile / Graphviz
# -----------------------
def write_lockfile(plan: Plan, path: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """Write the plan, in install order, as a JSON lockfile."""
    lock = {
        "lockfile_version": LOCKFILE_VERSION,
        "resolution_id": str(uuid.uuid4()),
        "timestamp": int(time.time()),
        "packages": [e.to_dict() for e in plan.entries],
        "edges": [list(e) for e in plan.edges],
        "metadata": metadata or {},
    }
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(lock, f, indent=2, ensure_ascii=False)
    logger.info("lockfile written to %s", path)
    return path


def read_lockfile(path: str) -> Plan:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if data.get("lockfile_version") != LOCKFILE_VERSION:
        raise ValueError(f"{path}: unsupported lockfile version {data.get('lockfile_version')!r}")
    entries = tuple(PlanEntry(p["name"], p["version"], p.get("repository"), p.get("reason", "dependency"))
                    for p in data.get("packages", []))
    edges = tuple(Edge(*e) for e in data.get("edges", []))
    return Plan(entries, edges)


def export_graphviz(plan: Plan, path: Optional[str] = None) -> str:
    """DOT digraph of the plan; dependents point at their dependencies. Written to `path` if given."""
    lines = ["digraph deps {"]
    for e in plan.entries:
        lines.append(f'  "{e.name}" [label="{e.name}\\n{e.version}"];')
    planned = set(plan.names())
    for edge in plan.edges:
        if edge.dependent in planned and edge.dependency in planned:
            style = "" if edge.kind == DependencyKind.REQUIRED.value else " [style=dashed]"
            lines.append(f'  "{edge.dependent}" -> "{edge.dependency}"{style};')
    lines.append("}")
    dot = "\n".join(lines) + "\n"
    if path:
        with open(path, "w", encoding="utf-8") as f:
            f.write(dot)
    return dot

# -----------------------
# Module-level helpers
# -----------------------
_resolver: Optional[Resolver] = None


def get_resolver() -> Resolver:
    global _resolver
    if _resolver is None:
        _resolver = Resolver()
    return _resolver


def set_resolver(resolver: Optional[Resolver]) -> None:
    global _resolver
    _resolver = resolver


def resolve_install(root: Union[Manifest, str], force: bool = False) -> Plan:
    return get_resolver().resolve_install(root, force=force)


def resolve_optional(root: Union[Manifest, str], planned: Optional[Plan] = None) -> Plan:
    return get_resolver().resolve_optional(root, planned=planned)
