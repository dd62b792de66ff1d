# pkglet/modules/transaction.py
"""
Install transactions.

An InstallTransaction resolves a root package, checks every plan entry
against the installed set, clears the blocking conflicts (forced or after
confirmation) and then hands each plan entry, in order, to a builder. The
builder returns the files it installed; an InstalledRecord is written for
each entry once its build succeeds. Command line options reach the root
package only; dependencies build with their manifest defaults and
package.opts.

Installs and uninstalls are serialized process-wide by one lock, so two
transactions never both decide that a conflicting package is absent.
Fetching and building are external: without a builder the manifest's own
file list is recorded.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pkglet.modules.conflicts import Conflict
from pkglet.modules.errors import NotFound, PackageMasked, UnresolvableConflict
from pkglet.modules.installed import InstalledRecord
from pkglet.modules.logging import get_logger
from pkglet.modules.meta import Manifest, merge_options
from pkglet.modules.resolver import Plan, PlanEntry, Resolver, get_resolver
from pkglet.modules.db import add_history

logger = get_logger("transaction")

Builder = Callable[[Manifest, Dict[str, Any]], Optional[Iterable[str]]]
Remover = Callable[[str, List[str]], Any]

_INSTALL_LOCK = threading.RLock()


class InstallTransaction:
    def __init__(self,
                 root: Union[Manifest, str],
                 resolver: Optional[Resolver] = None,
                 builder: Optional[Builder] = None,
                 remover: Optional[Remover] = None,
                 force: bool = False,
                 chooser: Optional[Callable[[List[Conflict]], bool]] = None,
                 with_optional: bool = False,
                 cli_options: Optional[Dict[str, Any]] = None):
        self.root = root
        self.resolver = resolver or get_resolver()
        self.builder = builder
        self.remover = remover
        self.force = force
        self.chooser = chooser
        self.with_optional = with_optional
        self.cli_options = cli_options or {}
        self.plan: Optional[Plan] = None
        self.conflicts: List[Conflict] = []

    @property
    def installed(self):
        return self.resolver.installed

    @property
    def detector(self):
        return self.resolver.detector

    def _manifest(self, entry: PlanEntry) -> Manifest:
        if isinstance(self.root, Manifest) and self.root.name == entry.name:
            return self.root
        m = self.resolver.catalog.find(entry.name, entry.version, entry.repository)
        if m is None:
            raise NotFound(entry.name, entry.version)
        return m

    def prepare(self) -> Plan:
        """Resolve the plan and collect conflicts; nothing is changed."""
        plan = self.resolver.resolve_install(self.root, force=self.force)
        if self.with_optional:
            extra = self.resolver.resolve_optional(self.root, planned=plan)
            plan = Plan(plan.entries + extra.entries, plan.edges + extra.edges)
        conflicts: List[Conflict] = []
        for entry in plan:
            conflicts.extend(self.detector.check_conflicts(entry.name, self._manifest(entry)))
        self.plan, self.conflicts = plan, conflicts
        return plan

    def _uninstall(self, name: str) -> Optional[InstalledRecord]:
        files = self.installed.owned_files(name)
        if self.remover is not None:
            self.remover(name, files)
        return self.installed.remove(name)

    def uninstall(self, name: str) -> Optional[InstalledRecord]:
        with _INSTALL_LOCK:
            return self._uninstall(name)

    def execute(self) -> List[InstalledRecord]:
        with _INSTALL_LOCK:
            try:
                plan = self.prepare()
            except PackageMasked as e:
                add_history(e.name, "mask_blocked", f"repository={e.repository} reason={e.reason}",
                            db=self.installed.db)
                raise
            root_name = next((e.name for e in plan if e.reason == "root"),
                             self.root.name if isinstance(self.root, Manifest) else str(self.root))
            if not self.detector.resolve_conflicts(self.conflicts, force=self.force, chooser=self.chooser,
                                                   uninstall=self._uninstall):
                raise UnresolvableConflict(root_name, [c for c in self.conflicts if c.blocking],
                                           detail="removal declined")
            done: List[InstalledRecord] = []
            for entry in plan:
                manifest = self._manifest(entry)
                options = merge_options(manifest, cli_options=self.cli_options if entry.reason == "root" else None)
                files = self.builder(manifest, options) if self.builder is not None else None
                record = InstalledRecord(
                    name=entry.name,
                    version=entry.version,
                    owned_files=tuple(manifest.files if files is None else files),
                    repository=entry.repository,
                )
                done.append(self.installed.record_install(record))
                logger.info("installed %s %s (%d/%d)", entry.name, entry.version, len(done), len(plan))
            if done:
                add_history(root_name, "transaction", f"{len(done)} package(s)", db=self.installed.db)
            return done


def install(root: Union[Manifest, str], **kwargs: Any) -> List[InstalledRecord]:
    return InstallTransaction(root, **kwargs).execute()
