# pkglet/modules/cli.py
"""
pkglet CLI - front end over the resolution engine

- every subcommand delegates to one engine module
- plans, conflicts and listings are rendered as rich tables
- nothing is fetched, built or installed here: `resolve` prints the plan
- engine errors (PkgletError) are printed in red and exit with status 1
"""

from __future__ import annotations

import os
import sys
import argparse
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from pkglet import __version__
from pkglet.modules import config
from pkglet.modules.catalog import add_repo, get_catalog, remove_repo
from pkglet.modules.conflicts import ConflictDetector, export_report
from pkglet.modules.errors import PkgletError
from pkglet.modules.installed import get_installed
from pkglet.modules.logging import get_logger
from pkglet.modules.masks import get_masks
from pkglet.modules.meta import Manifest, ManifestLoader, describe
from pkglet.modules.pins import get_pins
from pkglet.modules.resolver import Plan, Resolver, export_graphviz, write_lockfile

logger = get_logger("cli")
console = Console()

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")


def print_err(msg: str):
    console.print(f"[bold red]✖ {msg}[/]")


def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# CLI Implementation
# -----------------------
class PkgletCLI:
    def __init__(self):
        self.catalog = get_catalog()
        self.installed = get_installed()
        self.masks = get_masks()
        self.pins = get_pins()
        self.detector = ConflictDetector(self.catalog, self.installed, self.masks)
        self.resolver = Resolver(self.catalog, self.installed, self.pins, self.masks, self.detector)

    def _root(self, target: str):
        # a manifest file on disk, otherwise a dependency string against the catalog
        if os.path.isfile(target):
            return ManifestLoader().load(target)
        return target

    def _manifest(self, target: str) -> Manifest:
        root = self._root(target)
        return root if isinstance(root, Manifest) else self.catalog.load(root)

    def _print_plan(self, plan: Plan, title: str):
        if not plan:
            print_ok("nothing to do")
            return
        table = Table(title=title)
        table.add_column("#", justify="right")
        table.add_column("Package")
        table.add_column("Version")
        table.add_column("Repository")
        table.add_column("Reason")
        for i, e in enumerate(plan, 1):
            table.add_row(str(i), e.name, e.version, e.repository or "", e.reason)
        console.print(table)

    def resolve(self, target: str, force: bool = False, with_optional: bool = False,
                lockfile: Optional[str] = None, dot: Optional[str] = None):
        root = self._root(target)
        plan = self.resolver.resolve_install(root, force=force)
        if with_optional:
            extra = self.resolver.resolve_optional(root, planned=plan)
            plan = Plan(plan.entries + extra.entries, plan.edges + extra.edges)
        self._print_plan(plan, f"Install plan for {target}")
        if lockfile:
            print_ok(f"lockfile written: {write_lockfile(plan, lockfile)}")
        if dot:
            export_graphviz(plan, dot)
            print_ok(f"graph written: {dot}")

    def optional(self, target: str):
        self._print_plan(self.resolver.resolve_optional(self._root(target)), f"Optional dependencies of {target}")

    def conflicts(self, target: str, report: Optional[str] = None) -> int:
        m = self._manifest(target)
        found = self.detector.check_conflicts(m.name, m)
        if not found:
            print_ok(f"{m.name} {m.version}: no conflicts")
            return 0
        table = Table(title=f"Conflicts for {m.name} {m.version}")
        table.add_column("Installed")
        table.add_column("Reason")
        table.add_column("Action")
        table.add_column("Paths")
        for c in found:
            table.add_row(c.package, c.reason.value, c.action.value, ", ".join(c.paths))
        console.print(table)
        if report:
            print_ok(f"report written: {export_report(found, fmt=report)}")
        return 1 if any(c.blocking for c in found) else 0

    def provider(self, virtual: str, constraint: str = "*") -> int:
        chosen = self.detector.select_provider(virtual, constraint)
        candidates = self.detector.providers(virtual)
        if chosen is None:
            print_warn(f"no provider of {virtual} satisfies '{constraint}'"
                       + (f" (providers: {', '.join(candidates)})" if candidates else ""))
            return 1
        print_ok(f"{virtual} -> {chosen}")
        return 0

    def info(self, target: str):
        m = self._manifest(target)
        console.print(describe(m))
        versions = self.catalog.available_versions(m.name)
        if versions:
            print_info("Available: " + ", ".join(versions))
        current = self.installed.installed_version(m.name)
        if current:
            print_info(f"Installed: {current}")

    def search(self, pattern: str):
        results = self.catalog.search(pattern)
        if not results:
            print_warn(f"no package matches '{pattern}'")
            return
        table = Table(title=f"Search: {pattern}")
        table.add_column("Package")
        table.add_column("Version")
        table.add_column("Repository")
        table.add_column("Description")
        table.add_column("State")
        for r in results:
            state = []
            if r["installed"]:
                state.append(f"installed {r['installed']}")
            if r["masked"]:
                state.append("[red]masked[/red]")
            table.add_row(r["name"], r["version"], r["repository"], r["description"], ", ".join(state))
        console.print(table)

    def list_installed(self):
        table = Table(title="Installed packages")
        table.add_column("Package")
        table.add_column("Version")
        table.add_column("Files", justify="right")
        table.add_column("Repository")
        for rec in self.installed.list_installed():
            table.add_row(rec.name, rec.version, str(len(rec.owned_files)), rec.repository or "")
        console.print(table)

    def owner(self, path: str) -> int:
        owners = self.installed.who_owns(path)
        if not owners:
            print_warn(f"{path} is not owned by any installed package")
            return 1
        for name in owners:
            console.print(f"{path}: {name} {self.installed.installed_version(name)}")
        return 0

    def audit(self) -> int:
        overlaps = self.detector.audit_file_overlaps()
        if not overlaps:
            print_ok("no file owned by more than one package")
            return 0
        for c in overlaps:
            print_warn(str(c))
        return 1

    def list_masks(self):
        table = Table(title="Masks")
        for col in ("ID", "Pattern", "Repository", "Versions", "Reason", "Source"):
            table.add_column(col)
        for m in self.masks.list_masks():
            table.add_row(str(m["id"] or ""), m["name_pattern"], m["repository"] or "", m["version_rule"],
                          m["reason"] or "", m["source"])
        console.print(table)

    def list_pins(self):
        for name, version in sorted(self.pins.list_pins().items()):
            console.print(f"{name} {version}")

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="pkglet", description="pkglet dependency resolver")
    ap.add_argument("--config", help="configuration file")
    ap.add_argument("--version", action="version", version=f"pkglet {__version__}")
    sub = ap.add_subparsers(dest="cmd")

    p_resolve = sub.add_parser("resolve", help="print the install plan for a package")
    p_resolve.add_argument("package", help="name, name<op>version or path to a manifest")
    p_resolve.add_argument("--force", action="store_true", help="plan the package even if installed")
    p_resolve.add_argument("--with-optional", action="store_true", help="include optional dependencies")
    p_resolve.add_argument("--lockfile", help="write the plan as a JSON lockfile")
    p_resolve.add_argument("--dot", help="write the dependency graph as Graphviz DOT")

    p_optional = sub.add_parser("optional", help="plan optional dependencies")
    p_optional.add_argument("package")

    p_conflicts = sub.add_parser("conflicts", help="check a package against the installed set")
    p_conflicts.add_argument("package")
    p_conflicts.add_argument("--report", choices=["json", "yaml"])

    p_provider = sub.add_parser("provider", help="select a provider for a virtual package")
    p_provider.add_argument("virtual")
    p_provider.add_argument("constraint", nargs="?", default="*")

    p_info = sub.add_parser("info")
    p_info.add_argument("package")

    p_search = sub.add_parser("search")
    p_search.add_argument("pattern")

    p_pin = sub.add_parser("pin")
    p_pin.add_argument("package", nargs="?")
    p_pin.add_argument("version", nargs="?")

    p_unpin = sub.add_parser("unpin")
    p_unpin.add_argument("package")

    p_mask = sub.add_parser("mask")
    p_mask.add_argument("pattern", nargs="?", help="name, glob or re:regex; repo/name scopes to a repository")
    p_mask.add_argument("--versions", default="*", help="constraint selecting masked versions")
    p_mask.add_argument("--reason")

    p_unmask = sub.add_parser("unmask")
    p_unmask.add_argument("pattern")

    sub.add_parser("installed")

    p_owner = sub.add_parser("owner")
    p_owner.add_argument("path")

    sub.add_parser("audit", help="report files owned by several packages")

    p_repo = sub.add_parser("repo")
    repo_sub = p_repo.add_subparsers(dest="repo_cmd")
    p_repo_add = repo_sub.add_parser("add")
    p_repo_add.add_argument("name")
    p_repo_add.add_argument("location")
    p_repo_add.add_argument("--priority", type=int, default=0)
    p_repo_rm = repo_sub.add_parser("remove")
    p_repo_rm.add_argument("name")

    return ap


def _split_repo(pattern: str):
    if "/" in pattern and not pattern.startswith("re:"):
        repo, name = pattern.split("/", 1)
        return repo, name
    return None, pattern


def run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.cmd is None:
        parser.print_help()
        return 0
    if args.cmd == "repo":
        if args.repo_cmd == "add":
            repo = add_repo(args.name, args.location, priority=args.priority)
            print_ok(f"repository {repo.name} added ({repo.kind}, priority {repo.priority})")
        elif args.repo_cmd == "remove":
            if not remove_repo(args.name):
                print_warn(f"repository {args.name} is not in {config.get('repos_conf')}")
                return 1
            print_ok(f"repository {args.name} removed")
        else:
            parser.print_help()
        return 0

    cli = PkgletCLI()
    if args.cmd == "resolve":
        cli.resolve(args.package, force=args.force, with_optional=args.with_optional,
                    lockfile=args.lockfile, dot=args.dot)
    elif args.cmd == "optional":
        cli.optional(args.package)
    elif args.cmd == "conflicts":
        return cli.conflicts(args.package, report=args.report)
    elif args.cmd == "provider":
        return cli.provider(args.virtual, args.constraint)
    elif args.cmd == "info":
        cli.info(args.package)
    elif args.cmd == "search":
        cli.search(args.pattern)
    elif args.cmd == "pin":
        if args.package is None:
            cli.list_pins()
        elif args.version is None:
            parser.error("pin needs a version")
        else:
            cli.pins.pin(args.package, args.version)
            print_ok(f"{args.package} pinned to {args.version}")
    elif args.cmd == "unpin":
        if not cli.pins.unpin(args.package):
            print_warn(f"{args.package} has no pin in the database")
            return 1
        print_ok(f"{args.package} unpinned")
    elif args.cmd == "mask":
        if args.pattern is None:
            cli.list_masks()
        else:
            repo, name = _split_repo(args.pattern)
            rec = cli.masks.add_mask(name, version_rule=args.versions, repository=repo, reason=args.reason)
            print_ok(f"mask {rec.id} added: {rec!r}")
    elif args.cmd == "unmask":
        repo, name = _split_repo(args.pattern)
        removed = cli.masks.unmask(name, repository=repo)
        if not removed:
            print_warn(f"no persisted mask for {args.pattern}")
            return 1
        print_ok(f"{removed} mask(s) removed")
    elif args.cmd == "installed":
        cli.list_installed()
    elif args.cmd == "owner":
        return cli.owner(args.path)
    elif args.cmd == "audit":
        return cli.audit()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if args.config:
        config.reload(args.config)
    try:
        code = run(args, parser)
    except PkgletError as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print_err(str(e))
        code = 1
    except ValueError as e:
        print_err(str(e))
        code = 1
    return code


if __name__ == "__main__":
    sys.exit(main())
