# pkglet/modules/meta.py
"""
meta.py - package manifest model, loader and validator

Features:
- Parse manifests in YAML/TOML/JSON (dispatch by suffix, YAML then TOML then JSON otherwise)
- Manifest: identity, classification metadata, depends/build_depends/optional_depends,
  conflicts, replaces, provides, files and options
- Dependency entries as strings ("zlib", "openssl>=1.1", "libfoo@^2.0") or mappings
  ({name: zlib, version: ">=1.2"})
- Validation: name, version, description and license are required; version must parse
- merge_options(): manifest defaults < configured package options < command line
- describe(): human readable summary
"""

from __future__ import annotations

import os
import json
import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

import toml
import yaml

from pkglet.modules import config
from pkglet.modules.errors import ManifestInvalid, MalformedVersion, NotFound
from pkglet.modules.logging import get_logger
from pkglet.modules.version import Constraint, Version, parse, parse_constraint, parse_dependency

logger = get_logger("meta")

REQUIRED_FIELDS = ("name", "version", "description", "license")

# -----------------------
# Data models
# -----------------------
class DependencyKind(enum.Enum):
    REQUIRED = "depends"
    BUILD_ONLY = "build_depends"
    OPTIONAL = "optional_depends"

    @property
    def list_name(self) -> str:
        return self.value


@dataclass(frozen=True)
class DependencySpec:
    name: str
    constraint: Constraint = field(default_factory=lambda: parse_constraint("*"))
    kind: DependencyKind = DependencyKind.REQUIRED

    @classmethod
    def from_entry(cls, entry: Any, kind: DependencyKind = DependencyKind.REQUIRED) -> "DependencySpec":
        """Build from "name<op>ver" strings or {name, version|constraint} mappings."""
        if isinstance(entry, DependencySpec):
            return replace(entry, kind=kind)
        if isinstance(entry, str):
            name, text = parse_dependency(entry)
            return cls(name=name, constraint=parse_constraint(text), kind=kind)
        if isinstance(entry, dict) and entry.get("name"):
            text = entry.get("version", entry.get("constraint", "*"))
            return cls(name=str(entry["name"]), constraint=parse_constraint(str(text)), kind=kind)
        raise ValueError(f"bad dependency entry: {entry!r}")

    def renamed(self, name: str) -> "DependencySpec":
        return replace(self, name=name)

    def __str__(self) -> str:
        c = str(self.constraint)
        return self.name if c == "*" else f"{self.name}{c}"


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    description: str = ""
    license: str = ""
    homepage: Optional[str] = None
    maintainer: Optional[str] = None
    depends: Tuple[DependencySpec, ...] = ()
    build_depends: Tuple[DependencySpec, ...] = ()
    optional_depends: Tuple[DependencySpec, ...] = ()
    conflicts: Tuple[str, ...] = ()
    replaces: Tuple[str, ...] = ()
    provides: Tuple[str, ...] = ()
    files: Tuple[str, ...] = ()
    options: Dict[str, Any] = field(default_factory=dict, compare=False)
    repository: Optional[str] = None
    source_path: Optional[str] = field(default=None, compare=False)

    @property
    def parsed_version(self) -> Version:
        return parse(self.version)

    @property
    def ident(self) -> str:
        return f"{self.name}-{self.version}"

    def dependencies(self, kind: DependencyKind) -> Tuple[DependencySpec, ...]:
        return getattr(self, kind.list_name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], repository: Optional[str] = None,
                  source: Optional[str] = None, strict: bool = True) -> "Manifest":
        """Build and validate a manifest from parsed data; raises ManifestInvalid."""
        where = source or str(data.get("name") or "<manifest>")
        problems = validate_data(data) if strict else []
        if problems:
            raise ManifestInvalid(where, problems)

        def deps(kind: DependencyKind) -> Tuple[DependencySpec, ...]:
            out = []
            for entry in data.get(kind.list_name) or []:
                try:
                    out.append(DependencySpec.from_entry(entry, kind))
                except (ValueError, MalformedVersion) as e:
                    raise ManifestInvalid(where, [f"{kind.list_name}: {e}"]) from e
            return tuple(out)

        def names(key: str) -> Tuple[str, ...]:
            val = data.get(key) or []
            if isinstance(val, str):
                val = [val]
            return tuple(str(v) for v in val)

        return cls(
            name=str(data["name"]),
            version=str(data["version"]),
            description=str(data.get("description") or ""),
            license=str(data.get("license") or ""),
            homepage=data.get("homepage"),
            maintainer=data.get("maintainer"),
            depends=deps(DependencyKind.REQUIRED),
            build_depends=deps(DependencyKind.BUILD_ONLY),
            optional_depends=deps(DependencyKind.OPTIONAL),
            conflicts=names("conflicts"),
            replaces=names("replaces"),
            provides=names("provides"),
            files=tuple(os.path.normpath(str(f)).lstrip("/") for f in data.get("files") or []),
            options=dict(data.get("options") or {}),
            repository=repository or data.get("repository"),
            source_path=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "license": self.license,
            "homepage": self.homepage,
            "maintainer": self.maintainer,
            "depends": [str(d) for d in self.depends],
            "build_depends": [str(d) for d in self.build_depends],
            "optional_depends": [str(d) for d in self.optional_depends],
            "conflicts": list(self.conflicts),
            "replaces": list(self.replaces),
            "provides": list(self.provides),
            "files": list(self.files),
            "options": dict(self.options),
            "repository": self.repository,
        }


def validate_data(data: Any) -> List[str]:
    """Return a list of problems; empty when the manifest is acceptable."""
    if not isinstance(data, dict):
        return ["manifest must be a mapping"]
    errors = [f"missing required field: {f}" for f in REQUIRED_FIELDS if not data.get(f)]
    if data.get("version"):
        try:
            parse(str(data["version"]))
        except MalformedVersion as e:
            errors.append(str(e))
    for key in ("depends", "build_depends", "optional_depends", "conflicts", "replaces", "provides", "files"):
        val = data.get(key)
        if val is not None and not isinstance(val, (list, tuple, str)):
            errors.append(f"{key} must be a list")
    if data.get("options") is not None and not isinstance(data["options"], dict):
        errors.append("options must be a mapping")
    return errors

# -----------------------
# ManifestLoader
# -----------------------
class ManifestLoader:
    """Reads manifest files from disk and turns them into Manifest values."""

    def __init__(self, strict: bool = True):
        self.strict = strict
        self.parsed_cache: Dict[Tuple[str, float], Manifest] = {}

    def _parse_file(self, path: str) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise NotFound(path) from e
        suffix = os.path.splitext(path)[1].lower()
        parsers = {
            ".yaml": (self._yaml,),
            ".yml": (self._yaml,),
            ".toml": (toml.loads,),
            ".json": (json.loads,),
        }.get(suffix, (self._yaml, toml.loads, json.loads))
        last_error: Optional[Exception] = None
        for parser in parsers:
            try:
                data = parser(text)
            except (yaml.YAMLError, toml.TomlDecodeError, ValueError) as e:
                last_error = e
                logger.debug("%s parse failed for %s", getattr(parser, "__name__", parser), path)
                continue
            if isinstance(data, dict):
                return data
        raise ManifestInvalid(path, [f"cannot parse manifest: {last_error or 'not a mapping'}"])

    @staticmethod
    def _yaml(text: str) -> Any:
        return yaml.safe_load(text)

    def load(self, path: str, repository: Optional[str] = None) -> Manifest:
        path = os.path.abspath(os.path.expanduser(path))
        try:
            mtime = os.stat(path).st_mtime
        except OSError as e:
            raise NotFound(path) from e
        key = (path, mtime)
        cached = self.parsed_cache.get(key)
        if cached is not None and cached.repository == repository:
            return cached
        manifest = Manifest.from_dict(self._parse_file(path), repository=repository, source=path, strict=self.strict)
        self.parsed_cache[key] = manifest
        return manifest

    def validate(self, path: str) -> Tuple[bool, List[str]]:
        try:
            data = self._parse_file(path)
        except ManifestInvalid as e:
            return False, e.problems
        problems = validate_data(data)
        return not problems, problems

# -----------------------
# Options
# -----------------------
_TRUE = {"1", "true", "yes", "on", "enable", "enabled"}
_FALSE = {"0", "false", "no", "off", "disable", "disabled"}


def _coerce(value: Any) -> Any:
    if isinstance(value, str):
        low = value.strip().lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
    return value


def merge_options(manifest: Manifest, package_options: Optional[Dict[str, Any]] = None,
                  cli_options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Effective build options for one package.

    Precedence is manifest defaults, then configured package options
    (package.opts/<name> when not given), then command line values.
    Unknown option names are kept but logged.
    """
    merged: Dict[str, Any] = {}
    for name, spec in (manifest.options or {}).items():
        merged[name] = _coerce(spec.get("default", False) if isinstance(spec, dict) else spec)
    if package_options is None:
        package_options = config.read_package_options(manifest.name)
    for layer in (package_options or {}, cli_options or {}):
        for name, value in layer.items():
            if name not in merged:
                logger.warning("%s: unknown option '%s'", manifest.name, name)
            merged[name] = _coerce(value)
    return merged


def describe(manifest: Manifest) -> str:
    lines = [
        f"Name:        {manifest.name}",
        f"Version:     {manifest.version}",
        f"Description: {manifest.description}",
    ]
    if manifest.maintainer:
        lines.append(f"Maintainer:  {manifest.maintainer}")
    lines.append(f"License:     {manifest.license}")
    if manifest.homepage:
        lines.append(f"Homepage:    {manifest.homepage}")
    if manifest.repository:
        lines.append(f"Repository:  {manifest.repository}")
    for label, deps in (("Depends", manifest.depends), ("Build deps", manifest.build_depends),
                        ("Optional", manifest.optional_depends)):
        if deps:
            lines.append(f"{label + ':':<13}" + ", ".join(str(d) for d in deps))
    for label, names in (("Conflicts", manifest.conflicts), ("Replaces", manifest.replaces),
                         ("Provides", manifest.provides)):
        if names:
            lines.append(f"{label + ':':<13}" + ", ".join(names))
    if manifest.options:
        lines.append("")
        lines.append("Options:")
        for name, spec in manifest.options.items():
            spec = spec if isinstance(spec, dict) else {"default": spec}
            default = "true" if _coerce(spec.get("default", False)) is True else str(spec.get("default", False)).lower()
            desc = spec.get("description", "")
            lines.append(f"  {name} (default: {default})" + (f" - {desc}" if desc else ""))
    return "\n".join(lines)
