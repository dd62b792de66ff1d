# pkglet/modules/errors.py
"""
Error taxonomy for the resolution engine.

Every failure raised by the engine derives from PkgletError so callers can
catch one type at the boundary. Resolution is all-or-nothing: an exception
raised anywhere in a resolution call aborts the whole call.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PkgletError(Exception):
    """Base class for every pkglet failure."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class MalformedVersion(PkgletError, ValueError):
    """Version string without a leading numeric major[.minor[.patch]]."""

    def __init__(self, text: Any, reason: str = "no leading numeric version"):
        self.text = text
        super().__init__(f"malformed version {text!r}: {reason}")


class MalformedConstraint(MalformedVersion):
    """Constraint expression that cannot be parsed."""

    def __init__(self, text: Any, reason: str = "unrecognized constraint"):
        self.text = text
        PkgletError.__init__(self, f"malformed constraint {text!r}: {reason}")


# ---------------------------------------------------------------------
# Manifest loading
# ---------------------------------------------------------------------
class ManifestError(PkgletError):
    pass


class NotFound(ManifestError):
    def __init__(self, name: str, version: Optional[str] = None):
        self.name = name
        self.version = version
        what = f"{name} {version}" if version else name
        super().__init__(f"package not found: {what}")


class ManifestInvalid(ManifestError):
    def __init__(self, source: str, problems: List[str]):
        self.source = source
        self.problems = list(problems)
        super().__init__(f"invalid manifest {source}: " + "; ".join(self.problems))


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------
class ResolutionError(PkgletError):
    pass


class UnsatisfiableConstraint(ResolutionError):
    def __init__(self, name: str, constraint: Any, required_by: Optional[str] = None, detail: Optional[str] = None):
        self.name = name
        self.constraint = str(constraint)
        self.required_by = required_by
        msg = f"no version of {name} satisfies '{self.constraint}'"
        if required_by:
            msg += f" (required by {required_by})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class InstalledVersionMismatch(ResolutionError):
    def __init__(self, name: str, installed: str, constraint: Any, required_by: Optional[str] = None):
        self.name = name
        self.installed = installed
        self.constraint = str(constraint)
        self.required_by = required_by
        msg = f"installed {name} {installed} does not satisfy '{self.constraint}'"
        if required_by:
            msg += f" (required by {required_by})"
        super().__init__(msg)


class PackageMasked(ResolutionError):
    def __init__(self, name: str, reason: Optional[str] = None, repository: Optional[str] = None):
        self.name = name
        self.reason = reason
        self.repository = repository
        what = f"{repository}/{name}" if repository else name
        super().__init__(f"package is masked: {what}" + (f" ({reason})" if reason else ""))


class DependencyKindConflict(ResolutionError):
    def __init__(self, package: str, dependency: str, kinds: List[str]):
        self.package = package
        self.dependency = dependency
        self.kinds = list(kinds)
        super().__init__(f"{package} lists {dependency} under several dependency kinds: {', '.join(self.kinds)}")


# ---------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------
class UnresolvableConflict(PkgletError):
    def __init__(self, package: str, conflicts: List[Any], detail: Optional[str] = None):
        self.package = package
        self.conflicts = list(conflicts)
        names = ", ".join(sorted({getattr(c, "package", str(c)) for c in self.conflicts}))
        msg = f"cannot install {package}: conflicts with {names}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
