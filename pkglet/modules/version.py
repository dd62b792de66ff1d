# pkglet/modules/version.py
"""
version.py - version parsing, precedence and constraint evaluation for pkglet

Features:
- Version: immutable major.minor.patch[-prerelease][+build]; minor/patch default to 0
- Precedence: numeric triple, then "no prerelease" outranks any prerelease, then
  dot-separated prerelease identifiers (numeric < alphanumeric, numeric compared
  numerically, alphanumeric compared lexically, shorter prefix is lower)
- Build metadata never participates in ordering or equality
- Constraints:
    *                      anything
    =V ==V !=V <V <=V >V >=V   comparison against V
    ^V                     caret range: < next breaking change (leftmost nonzero component)
    ~V                     tilde range: < next minor (next major if only a major was given)
    N.* / N.M.*            wildcard pattern
    V                      bare version: exact match
    A, B                   conjunction: every part must hold
- highest_satisfying: linear scan keeping the first maximal satisfying version
- Dependency strings: "name", "name>=1.0", "name@^2.0", "name 1.2.3"
"""

from __future__ import annotations

import re
import enum
import functools
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from pkglet.modules.errors import MalformedConstraint, MalformedVersion

_VERSION_RE = re.compile(
    r"^(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)

# -----------------------
# Version
# -----------------------
@functools.total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int = 0
    patch: int = 0
    prerelease: Tuple[str, ...] = ()
    build: Optional[str] = field(default=None, compare=False)
    original: str = field(default="", compare=False)
    # numeric components present in the source text (1-3)
    precision: int = field(default=3, compare=False)

    @property
    def release(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return compare(self, other) < 0

    def __str__(self) -> str:
        return self.original or self.normalized()

    def normalized(self) -> str:
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            s += "-" + ".".join(self.prerelease)
        if self.build:
            s += "+" + self.build
        return s


VersionLike = Union[str, Version]


@functools.lru_cache(maxsize=4096)
def _parse_cached(text: str) -> Version:
    m = _VERSION_RE.match(text)
    if not m:
        raise MalformedVersion(text)
    pre = m.group("pre")
    prerelease: Tuple[str, ...] = ()
    if pre:
        # numeric identifiers are normalized so equality agrees with precedence
        prerelease = tuple(str(int(p)) if p.isdigit() else p for p in pre.split("."))
    return Version(
        major=int(m.group("major")),
        minor=int(m.group("minor") or 0),
        patch=int(m.group("patch") or 0),
        prerelease=prerelease,
        build=m.group("build"),
        original=text,
        precision=1 + (m.group("minor") is not None) + (m.group("patch") is not None),
    )


def parse(text: VersionLike) -> Version:
    """Parse a version string; raises MalformedVersion."""
    if isinstance(text, Version):
        return text
    if not isinstance(text, str):
        raise MalformedVersion(text, "version must be a string")
    return _parse_cached(text.strip())


def _compare_prerelease(a: Sequence[str], b: Sequence[str]) -> int:
    for x, y in zip(a, b):
        if x == y:
            continue
        xnum, ynum = x.isdigit(), y.isdigit()
        if xnum and ynum:
            return -1 if int(x) < int(y) else 1
        if xnum != ynum:
            return -1 if xnum else 1
        return -1 if x.encode() < y.encode() else 1
    if len(a) != len(b):
        return -1 if len(a) < len(b) else 1
    return 0


def compare(a: VersionLike, b: VersionLike) -> int:
    """Return -1, 0 or 1 as a has lower, equal or higher precedence than b."""
    va, vb = parse(a), parse(b)
    if va.release != vb.release:
        return -1 if va.release < vb.release else 1
    if not va.prerelease and not vb.prerelease:
        return 0
    if not va.prerelease:
        return 1
    if not vb.prerelease:
        return -1
    return _compare_prerelease(va.prerelease, vb.prerelease)


def sort_versions(versions: Iterable[VersionLike], reverse: bool = False) -> List[Version]:
    """Stable sort by precedence (ascending unless reverse)."""
    return sorted((parse(v) for v in versions), reverse=reverse)

# -----------------------
# Constraints
# -----------------------
class Op(enum.Enum):
    EQ = "="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="

    def test(self, cmp: int) -> bool:
        return {
            Op.EQ: cmp == 0,
            Op.NE: cmp != 0,
            Op.LT: cmp < 0,
            Op.LE: cmp <= 0,
            Op.GT: cmp > 0,
            Op.GE: cmp >= 0,
        }[self]


_OP_ALIASES = {"==": Op.EQ, "=": Op.EQ, "!=": Op.NE, "≠": Op.NE, "<=": Op.LE, "≤": Op.LE,
               ">=": Op.GE, "≥": Op.GE, "<": Op.LT, ">": Op.GT}
_OP_RE = re.compile(r"^(==|!=|<=|>=|=|<|>|≠|≤|≥)\s*(.+)$")


class Constraint:
    """Predicate over versions. Subclasses implement matches()."""

    text: str = "*"

    def matches(self, version: VersionLike) -> bool:
        raise NotImplementedError

    def __call__(self, version: VersionLike) -> bool:
        return self.matches(version)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.text!r})"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Constraint) and type(self) is type(other) and self.text == other.text

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.text))


class AnyVersion(Constraint):
    text = "*"

    def matches(self, version: VersionLike) -> bool:
        parse(version)
        return True


class Comparison(Constraint):
    def __init__(self, op: Op, target: Version, text: Optional[str] = None):
        self.op = op
        self.target = target
        self.text = text or f"{op.value}{target}"

    def matches(self, version: VersionLike) -> bool:
        return self.op.test(compare(version, self.target))


class _Range(Constraint):
    """Lower bound inclusive at target; exclusive numeric upper bound."""

    def __init__(self, target: Version, upper: Tuple[int, int, int], text: str):
        self.target = target
        self.upper = upper
        self.text = text

    def matches(self, version: VersionLike) -> bool:
        v = parse(version)
        return compare(v, self.target) >= 0 and v.release < self.upper


class CaretRange(_Range):
    def __init__(self, target: Version, text: Optional[str] = None):
        if target.major > 0 or target.precision == 1:
            upper = (target.major + 1, 0, 0)
        elif target.minor > 0 or target.precision == 2:
            upper = (0, target.minor + 1, 0)
        else:
            upper = (0, 0, target.patch + 1)
        super().__init__(target, upper, text or f"^{target}")


class TildeRange(_Range):
    def __init__(self, target: Version, text: Optional[str] = None):
        if target.precision == 1:
            upper = (target.major + 1, 0, 0)
        else:
            upper = (target.major, target.minor + 1, 0)
        super().__init__(target, upper, text or f"~{target}")


class WildcardPattern(Constraint):
    """N.* or N.M.*: numeric positions must match, wildcarded positions match anything."""

    def __init__(self, fixed: Tuple[int, ...], text: str):
        self.fixed = fixed
        self.text = text

    def matches(self, version: VersionLike) -> bool:
        return parse(version).release[: len(self.fixed)] == self.fixed


class AllOf(Constraint):
    def __init__(self, parts: Sequence[Constraint], text: str):
        self.parts = tuple(parts)
        self.text = text

    def matches(self, version: VersionLike) -> bool:
        return all(p.matches(version) for p in self.parts)


ConstraintLike = Union[str, Constraint, None]


def _parse_wildcard(text: str) -> WildcardPattern:
    fixed: List[int] = []
    seen_wild = False
    for part in text.split("."):
        if part in ("*", "x", "X"):
            seen_wild = True
        elif part.isdigit() and not seen_wild:
            fixed.append(int(part))
        else:
            raise MalformedConstraint(text, "bad wildcard pattern")
    if len(text.split(".")) > 3:
        raise MalformedConstraint(text, "too many components")
    return WildcardPattern(tuple(fixed), text)


def _parse_single(text: str) -> Constraint:
    if text in ("", "*"):
        return AnyVersion()
    try:
        if text[0] == "^":
            return CaretRange(parse(text[1:].strip()), text)
        if text[0] == "~":
            return TildeRange(parse(text[1:].lstrip(">").strip()), text)
        m = _OP_RE.match(text)
        if m:
            return Comparison(_OP_ALIASES[m.group(1)], parse(m.group(2).strip()), text)
        if "*" in text or re.search(r"(^|\.)[xX](\.|$)", text):
            return _parse_wildcard(text)
        return Comparison(Op.EQ, parse(text), text)
    except MalformedConstraint:
        raise
    except MalformedVersion as e:
        raise MalformedConstraint(text, str(e)) from e


@functools.lru_cache(maxsize=2048)
def _parse_constraint_cached(text: str) -> Constraint:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) == 1:
        return _parse_single(parts[0])
    if any(not p for p in parts):
        raise MalformedConstraint(text, "empty clause")
    return AllOf([_parse_single(p) for p in parts], text)


def parse_constraint(text: ConstraintLike) -> Constraint:
    """Parse a constraint expression; None and "" mean any version."""
    if isinstance(text, Constraint):
        return text
    if text is None:
        return AnyVersion()
    if not isinstance(text, str):
        raise MalformedConstraint(text, "constraint must be a string")
    return _parse_constraint_cached(text.strip())


def satisfies(constraint: ConstraintLike, version: VersionLike) -> bool:
    """True if version meets constraint. Range bounds derive from the constraint's own target."""
    return parse_constraint(constraint).matches(version)


def highest_satisfying(versions: Iterable[VersionLike], constraint: ConstraintLike) -> Optional[Version]:
    """
    Highest version meeting constraint, or None.

    Scans in the given order and only replaces the running best on a strictly
    higher version, so among equal-precedence candidates the first one wins.
    """
    c = parse_constraint(constraint)
    best: Optional[Version] = None
    for raw in versions:
        v = parse(raw)
        if not c.matches(v):
            continue
        if best is None or compare(v, best) > 0:
            best = v
    return best


def get_latest_version(available: Iterable[VersionLike], current: Optional[VersionLike] = None,
                       constraint: ConstraintLike = None) -> Optional[Version]:
    """
    Upgrade candidate among `available`.

    With a constraint this is highest_satisfying(); without one it is the
    highest available version, returned only if it outranks `current`.
    """
    if constraint is not None:
        return highest_satisfying(available, constraint)
    ordered = sort_versions(available)
    if not ordered:
        return None
    latest = ordered[-1]
    if current is None or compare(latest, current) > 0:
        return latest
    return None

# -----------------------
# Dependency strings
# -----------------------
_DEP_RE = re.compile(r"^\s*(?P<name>[^\s@<>=!~^,≠≤≥]+)\s*@?\s*(?P<constraint>.*?)\s*$")


def parse_dependency(spec: str) -> Tuple[str, str]:
    """
    Split a dependency string into (name, constraint text).

        parse_dependency("zlib")           -> ("zlib", "*")
        parse_dependency("openssl>=1.1")   -> ("openssl", ">=1.1")
        parse_dependency("libfoo@^2.0")    -> ("libfoo", "^2.0")
    """
    if not isinstance(spec, str) or not spec.strip():
        raise MalformedConstraint(spec, "empty dependency")
    m = _DEP_RE.match(spec)
    if not m:
        raise MalformedConstraint(spec, "bad dependency string")
    constraint = m.group("constraint") or "*"
    parse_constraint(constraint)
    return m.group("name"), constraint
