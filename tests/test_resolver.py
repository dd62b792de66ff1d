"""Tests for the dependency resolver."""

import pytest

from pkglet.modules.catalog import Repository
from pkglet.modules.db import list_history
from pkglet.modules.errors import (
    DependencyKindConflict,
    InstalledVersionMismatch,
    PackageMasked,
    ResolutionError,
    UnsatisfiableConstraint,
)
from pkglet.modules.logging import get_metrics
from pkglet.modules.meta import DependencyKind
from pkglet.modules.resolver import Plan, PlanEntry, export_graphviz, read_lockfile, write_lockfile


@pytest.fixture
def world(make_manifest):
    """app -> lib^1.0 -> base, app build-> cmake."""
    return [
        make_manifest("app", "1.0.0", depends=["lib^1.0"], build_depends=["cmake"]),
        make_manifest("lib", "1.0.0"),
        make_manifest("lib", "1.5.0", depends=["base"]),
        make_manifest("lib", "2.0.0"),
        make_manifest("base", "0.1.0"),
        make_manifest("cmake", "3.28.0"),
    ]


def manifest_of(resolver, name, version=None):
    return resolver.catalog.find(name, version)


def assert_dependencies_first(plan):
    for edge in plan.edges:
        if edge.kind == DependencyKind.OPTIONAL.value:
            continue
        if edge.dependent in plan and edge.dependency in plan:
            assert plan.index(edge.dependency) < plan.index(edge.dependent), edge


class TestResolveInstall:
    """Default resolution pass."""

    def test_post_order_plan(self, build, world):
        r = build(world)
        plan = r.resolve_install(manifest_of(r, "app"))
        assert plan.pairs() == [("base", "0.1.0"), ("lib", "1.5.0"), ("cmake", "3.28.0"), ("app", "1.0.0")]
        assert plan.entries[-1].reason == "root"
        assert ("app", "cmake", "build_depends") in plan.edges
        assert_dependencies_first(plan)

    def test_root_by_dependency_string(self, build, world):
        r = build(world)
        assert r.resolve_install("lib^1.0").names() == ["base", "lib"]
        assert r.resolve_install("lib").pairs() == [("lib", "2.0.0")]

    def test_ordering_invariant_on_diamond(self, build, make_manifest):
        r = build([
            make_manifest("top", depends=["left", "right"], build_depends=["tool"]),
            make_manifest("left", depends=["bottom"]),
            make_manifest("right", depends=["bottom", "left"]),
            make_manifest("tool", depends=["bottom"]),
            make_manifest("bottom"),
        ])
        plan = r.resolve_install(manifest_of(r, "top"))
        assert plan.names() == ["bottom", "left", "right", "tool", "top"]
        assert len(set(plan.names())) == len(plan)
        assert_dependencies_first(plan)

    def test_cycle_terminates(self, build, make_manifest):
        r = build([make_manifest("a", depends=["b"]), make_manifest("b", depends=["a"])])
        assert r.resolve_install(manifest_of(r, "a")).names() == ["b", "a"]

    def test_self_dependency_ignored(self, build, make_manifest):
        r = build([make_manifest("a", depends=["a"])])
        assert r.resolve_install(manifest_of(r, "a")).names() == ["a"]

    def test_fully_installed_root_gives_empty_plan(self, build, world, install):
        for name, version in (("base", "0.1.0"), ("lib", "1.5.0"), ("cmake", "3.28.0"), ("app", "1.0.0")):
            install(name, version)
        r = build(world)
        plan = r.resolve_install(manifest_of(r, "app"))
        assert len(plan) == 0
        assert plan == Plan()

    def test_force_replans_installed_root(self, build, world, install):
        for name, version in (("base", "0.1.0"), ("lib", "1.5.0"), ("cmake", "3.28.0"), ("app", "1.0.0")):
            install(name, version)
        r = build(world)
        assert r.resolve_install(manifest_of(r, "app"), force=True).pairs() == [("app", "1.0.0")]

    def test_new_root_version_is_planned(self, build, world, install):
        for name, version in (("lib", "1.5.0"), ("cmake", "3.28.0"), ("app", "0.9.0")):
            install(name, version)
        r = build(world)
        assert r.resolve_install(manifest_of(r, "app")).pairs() == [("app", "1.0.0")]

    def test_installed_dependency_is_not_replanned(self, build, world, install):
        install("lib", "1.0.0")
        r = build(world)
        assert r.resolve_install(manifest_of(r, "app")).names() == ["cmake", "app"]

    def test_installed_mismatch_is_fatal(self, build, world, install):
        install("lib", "2.0.0")
        r = build(world)
        with pytest.raises(InstalledVersionMismatch) as exc:
            r.resolve_install(manifest_of(r, "app"))
        assert (exc.value.name, exc.value.installed, exc.value.required_by) == ("lib", "2.0.0", "app")

    def test_installed_optional_mismatch_only_warns(self, build, make_manifest, install):
        install("geoip", "1.0.0")
        r = build([make_manifest("site", optional_depends=["geoip>=2"]), make_manifest("geoip", "2.1.0")])
        before = get_metrics()["WARNING"]
        assert r.resolve_install(manifest_of(r, "site")).names() == ["site"]
        assert get_metrics()["WARNING"] > before

    def test_optional_dependencies_skipped(self, build, make_manifest):
        r = build([make_manifest("editor", depends=["ncurses"], optional_depends=["spell"]),
                   make_manifest("ncurses"), make_manifest("spell")])
        assert r.resolve_install(manifest_of(r, "editor")).names() == ["ncurses", "editor"]

    def test_unsatisfiable(self, build, world, make_manifest):
        r = build(world + [make_manifest("tool", depends=["lib>=3"])])
        with pytest.raises(UnsatisfiableConstraint) as exc:
            r.resolve_install(manifest_of(r, "tool"))
        assert (exc.value.name, exc.value.constraint, exc.value.required_by) == ("lib", ">=3", "tool")

    def test_unknown_dependency(self, build, make_manifest):
        r = build([make_manifest("tool", depends=["nonexistent"])])
        with pytest.raises(UnsatisfiableConstraint, match="no package provides it"):
            r.resolve_install(manifest_of(r, "tool"))

    def test_earlier_decision_must_satisfy_later_edge(self, build, make_manifest):
        r = build([
            make_manifest("root", depends=["a", "b"]),
            make_manifest("a", depends=["c>=2"]),
            make_manifest("b", depends=["c<2"]),
            make_manifest("c", "1.0.0"),
            make_manifest("c", "2.0.0"),
        ])
        with pytest.raises(UnsatisfiableConstraint, match="already selected"):
            r.resolve_install(manifest_of(r, "root"))

    def test_depth_limit(self, build, make_manifest):
        r = build([make_manifest("p0", depends=["p1"]), make_manifest("p1", depends=["p2"]),
                   make_manifest("p2", depends=["p3"]), make_manifest("p3")], max_depth=1)
        with pytest.raises(ResolutionError, match="deeper than 1"):
            r.resolve_install(manifest_of(r, "p0"))

    def test_repository_priority_breaks_ties(self, build, make_manifest):
        r = build([
            make_manifest("app", depends=["lib"]),
            make_manifest("lib", "1.5.0"),
            make_manifest("lib", "1.5.0", repository="backports"),
        ], repositories=[Repository("main"), Repository("backports", priority=5)])
        plan = r.resolve_install(manifest_of(r, "app"))
        assert plan.entries[0] == PlanEntry("lib", "1.5.0", "backports", "dependency")

    def test_visited_state_not_shared_between_runs(self, build, world):
        r = build(world)
        first = r.resolve_install(manifest_of(r, "app"))
        second = r.resolve_install(manifest_of(r, "app"))
        assert first == second


class TestMergeDependencies:
    """Dependency-kind collisions."""

    def test_last_kind_wins(self, build, make_manifest):
        m = make_manifest("m", depends=["zlib>=1"], optional_depends=["zlib>=2"])
        r = build([m, make_manifest("zlib", "1.3.0")])
        merged = r.merge_dependencies(m)
        assert [(d.name, str(d.constraint), d.kind) for d in merged] == [("zlib", ">=2", DependencyKind.OPTIONAL)]
        assert r.resolve_install(m).names() == ["m"]

    def test_build_overrides_required(self, build, make_manifest):
        m = make_manifest("m", depends=["zlib"], build_depends=["zlib>=1.3", "cmake"])
        r = build([m])
        kinds = {d.name: d.kind for d in r.merge_dependencies(m)}
        assert kinds == {"zlib": DependencyKind.BUILD_ONLY, "cmake": DependencyKind.BUILD_ONLY}

    def test_strict_kinds(self, build, make_manifest):
        m = make_manifest("m", depends=["zlib"], build_depends=["zlib"])
        r = build([m, make_manifest("zlib")], strict_kinds=True)
        with pytest.raises(DependencyKindConflict):
            r.resolve_install(m)


class TestVirtualDependencies:
    """Capabilities resolved through providers."""

    def providers(self, make_manifest):
        return [
            make_manifest("nginx", "1.24.0", provides=["webserver"]),
            make_manifest("caddy", "2.7.6", provides=["webserver"]),
            make_manifest("site", "1.0.0", depends=["webserver>=1.0"]),
        ]

    def test_installed_provider_kept(self, build, make_manifest, install):
        install("nginx", "1.24.0")
        r = build(self.providers(make_manifest))
        assert r.resolve_install(manifest_of(r, "site")).names() == ["site"]

    def test_highest_provider_installed(self, build, make_manifest):
        r = build(self.providers(make_manifest))
        plan = r.resolve_install(manifest_of(r, "site"))
        assert plan.pairs() == [("caddy", "2.7.6"), ("site", "1.0.0")]
        assert ("site", "caddy", "depends") in plan.edges

    def test_masked_provider_skipped(self, build, make_manifest, masks):
        masks.add_mask("caddy")
        r = build(self.providers(make_manifest))
        assert r.resolve_install(manifest_of(r, "site")).names() == ["nginx", "site"]

    def test_all_providers_masked(self, build, make_manifest, masks):
        masks.add_mask("caddy")
        masks.add_mask("nginx")
        r = build(self.providers(make_manifest))
        with pytest.raises(UnsatisfiableConstraint, match="virtual package"):
            r.resolve_install(manifest_of(r, "site"))


class TestMasksAndPins:
    """Masks and pins at candidate selection."""

    def test_only_candidate_masked(self, build, world, masks):
        masks.add_mask("lib", reason="security")
        r = build(world)
        with pytest.raises(PackageMasked) as exc:
            r.resolve_install(manifest_of(r, "app"))
        assert exc.value.name == "lib"
        assert exc.value.reason == "security"

    def test_masked_version_falls_back(self, build, world, masks):
        masks.add_mask("lib", version_rule=">=1.5")
        r = build(world)
        assert r.resolve_install(manifest_of(r, "app")).pairs()[0] == ("lib", "1.0.0")

    def test_resolution_writes_no_history(self, build, world, masks, db):
        masks.add_mask("lib", version_rule=">=1.5")
        r = build(world)
        before = list_history(db=db)
        r.resolve_install(manifest_of(r, "app"))
        masks.add_mask("app")
        with pytest.raises(PackageMasked):
            r.resolve_install(manifest_of(r, "app"))
        after = list_history(db=db)
        assert "mask_blocked" not in [h["action"] for h in after]
        assert len(after) == len(before) + 1

    def test_repository_scoped_mask(self, build, make_manifest, masks):
        masks.add_mask("lib", repository="backports")
        r = build([
            make_manifest("app", depends=["lib"]),
            make_manifest("lib", "1.0.0"),
            make_manifest("lib", "2.0.0", repository="backports"),
        ])
        assert r.resolve_install(manifest_of(r, "app")).entries[0] == PlanEntry("lib", "1.0.0", "main")

    def test_masked_root(self, build, world, masks):
        masks.add_mask("app")
        r = build(world)
        with pytest.raises(PackageMasked):
            r.resolve_install(manifest_of(r, "app"))

    def test_transitive_pin(self, build, world, pins):
        pins.pin("lib", "1.0.0")
        r = build(world)
        assert r.resolve_install(manifest_of(r, "app")).version_of("lib") == "1.0.0"

    def test_pin_outside_constraint(self, build, world, pins):
        pins.pin("lib", "2.0.0")
        r = build(world)
        with pytest.raises(UnsatisfiableConstraint, match="pinned to 2.0.0"):
            r.resolve_install(manifest_of(r, "app"))

    def test_unpublished_pin(self, build, world, pins):
        pins.pin("lib", "1.2.0")
        r = build(world)
        with pytest.raises(UnsatisfiableConstraint):
            r.resolve_install(manifest_of(r, "app"))

    def test_pins_not_transitive(self, build, world, pins):
        pins.pin("lib", "1.0.0")
        r = build(world, pins_transitive=False)
        assert r.resolve_install(manifest_of(r, "app")).version_of("lib") == "1.5.0"
        assert r.resolve_install("lib").pairs() == [("lib", "1.0.0")]


class TestResolveOptional:
    """Optional-dependency pass."""

    def test_optional_plan(self, build, make_manifest, install):
        install("man", "1.0.0")
        r = build([
            make_manifest("editor", depends=["ncurses"], optional_depends=["spell", "gui", "man"]),
            make_manifest("ncurses"),
            make_manifest("spell", depends=["dict"]),
            make_manifest("dict"),
            make_manifest("gui", depends=["gtk", "dict"]),
            make_manifest("gtk", depends=["glib"]),
            make_manifest("glib"),
            make_manifest("man"),
        ])
        plan = r.resolve_optional(manifest_of(r, "editor"))
        assert plan.names() == ["dict", "spell", "glib", "gtk", "gui"]
        assert plan.entries[1].reason == "optional"
        assert plan.entries[0].reason == "dependency"
        assert "editor" not in plan
        assert_dependencies_first(plan)

    def test_optional_unsatisfiable(self, build, make_manifest):
        r = build([make_manifest("editor", optional_depends=["spell>=2"]), make_manifest("spell", "1.0.0")])
        with pytest.raises(UnsatisfiableConstraint):
            r.resolve_optional(manifest_of(r, "editor"))

    def test_main_plan_entries_not_repeated(self, build, make_manifest):
        r = build([
            make_manifest("editor", depends=["ncurses"], optional_depends=["spell"]),
            make_manifest("spell", depends=["ncurses"]),
            make_manifest("ncurses"),
        ])
        editor = manifest_of(r, "editor")
        plan = r.resolve_optional(editor, planned=r.resolve_install(editor))
        assert plan.names() == ["spell"]
        assert ("spell", "ncurses", "depends") in plan.edges

    def test_main_plan_versions_bind_optional_subtree(self, build, make_manifest):
        r = build([
            make_manifest("app", depends=["lib<2.0"], optional_depends=["plugin"]),
            make_manifest("plugin", depends=["lib>=2.0"]),
            make_manifest("lib", "1.0.0"),
            make_manifest("lib", "2.0.0"),
        ])
        app = manifest_of(r, "app")
        main = r.resolve_install(app)
        assert main.version_of("lib") == "1.0.0"
        assert r.resolve_optional(app).version_of("lib") == "2.0.0"
        with pytest.raises(UnsatisfiableConstraint, match="1.0.0 was already selected"):
            r.resolve_optional(app, planned=main)


class TestExports:
    """Lockfile and Graphviz output."""

    def test_lockfile_round_trip(self, build, world, tmp_path):
        r = build(world)
        plan = r.resolve_install(manifest_of(r, "app"))
        path = write_lockfile(plan, str(tmp_path / "locks" / "app.lock.json"), metadata={"root": "app"})
        assert read_lockfile(path) == plan

    def test_lockfile_version_checked(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"lockfile_version": 99, "packages": []}')
        with pytest.raises(ValueError):
            read_lockfile(str(path))

    def test_graphviz(self, build, world, tmp_path):
        r = build(world)
        plan = r.resolve_install(manifest_of(r, "app"))
        dot = export_graphviz(plan, str(tmp_path / "deps.dot"))
        assert dot.startswith("digraph deps {")
        assert '"app" -> "lib";' in dot
        assert '"app" -> "cmake" [style=dashed];' in dot
        assert (tmp_path / "deps.dot").read_text() == dot
