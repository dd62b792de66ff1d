"""Tests for install transactions."""

import pytest

from pkglet.modules import transaction
from pkglet.modules.db import list_history
from pkglet.modules.errors import PackageMasked, UnresolvableConflict, UnsatisfiableConstraint
from pkglet.modules.transaction import InstallTransaction


@pytest.fixture
def resolver(build, make_manifest, install):
    install("apache", "2.4.58", files=["usr/sbin/httpd", "etc/httpd/httpd.conf"])
    return build([
        make_manifest("nginx", "1.24.0", depends=["pcre2"], optional_depends=["geoip"], conflicts=["apache"],
                      files=["usr/sbin/nginx", "etc/nginx/nginx.conf"],
                      options={"ssl": {"default": True}, "http2": False}),
        make_manifest("pcre2", "10.42", files=["usr/lib/libpcre2-8.so"]),
        make_manifest("geoip", "1.6.12", files=["usr/lib/libGeoIP.so"]),
    ])


class Recorder:
    """Builder and remover that log the order of calls."""

    def __init__(self):
        self.events = []

    def build(self, manifest, options):
        self.events.append(("build", manifest.name))
        return [f"opt/{manifest.name}/{manifest.version}"]

    def remove(self, name, files):
        self.events.append(("remove", name, list(files)))


class TestInstallTransaction:
    """Conflict handling, ordering and the records written."""

    def test_prepare_changes_nothing(self, resolver, installed):
        tx = InstallTransaction("nginx", resolver=resolver)
        plan = tx.prepare()
        assert plan.names() == ["pcre2", "nginx"]
        assert [c.package for c in tx.conflicts] == ["apache"]
        assert installed.is_installed("apache")
        assert not installed.is_installed("nginx")

    def test_declined_conflict_leaves_state_untouched(self, resolver, installed):
        rec = Recorder()
        tx = InstallTransaction("nginx", resolver=resolver, builder=rec.build, remover=rec.remove,
                                chooser=lambda conflicts: False)
        with pytest.raises(UnresolvableConflict) as exc:
            tx.execute()
        assert exc.value.package == "nginx"
        assert rec.events == []
        assert installed.is_installed("apache")
        assert not installed.is_installed("pcre2")

    def test_forced_conflict_removed_before_build(self, resolver, installed):
        rec = Recorder()
        done = InstallTransaction("nginx", resolver=resolver, builder=rec.build, remover=rec.remove,
                                  force=True).execute()
        assert rec.events == [
            ("remove", "apache", ["usr/sbin/httpd", "etc/httpd/httpd.conf"]),
            ("build", "pcre2"),
            ("build", "nginx"),
        ]
        assert [(r.name, r.version) for r in done] == [("pcre2", "10.42"), ("nginx", "1.24.0")]
        assert not installed.is_installed("apache")
        assert installed.owned_files("nginx") == ["opt/nginx/1.24.0"]
        assert installed.get("pcre2").repository == "main"

    def test_confirmed_conflict(self, resolver, installed):
        asked = []

        def chooser(conflicts):
            asked.extend(c.package for c in conflicts)
            return True

        InstallTransaction("nginx", resolver=resolver, chooser=chooser).execute()
        assert asked == ["apache"]
        assert installed.installed_version("nginx") == "1.24.0"

    def test_manifest_files_recorded_without_builder(self, resolver, installed):
        InstallTransaction("nginx", resolver=resolver, force=True).execute()
        assert installed.owned_files("nginx") == ["usr/sbin/nginx", "etc/nginx/nginx.conf"]
        assert installed.who_owns("usr/lib/libpcre2-8.so") == ["pcre2"]

    def test_failed_removal_aborts(self, resolver, installed):
        def remover(name, files):
            raise OSError(13, "Permission denied", files[0])

        with pytest.raises(UnresolvableConflict):
            InstallTransaction("nginx", resolver=resolver, remover=remover, force=True).execute()
        assert installed.is_installed("apache")
        assert not installed.is_installed("nginx")

    def test_failed_build_keeps_earlier_records(self, resolver, installed):
        def builder(manifest, options):
            if manifest.name == "nginx":
                raise RuntimeError("compile failed")
            return None

        with pytest.raises(RuntimeError):
            InstallTransaction("nginx", resolver=resolver, builder=builder, force=True).execute()
        assert installed.is_installed("pcre2")
        assert not installed.is_installed("nginx")

    def test_build_options(self, pkglet_env, resolver, tmp_path):
        opts = tmp_path / "etc" / "package.opts"
        opts.mkdir()
        (opts / "nginx").write_text("-ssl\n")
        seen = {}

        def builder(manifest, options):
            seen[manifest.name] = options
            return None

        InstallTransaction("nginx", resolver=resolver, builder=builder, force=True,
                           cli_options={"http2": "yes"}).execute()
        assert seen["nginx"] == {"ssl": False, "http2": True}
        assert seen["pcre2"] == {}

    def test_with_optional(self, resolver, installed):
        InstallTransaction("nginx", resolver=resolver, force=True, with_optional=True).execute()
        assert installed.installed_version("geoip") == "1.6.12"

    def test_optional_package_cannot_change_planned_version(self, build, make_manifest, installed):
        r = build([
            make_manifest("app", depends=["lib<2.0"], optional_depends=["plugin"]),
            make_manifest("plugin", depends=["lib>=2.0"]),
            make_manifest("lib", "1.0.0"),
            make_manifest("lib", "2.0.0"),
        ])
        rec = Recorder()
        with pytest.raises(UnsatisfiableConstraint):
            InstallTransaction("app", resolver=r, builder=rec.build, with_optional=True, force=True).execute()
        assert rec.events == []
        assert installed.list_installed() == []

    def test_optional_plan_shares_main_dependencies(self, build, make_manifest):
        r = build([
            make_manifest("app", depends=["lib"], optional_depends=["plugin"]),
            make_manifest("plugin", depends=["lib"]),
            make_manifest("lib"),
        ])
        tx = InstallTransaction("app", resolver=r, with_optional=True)
        assert tx.prepare().names() == ["lib", "app", "plugin"]
        assert ("plugin", "lib", "depends") in tx.plan.edges

    def test_masked_dependency_recorded(self, resolver, masks, installed, db):
        masks.add_mask("pcre2", reason="CVE pending")
        with pytest.raises(PackageMasked):
            InstallTransaction("nginx", resolver=resolver, force=True).execute()
        blocked = [h for h in list_history("pcre2", db=db) if h["action"] == "mask_blocked"]
        assert len(blocked) == 1
        assert "CVE pending" in blocked[0]["detail"]
        assert installed.is_installed("apache")

    def test_nothing_to_do(self, resolver, install):
        install("pcre2", "10.42")
        install("nginx", "1.24.0")
        assert InstallTransaction("nginx", resolver=resolver).execute() == []

    def test_history(self, resolver, db):
        transaction.install("nginx", resolver=resolver, force=True)
        assert "transaction" in [h["action"] for h in list_history("nginx", db=db)]

    def test_uninstall(self, resolver, installed):
        rec = Recorder()
        removed = InstallTransaction("nginx", resolver=resolver, remover=rec.remove).uninstall("apache")
        assert removed.version == "2.4.58"
        assert rec.events == [("remove", "apache", ["usr/sbin/httpd", "etc/httpd/httpd.conf"])]
        assert not installed.is_installed("apache")
