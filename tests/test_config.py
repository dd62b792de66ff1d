"""Tests for configuration loading and the legacy flat files."""

import json

import pytest
import yaml

from pkglet.modules import config


class TestLoad:
    """Merging, normalization and validation."""

    def test_defaults_merged(self, pkglet_env):
        assert config.get("resolver.max_depth") == 256
        assert config.get("resolver.pins_transitive") is True
        assert config.get("catalog.workers") == 2
        assert config.get("catalog.manifest_names")[0] == "manifest.yaml"
        assert config.get("no.such.key", 5) == 5

    def test_repos_normalized(self, pkglet_env, tmp_path):
        cfg = config.load_from_dict({**pkglet_env.raw, "repos": {
            "core": str(tmp_path / "core"),
            "upstream": {"url": "https://example.org/pkgs.git", "priority": "7"},
        }})
        assert cfg.get("repos.core") == {"location": str(tmp_path / "core"), "kind": "local", "priority": 0}
        assert cfg.get("repos.upstream") == {"location": "https://example.org/pkgs.git", "kind": "vcs",
                                             "priority": 7}

    def test_validation(self, pkglet_env):
        cfg = config.load_from_dict({**pkglet_env.raw, "frobnicate": True})
        assert cfg.get("frobnicate") is True
        with pytest.raises(ValueError):
            config.load_from_dict({**pkglet_env.raw, "frobnicate": True}, fatal=True)

    def test_watchers_notified(self, pkglet_env):
        seen = []
        config.register_watch_callback(seen.append)
        try:
            config.load_from_dict({**pkglet_env.raw, "resolver": {"max_depth": 3}})
        finally:
            config.unregister_watch_callback(seen.append)
        assert seen[0].get("resolver.max_depth") == 3

    def test_load_yaml_and_json_files(self, pkglet_env, tmp_path):
        ypath = tmp_path / "pkglet.yaml"
        ypath.write_text(yaml.safe_dump({"resolver": {"strict_kinds": True}}))
        assert config.load(str(ypath)).get("resolver.strict_kinds") is True
        jpath = tmp_path / "pkglet.json"
        jpath.write_text(json.dumps({"catalog": {"workers": "0"}}))
        cfg = config.load(str(jpath))
        assert cfg.source == jpath
        assert cfg.get("catalog.workers") == 1

    def test_save_writes_overrides_only(self, pkglet_env, tmp_path):
        config.load_from_dict({**pkglet_env.raw, "resolver": {"max_depth": 10}})
        out = config.save(str(tmp_path / "saved.yaml"))
        data = yaml.safe_load(out.read_text())
        assert data["resolver"] == {"max_depth": 10}
        assert data["catalog"] == {"workers": 2}
        assert "repos" not in data

    def test_bootstrap_root(self, pkglet_env, tmp_path):
        cfg = config.set_bootstrap_root(str(tmp_path / "sysroot"))
        assert cfg.get("paths.prefix") == str(tmp_path / "sysroot")
        assert cfg.get("db.path") == str(tmp_path / "sysroot" / "var" / "lib" / "pkglet" / "pkglet.sqlite3")


class TestFlatFiles:
    """repos.conf, package.mask, package.lock and package.opts."""

    def test_repos_conf(self, pkglet_env, tmp_path):
        (tmp_path / "etc" / "repos.conf").write_text(
            "# name location [priority]\n"
            f"core {tmp_path}/core 10\n"
            "upstream https://example.org/pkgs.git\n"
            "broken\n"
            f"extra {tmp_path}/extra high\n"
        )
        repos = config.read_repos_conf()
        assert list(repos) == ["core", "upstream", "extra"]
        assert repos["core"]["priority"] == 10
        assert repos["upstream"]["kind"] == "vcs"
        assert repos["extra"]["priority"] == 0

    def test_config_section_overrides_repos_conf(self, pkglet_env, tmp_path):
        (tmp_path / "etc" / "repos.conf").write_text(f"core {tmp_path}/core\nextra {tmp_path}/extra\n")
        config.load_from_dict({**pkglet_env.raw, "repos": {"core": {"location": str(tmp_path / "alt"),
                                                                     "priority": 2}}})
        repos = config.get_repositories()
        assert list(repos) == ["extra", "core"]
        assert repos["core"]["location"] == str(tmp_path / "alt")

    def test_mask_file(self, pkglet_env, tmp_path):
        (tmp_path / "etc" / "package.mask").write_text("openssl\nextra/caddy  # pending review\n\n")
        assert config.read_mask_file() == [(None, "openssl"), ("extra", "caddy")]

    def test_pin_file(self, pkglet_env, tmp_path):
        (tmp_path / "etc" / "package.lock").write_text("openssl 3.0.13\nbogus\n")
        assert config.read_pin_file() == {"openssl": "3.0.13"}

    def test_package_options(self, pkglet_env, tmp_path):
        opts = tmp_path / "etc" / "package.opts"
        opts.mkdir()
        (opts / "nginx").write_text("ssl -ipv6\nworkers=4\n")
        assert config.read_package_options("nginx") == {"ssl": True, "ipv6": False, "workers": "4"}
        assert config.read_package_options("curl") == {}
