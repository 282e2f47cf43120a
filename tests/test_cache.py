"""Tests for the dependency cache: keys, restore and save."""

import os
import tarfile

import pytest

from lintci.cache import CacheStore, compute_cache_key


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "plugins" / "sql").mkdir(parents=True)
    (ws / "Cargo.toml").write_text("[workspace]\n")
    (ws / "Cargo.lock").write_text("# lock\n")
    (ws / "plugins" / "sql" / "Cargo.toml").write_text("[package]\nname = 'tauri-plugin-sql'\n")
    (ws / "target" / "debug").mkdir(parents=True)
    (ws / "target" / "debug" / "libsql.rlib").write_bytes(b"\x00rlib")
    return ws


@pytest.fixture
def home(tmp_path):
    h = tmp_path / "home"
    (h / ".cargo" / "registry" / "index").mkdir(parents=True)
    (h / ".cargo" / "registry" / "index" / "config.json").write_text("{}")
    return h


INPUTS = ["**/Cargo.toml", "**/Cargo.lock"]


def key_for(ws, **kwargs):
    kwargs.setdefault("tool_versions", {"cargo": "cargo 1.80.0"})
    return compute_cache_key("clippy", INPUTS, repo_root=ws, **kwargs)


class TestCacheKey:
    def test_stable_for_same_inputs(self, workspace):
        assert key_for(workspace)[0] == key_for(workspace)[0]

    def test_changes_with_manifest_contents(self, workspace):
        before, _ = key_for(workspace)
        (workspace / "plugins" / "sql" / "Cargo.toml").write_text("[package]\nname = 'changed'\n")

        assert key_for(workspace)[0] != before

    def test_changes_with_toolchain_salt(self, workspace):
        stable, _ = key_for(workspace, salt={"toolchain": "stable"})
        nightly, _ = key_for(workspace, salt={"toolchain": "nightly"})

        assert stable != nightly

    def test_manifest_lists_inputs(self, workspace):
        _, manifest = key_for(workspace)

        assert manifest["inputs"] == ["Cargo.lock", "Cargo.toml", "plugins/sql/Cargo.toml"]

    def test_build_directory_is_not_an_input(self, workspace):
        (workspace / "target" / "Cargo.toml").write_text("generated")

        _, manifest = key_for(workspace)

        assert "target/Cargo.toml" not in manifest["inputs"]

    def test_manifest_symlinked_outside_workspace_is_skipped(self, tmp_path, workspace):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "Cargo.toml").write_text("[package]\nname = 'vendored'\n")
        (workspace / "vendored").mkdir()
        (workspace / "vendored" / "Cargo.toml").symlink_to(outside / "Cargo.toml")

        _, manifest = key_for(workspace)

        assert manifest["inputs"] == ["Cargo.lock", "Cargo.toml", "plugins/sql/Cargo.toml"]

    def test_symlink_inside_workspace_counts_its_target_once(self, workspace):
        (workspace / "plugins" / "alias").mkdir()
        (workspace / "plugins" / "alias" / "Cargo.toml").symlink_to(workspace / "plugins" / "sql" / "Cargo.toml")

        _, manifest = key_for(workspace)

        assert manifest["inputs"] == ["Cargo.lock", "Cargo.toml", "plugins/sql/Cargo.toml"]


class TestCacheStore:
    def test_miss_when_nothing_saved(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)

        hit = store.restore("clippy", "abc", repo_root=workspace)

        assert not hit.hit
        assert hit.reason == "cache miss"

    def test_save_then_restore_workspace_and_home_paths(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)
        key, manifest = key_for(workspace)
        store.save("clippy", key, ["target", "~/.cargo/registry/index"], manifest, repo_root=workspace)

        fresh_ws = tmp_path / "fresh"
        fresh_home = tmp_path / "fresh_home"
        fresh_ws.mkdir()
        fresh_home.mkdir()
        hit = CacheStore(tmp_path / "cache", home=fresh_home).restore("clippy", key, repo_root=fresh_ws)

        assert hit.hit
        assert hit.manifest["key"] == key
        assert (fresh_ws / "target" / "debug" / "libsql.rlib").read_bytes() == b"\x00rlib"
        assert (fresh_home / ".cargo" / "registry" / "index" / "config.json").exists()

    def test_missing_paths_are_skipped(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)
        key, manifest = key_for(workspace)

        art = store.save("clippy", key, ["target", "~/.cargo/git/db"], manifest, repo_root=workspace)

        with tarfile.open(art) as tar:
            names = tar.getnames()
        assert "workspace/target/debug/libsql.rlib" in names
        assert not any(n.startswith("home/") for n in names)

    def test_corrupt_artifact_is_a_miss(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)
        store.artifact_path("clippy", "k").write_bytes(b"not a tarball")
        store.manifest_path("clippy", "k").write_text("{}")

        hit = store.restore("clippy", "k", repo_root=workspace)

        assert not hit.hit
        assert "restore failed" in hit.reason

    def test_no_temp_files_left_behind(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)
        key, manifest = key_for(workspace)

        store.save("clippy", key, ["target"], manifest, repo_root=workspace)

        assert not list((tmp_path / "cache" / "clippy").glob("*.tmp"))

    def test_prune_keeps_newest(self, tmp_path, workspace, home):
        store = CacheStore(tmp_path / "cache", home=home)
        for i in range(4):
            art = store.save("clippy", f"k{i}", ["Cargo.lock"], {"key": f"k{i}"}, repo_root=workspace)
            os.utime(art, (1000 + i, 1000 + i))

        store.prune("clippy", keep=2)

        remaining = sorted(p.name for p in (tmp_path / "cache" / "clippy").glob("*.tar.gz"))
        assert remaining == ["k2.tar.gz", "k3.tar.gz"]
        assert not store.manifest_path("clippy", "k0").exists()
