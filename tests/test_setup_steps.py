"""Tests for the checkout, cache and format step executors."""

from unittest.mock import patch

import pytest

from lintci.cache import CacheStore
from lintci.dsl import job
from lintci.errors import INFRASTRUCTURE, CIError
from lintci.git_facts import git
from lintci.runner import run_job
from lintci.step_workflows.fmt import fmt_check, run_fmt
from lintci.step_workflows.setup import checkout, run_cache, run_checkout, rust_cache


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "plugins" / "sql" / "src").mkdir(parents=True)
    (ws / "Cargo.toml").write_text("[workspace]\nmembers = ['plugins/*']\n")
    (ws / "Cargo.lock").write_text("# lock\n")
    (ws / "plugins" / "sql" / "Cargo.toml").write_text("[package]\nname = 'tauri-plugin-sql'\n")
    (ws / "plugins" / "sql" / "src" / "lib.rs").write_text("pub fn a() {}\n")
    (ws / "target" / "debug").mkdir(parents=True)
    (ws / "target" / "debug" / "libsql.rlib").write_bytes(b"\x00rlib")
    return ws


@pytest.fixture
def store(tmp_path):
    (tmp_path / "home").mkdir()
    return CacheStore(tmp_path / "cache", home=tmp_path / "home")


@pytest.fixture(autouse=True)
def cache_on(monkeypatch):
    monkeypatch.delenv("LINTCI_NO_CACHE", raising=False)


def cache_job():
    return job("clippy", rust_cache(paths=["target"]))


class TestRunCache:
    def test_miss_registers_save_then_next_run_hits(self, make_ctx, workspace, store):
        j = cache_job()
        ctx = make_ctx(j, workspace=workspace, cache=store)

        run_cache(j, j.steps[0], ctx)

        assert len(ctx.post_steps) == 1
        ctx.post_steps[0]()
        assert list((store.root / "clippy").glob("*.tar.gz"))

        second = make_ctx(j, workspace=workspace, cache=store)
        run_cache(j, j.steps[0], second)
        assert second.post_steps == []

    def test_job_saves_cache_after_steps(self, make_ctx, workspace, store):
        j = cache_job()

        result = run_job(j, make_ctx(j, workspace=workspace, cache=store))

        assert result.status == "success"
        assert len(list((store.root / "clippy").glob("*.tar.gz"))) == 1

    def test_hit_restores_build_directory(self, make_ctx, workspace, store, tmp_path):
        j = cache_job()
        run_job(j, make_ctx(j, workspace=workspace, cache=store))
        (workspace / "target" / "debug" / "libsql.rlib").unlink()

        ctx = make_ctx(j, workspace=workspace, cache=store)
        run_cache(j, j.steps[0], ctx)

        assert (workspace / "target" / "debug" / "libsql.rlib").read_bytes() == b"\x00rlib"

    def test_toolchain_is_part_of_the_key(self, make_ctx, workspace, store):
        j = cache_job()
        run_job(j, make_ctx(j, workspace=workspace, cache=store, toolchain="stable"))

        ctx = make_ctx(j, workspace=workspace, cache=store, toolchain="nightly")
        run_cache(j, j.steps[0], ctx)

        assert len(ctx.post_steps) == 1

    def test_manifest_symlinked_outside_workspace_does_not_break_the_job(self, make_ctx, workspace, store, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "Cargo.toml").write_text("[package]\nname = 'vendored'\n")
        (workspace / "vendored").mkdir()
        (workspace / "vendored" / "Cargo.toml").symlink_to(outside / "Cargo.toml")
        j = cache_job()

        result = run_job(j, make_ctx(j, workspace=workspace, cache=store))

        assert result.status == "success"
        assert result.steps[0].status == "success"

    @pytest.mark.parametrize("error", [ValueError("bad path"), OSError("disk full")])
    def test_key_errors_degrade_to_cold_run(self, make_ctx, workspace, store, error):
        j = cache_job()
        ctx = make_ctx(j, workspace=workspace, cache=store)

        with patch("lintci.step_workflows.setup.compute_cache_key", side_effect=error):
            annotations = run_cache(j, j.steps[0], ctx)

        assert annotations == []
        assert ctx.post_steps == []

    def test_save_failure_is_only_a_warning(self, make_ctx, workspace, store):
        j = cache_job()
        ctx = make_ctx(j, workspace=workspace, cache=store)
        run_cache(j, j.steps[0], ctx)

        with patch.object(store, "save", side_effect=OSError("read-only file system")):
            ctx.post_steps[0]()

        assert not list((store.root / "clippy").glob("*.tar.gz"))

    def test_disabled_by_environment(self, make_ctx, workspace, store, monkeypatch):
        monkeypatch.setenv("LINTCI_NO_CACHE", "1")
        j = cache_job()
        ctx = make_ctx(j, workspace=workspace, cache=store)

        run_cache(j, j.steps[0], ctx)

        assert ctx.post_steps == []


class TestRunCheckout:
    def test_clones_event_commit_into_job_work_dir(self, make_ctx, tmp_path):
        j = job("clippy", checkout())
        ctx = make_ctx(j, repo_url="https://example.test/plugins-workspace.git", sha="f" * 40)

        with patch.object(git, "clone_or_update", return_value=tmp_path / "clone") as clone:
            run_checkout(j, j.steps[0], ctx)

        clone.assert_called_once_with("https://example.test/plugins-workspace.git", "f" * 40, ctx.work_dir)
        assert ctx.workspace == tmp_path / "clone"

    def test_clone_failure_is_infrastructure_error(self, make_ctx):
        j = job("clippy", checkout())
        ctx = make_ctx(j, repo_url="https://example.test/x.git", sha="f" * 40)

        with patch.object(git, "clone_or_update", side_effect=RuntimeError("git command not found")):
            with pytest.raises(CIError) as exc_info:
                run_checkout(j, j.steps[0], ctx)

        assert exc_info.value.kind == INFRASTRUCTURE

    def test_local_run_uses_repository_root(self, make_ctx, tmp_path):
        j = job("clippy", checkout())
        ctx = make_ctx(j, sha="a" * 40)

        with patch.object(git, "repo_root", return_value=tmp_path), \
                patch.object(git, "head_sha", return_value="a" * 40):
            run_checkout(j, j.steps[0], ctx)

        assert ctx.workspace == tmp_path

    def test_local_run_outside_git_aborts_job(self, make_ctx):
        j = job("clippy", checkout())

        with patch.object(git, "repo_root", side_effect=git.GitError("not a git repository")):
            result = run_job(j, make_ctx(j))

        assert result.status == "failed"
        assert result.steps[0].error_kind == INFRASTRUCTURE


class TestRunFmt:
    def test_clean_tree_passes_twice_without_changes(self, make_ctx, workspace, completed):
        j = job("fmt", fmt_check("cargo fmt"))
        ctx = make_ctx(j, workspace=workspace)
        files = [p for p in workspace.rglob("*") if p.is_file()]
        before = {p: p.stat().st_mtime_ns for p in files}

        with patch("lintci.step_workflows.fmt.run_tool", return_value=completed(0)) as run_tool:
            first = run_fmt(j, j.steps[0], ctx)
            second = run_fmt(j, j.steps[0], ctx)

        assert first == second == []
        assert all("--check" in c.args[2] for c in run_tool.call_args_list)
        assert {p: p.stat().st_mtime_ns for p in files} == before

    def test_write_mode_is_refused(self, make_ctx):
        j = job("fmt", fmt_check("cargo fmt"))
        step = j.steps[0].__class__(name="fmt", kind="fmt", data={"args": ["--all"]})

        with pytest.raises(ValueError, match="--check"):
            run_fmt(j, step, make_ctx(j))
