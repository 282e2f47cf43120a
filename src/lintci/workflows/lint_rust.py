# workflows/lint_rust.py
# The "Lint Rust" pipeline: clippy over four package/feature variants on
# stable, rustfmt in check mode on nightly.
from __future__ import annotations

from lintci.dsl import concurrency, job, on_pull_request, on_push, wf
from lintci.model import LintVariant, Toolchain, Workflow
from lintci.step_workflows.fmt import fmt_check
from lintci.step_workflows.lint import clippy_steps
from lintci.step_workflows.setup import apt_install, checkout, rust_cache, toolchain

WORKFLOW_NAME = "Lint Rust"
WORKFLOW_PATH = ".github/workflows/lint-rust.yml"

WATCH_PATHS = (
    WORKFLOW_PATH,
    "plugins/src/**",
    "**/Cargo.toml",
)
BRANCHES = ("dev",)

SQL_PACKAGE = "tauri-plugin-sql"
SQL_BACKENDS = ("sqlite", "mysql", "postgres")

LINT_VARIANTS = [
    LintVariant("clippy", exclude=(SQL_PACKAGE,), all_features=True),
    *[
        LintVariant(f"clippy sql:{backend}", package=SQL_PACKAGE, features=(backend,))
        for backend in SQL_BACKENDS
    ],
]

# rustfmt's unstable options only ship on nightly, so the channels differ on purpose
LINT_TOOLCHAIN = Toolchain("stable", components=("clippy",))
FMT_TOOLCHAIN = Toolchain("nightly", components=("rustfmt",))


def workflow() -> Workflow:
    clippy = job(
        "clippy",
        checkout(),
        apt_install("install webkit2gtk", "webkit2gtk-4.0", update=True),
        apt_install("install libudev for [authenticator]", "libudev-dev"),
        toolchain("Install clippy with stable toolchain", LINT_TOOLCHAIN),
        rust_cache(),
        *clippy_steps(LINT_VARIANTS),
        fail_fast=False,
        requires=["rustc", "cargo"],
    )

    fmt = job(
        "fmt",
        checkout(),
        toolchain("Install rustfmt with nightly toolchain", FMT_TOOLCHAIN),
        fmt_check("cargo fmt"),
        fail_fast=False,
    )

    return wf(
        WORKFLOW_NAME,
        clippy,
        fmt,
        path=WORKFLOW_PATH,
        on=[
            on_push(branches=BRANCHES, paths=WATCH_PATHS),
            on_pull_request(branches=BRANCHES, paths=WATCH_PATHS),
        ],
        concurrency=concurrency("{workflow}-{ref}", cancel_in_progress=True),
    )
