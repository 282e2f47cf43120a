# step_workflows/setup.py
from __future__ import annotations

import tarfile
from typing import List, Sequence

from ..cache import compute_cache_key, cache_enabled
from ..context import JobContext
from ..errors import CIError, INFRASTRUCTURE
from ..git_facts import git
from ..model import Annotation, Job, Step, Toolchain
from ..proc import failure, run_tool
from ..ui.console import get_console

RUST_CACHE_PATHS = [
    "~/.cargo/registry/index",
    "~/.cargo/registry/cache",
    "~/.cargo/git/db",
    "target",
]
RUST_CACHE_INPUTS = ["**/Cargo.toml", "**/Cargo.lock"]

# every failure of the cache layer degrades to a cold run
CACHE_ERRORS = (OSError, ValueError, tarfile.TarError)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def checkout(name: str = "Checkout") -> Step:
    """Obtain a clean copy of the repository at the triggering commit."""
    return Step(name=name, kind="checkout", requires_network=True)


def apt_install(name: str, *packages: str, update: bool = False) -> Step:
    """Install system packages with apt-get (runs through the shell)."""
    if not packages:
        raise ValueError(f"apt_install({name!r}) needs at least one package")
    lines = []
    if update:
        lines.append("sudo apt-get update")
    lines.append("sudo apt-get install -y " + " ".join(packages))
    return Step(name=name, run="\n".join(lines), requires_network=True)


def toolchain(name: str, tc: Toolchain) -> Step:
    return Step(
        name=name,
        kind="toolchain",
        data={
            "channel": tc.channel,
            "components": list(tc.components),
            "profile": tc.profile,
            "override": tc.override,
        },
        requires_network=True,
    )


def rust_cache(
    name: str = "Rust cache",
    *,
    paths: Sequence[str] = RUST_CACHE_PATHS,
    inputs: Sequence[str] = RUST_CACHE_INPUTS,
    keep: int = 3,
) -> Step:
    """Restore the dependency/build cache now; save it after the job (on a miss)."""
    return Step(
        name=name,
        kind="cache",
        data={"paths": list(paths), "inputs": list(inputs), "keep": keep},
    )


# ---------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------

def run_checkout(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    console = get_console()
    if ctx.repo_url:
        try:
            ctx.workspace = git.clone_or_update(ctx.repo_url, ctx.sha or ctx.ref or "HEAD", ctx.work_dir)
        except RuntimeError as e:
            raise CIError(kind=INFRASTRUCTURE, job=job.name, step=step.name, message=str(e)) from e
        console.print_info(f"[{job.name}] checked out {ctx.sha or ctx.ref} into {ctx.workspace}")
        return []

    # Local run: the working tree already is the checkout.
    try:
        root = git.repo_root(cwd=str(ctx.workspace))
        head = git.head_sha(cwd=str(root))
    except (OSError, git.GitError) as e:
        raise CIError(
            kind=INFRASTRUCTURE,
            job=job.name,
            step=step.name,
            message=f"{ctx.workspace} is not a git checkout",
            details={"error": str(e)},
        ) from e
    ctx.workspace = root
    if ctx.sha and ctx.sha != head:
        console.print_warning(f"[{job.name}] working tree HEAD {head[:12]} differs from event sha {ctx.sha[:12]}")
    console.print_info(f"[{job.name}] using working tree {root} at {head[:12]}")
    return []


def run_toolchain(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    data = step.data or {}
    channel = data["channel"]
    argv = ["rustup", "toolchain", "install", channel, "--profile", data.get("profile", "minimal")]
    for component in data.get("components", []):
        argv += ["--component", component]

    proc = run_tool(ctx, step, argv)
    if proc.returncode != 0:
        raise failure(ctx, step, " ".join(argv), proc)

    ctx.toolchain = channel
    # Pin per job instead of `rustup override set`, so parallel jobs sharing a
    # workspace keep their own channel.
    if data.get("override", True):
        ctx.env["RUSTUP_TOOLCHAIN"] = channel
    return []


def run_cache(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    console = get_console()
    if ctx.cache is None or not cache_enabled():
        console.print_info(f"[{job.name}] cache: disabled")
        return []

    data = step.data or {}
    paths = list(data.get("paths", RUST_CACHE_PATHS))
    try:
        key, manifest = compute_cache_key(
            job.name,
            list(data.get("inputs", RUST_CACHE_INPUTS)),
            repo_root=ctx.workspace,
            requires=job.requires,
            salt={"toolchain": ctx.toolchain or "", "runs_on": job.runs_on},
        )
        hit = ctx.cache.restore(job.name, key, repo_root=ctx.workspace)
    except CACHE_ERRORS as e:
        console.print_warning(f"[{job.name}] cache: unavailable, running cold ({e})")
        return []

    if hit.hit:
        console.print_cache_hit(job.name, hit.reason)
        return []

    console.print_cache_miss(job.name, hit.reason)
    store = ctx.cache
    workspace = ctx.workspace
    keep = int(data.get("keep", 3))

    def save() -> None:
        try:
            store.save(job.name, key, paths, manifest, repo_root=workspace)
            store.prune(job.name, keep=keep)
        except CACHE_ERRORS as e:
            console.print_warning(f"[{job.name}] cache: save failed ({e})")
            return
        console.print_cache_saved(job.name, key)

    ctx.post_steps.append(save)
    return []
