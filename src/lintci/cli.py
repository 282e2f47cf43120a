# cli.py
from __future__ import annotations

import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import urljoin

import click

from lintci.concurrency import Governor, InMemoryGovernor, RedisGovernor
from lintci.git_facts import git
from lintci.model import EVENT_KINDS, PULL_REQUEST, Event, Workflow
from lintci.reporter import DEFAULT_API_URL, ChecksReporter
from lintci.runner import load_workflow, run_workflow
from lintci.trigger import evaluate
from lintci.ui.console import Console, set_console, get_console
from lintci.workflows import lint_rust

DEFAULT_WORKFLOW_FILE = "lintci_workflow.py"


def find_workflow_files() -> list[Path]:
    """Find workflow files (*_workflow.py) in the current directory."""
    current_dir = Path(".")
    default_workflow = current_dir / DEFAULT_WORKFLOW_FILE
    found = [default_workflow] if default_workflow.exists() else []
    found += [p for p in current_dir.glob("*_workflow.py") if p != default_workflow]
    return sorted(found)


def resolve_workflow(workflow_arg: str | None) -> Workflow:
    """
    Load the workflow named on the command line, or discover one.

    Falls back to the built-in "Lint Rust" descriptor when the current
    directory has no workflow file.

    Raises:
        SystemExit: If the named file is missing or discovery is ambiguous
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  lintci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return load_workflow(workflow_path)

    workflow_files = find_workflow_files()
    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  lintci run --workflow {DEFAULT_WORKFLOW_FILE}",
        )
        sys.exit(1)
    if workflow_files:
        return load_workflow(workflow_files[0])

    console.print_debug("no workflow file found, using built-in 'Lint Rust' workflow")
    return lint_rust.workflow()


def build_event(
    kind: str,
    ref: str | None,
    base_ref: str | None,
    sha: str | None,
    changed: tuple[str, ...],
    use_git_diff: bool,
    compare_ref: str,
    repository: str | None,
) -> Event:
    """Assemble an Event from CLI options, filling gaps from the local git checkout."""
    if ref is None:
        try:
            ref = git.current_ref()
        except (OSError, git.GitError):
            raise click.UsageError("--ref is required outside a git checkout") from None
    if sha is None:
        try:
            sha = git.head_sha()
        except (OSError, git.GitError):
            sha = None

    changed_paths: tuple[str, ...] | None = tuple(changed) if changed else None
    if changed_paths is None and use_git_diff:
        try:
            changed_paths = tuple(git.changed_paths(compare_ref))
        except (OSError, git.GitError) as e:
            get_console().print_warning(f"could not derive changed paths from git: {e}")

    if kind == PULL_REQUEST and not base_ref:
        raise click.UsageError("--base-ref is required for pull_request events")

    return Event(
        kind=kind,
        ref=ref,
        base_ref=base_ref,
        changed_paths=changed_paths,
        sha=sha,
        repository=repository,
    )


def event_options(f):
    """Options shared by commands that describe an incoming event."""
    options = [
        click.option("--event", "kind", type=click.Choice(EVENT_KINDS), default="push", show_default=True, help="Event kind"),
        click.option("--ref", default=None, help="Git ref of the event (defaults to the current branch)"),
        click.option("--base-ref", default=None, help="Target branch of a pull_request event"),
        click.option("--sha", default=None, help="Commit of the event (defaults to HEAD)"),
        click.option("--changed", multiple=True, help="Changed path (repeatable); overrides --git-diff"),
        click.option("--git-diff/--no-git-diff", default=True, show_default=True, help="Derive changed paths from git"),
        click.option("--compare-ref", default="origin/dev", show_default=True, help="Git ref to diff against"),
        click.option("--repository", default=None, help="owner/name, used for check reporting"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """lintci: trigger-gated runner for the Rust lint/format pipeline."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command("check-trigger")
@click.option("--workflow", default=None, help="Workflow file path")
@event_options
def check_trigger(workflow, kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository):
    """Print whether an event would start a run (exit 0) or not (exit 1)."""
    console = get_console()
    wf = resolve_workflow(workflow)
    event = build_event(kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository)
    decision = evaluate(wf, event)
    console.print_trigger_decision(wf.name, decision.admitted, decision.reason)
    for p in decision.matched_paths:
        console.print_info(f"  {p}")
    sys.exit(0 if decision.admitted else 1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
def plan(workflow):
    """Print the jobs and steps of a workflow."""
    console = get_console()
    wf = resolve_workflow(workflow)
    console.print_header(f"{wf.name} ({wf.path})")
    for rule in wf.triggers:
        console.print_info(f"on {rule.event}: branches={list(rule.branches)} paths={list(rule.paths)}")
    if wf.concurrency:
        console.print_info(
            f"concurrency: {wf.concurrency.group} (cancel in progress: {wf.concurrency.cancel_in_progress})"
        )
    for j in wf.jobs:
        console.print_header(f"job {j.name} [{j.runs_on}] fail_fast={j.fail_fast}")
        for i, step in enumerate(j.steps, 1):
            detail = ""
            if step.kind in ("clippy", "fmt"):
                detail = " ".join((step.data or {}).get("args", []))
            elif step.kind == "toolchain":
                data = step.data or {}
                detail = f"{data.get('channel')} +{','.join(data.get('components', []))}"
            console.print_info(f"  {i}. {step.name} ({step.kind}) {detail}".rstrip())


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@event_options
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--cache-dir", default=".lintci/cache", show_default=True, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Disable the dependency cache")
@click.option("--redis-url", default=None, envvar="LINTCI_REDIS_URL", help="Share concurrency slots through Redis")
@click.option("--report/--no-report", default=False, show_default=True, help="Publish check runs (token from GITHUB_TOKEN)")
def run(workflow, kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository,
        workers, cache_dir, no_cache, redis_url, report):
    """Evaluate the trigger for an event and run the workflow."""
    console = get_console()

    try:
        wf = resolve_workflow(workflow)
        event = build_event(kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository)

        governor: Governor = RedisGovernor.from_url(redis_url) if redis_url else InMemoryGovernor()

        reporter = None
        if report:
            token = os.environ.get("GITHUB_TOKEN")
            if not token or not repository or not event.sha:
                console.print_error(
                    "Cannot report checks",
                    "--report needs GITHUB_TOKEN in the environment, --repository and a commit sha.",
                )
                sys.exit(1)
            reporter = ChecksReporter(
                repository, event.sha, token, api_url=os.environ.get("GITHUB_API_URL", DEFAULT_API_URL)
            )

        result = run_workflow(
            wf,
            event,
            repo_root=".",
            cache_root=None if no_cache else cache_dir,
            governor=governor,
            reporter=reporter,
            max_workers=workers,
        )

        if not result.admitted:
            sys.exit(1)
        console.print_results(result)
        if result.status != "success":
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (click.ClickException, SystemExit):
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--agent-id", default=None, help="Unique agent identifier (defaults to hostname)")
@click.option("--poll-interval", default=5, type=int, help="Polling interval in seconds when no jobs available")
def agent(api, agent_id, poll_interval):
    """Run the agent loop: poll the control plane for jobs and execute them."""
    import socket
    from lintci.agent.agent import run_agent

    console = get_console()
    try:
        run_agent(api, agent_id or socket.gethostname(), poll_interval)
    except KeyboardInterrupt:
        console.print_info("\nAgent stopped by user")
        sys.exit(0)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@event_options
@click.option("--repo-url", default=None, help="Clone URL (defaults to git remote origin URL)")
def submit(api, kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository, repo_url):
    """Submit an event to the control plane."""
    console = get_console()

    if not repo_url:
        try:
            repo_url = git.remote_url("origin")
        except (OSError, git.GitError):
            console.print_error(
                "Could not get repository URL",
                "No --repo-url specified and could not get git remote URL.",
                suggestion="Please specify --repo-url explicitly:\n  lintci submit --api <url> --repo-url <url>",
            )
            sys.exit(1)

    event = build_event(kind, ref, base_ref, sha, changed, git_diff, compare_ref, repository)
    request_data = {
        "kind": event.kind,
        "ref": event.ref,
        "base_ref": event.base_ref,
        "changed_paths": list(event.changed_paths) if event.changed_paths is not None else None,
        "sha": event.sha,
        "repository": event.repository,
        "repo_url": repo_url,
    }

    base_url = api.rstrip("/")
    req = urllib.request.Request(
        urljoin(base_url + "/", "events"),
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error("Invalid API response", "Could not parse JSON response from API.", details=[str(e)])
        sys.exit(1)

    console.print_trigger_decision("submitted event", bool(result.get("admitted")), result.get("reason", ""))
    if not result.get("admitted"):
        sys.exit(1)
    console.print_info(f"  Run ID: {result.get('run_id')}")
    console.print_info(f"  Job IDs: {', '.join(result.get('job_ids', []))}")
    if result.get("cancelled_run_id"):
        console.print_run_preempted(result["cancelled_run_id"])


if __name__ == "__main__":
    cli()
