# cli.py
from __future__ import annotations

import dataclasses
import json
import logging
import subprocess
import sys
from pathlib import Path

import click

from stageci.artifacts import ArtifactStore
from stageci.config import EngineConfig
from stageci.errors import ManifestLoadError, ValidationError
from stageci.executor import LocalShellExecutor
from stageci.git_facts.git import detect_ref, head_sha, project_name
from stageci.logging_config import setup_logging
from stageci.manifest import load_manifest
from stageci.model import RefKind, RunContext
from stageci.runner import plan_run, run_pipeline
from stageci.ui.console import Console, get_console, set_console

DEFAULT_MANIFESTS = (".stageci.yml", ".stageci.yaml", ".gitlab-ci.yml", "stageci_workflow.py")

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def find_manifest_files(root: Path = Path(".")) -> list[Path]:
    """
    Find candidate manifest files in a directory, in preference order.
    """
    return [root / name for name in DEFAULT_MANIFESTS if (root / name).exists()]


def discover_manifest(manifest_arg: str | None) -> Path:
    """
    Resolve the manifest path from the argument or the defaults.

    Raises:
        SystemExit: If no manifest can be found
    """
    console = get_console()

    if manifest_arg:
        path = Path(manifest_arg)
        if not path.exists():
            console.print_error(
                "Manifest not found",
                f"Could not find manifest file: {manifest_arg}",
                suggestion="Specify an existing file:\n  stageci run --manifest .stageci.yml",
            )
            sys.exit(EXIT_INVALID)
        return path

    found = find_manifest_files()
    if not found:
        console.print_error(
            "No manifest found",
            "Could not find a pipeline manifest.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_MANIFESTS)],
            suggestion="Create .stageci.yml or pass --manifest explicitly.",
        )
        sys.exit(EXIT_INVALID)

    console.print_debug(f"Using manifest {found[0]}")
    return found[0]


def _load(manifest: str | None, config: EngineConfig):
    console = get_console()
    path = discover_manifest(manifest)
    try:
        return path, load_manifest(path, config)
    except ValidationError as e:
        details = [f"{k}: {v}" for k, v in e.context.items()]
        console.print_error("Invalid manifest", e.message, details=details or None)
        sys.exit(EXIT_INVALID)
    except ManifestLoadError as e:
        console.print_error("Could not load manifest", e.message)
        sys.exit(EXIT_INVALID)


def _context(ref, ref_kind, source, commit, workspace: Path) -> RunContext:
    console = get_console()
    cwd = str(workspace)
    if ref is None:
        try:
            ref, detected_kind = detect_ref(cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine ref",
                "No --ref given and the workspace is not a git checkout.",
                suggestion="Pass the ref explicitly:\n  stageci run --ref main --ref-kind branch",
            )
            sys.exit(EXIT_INVALID)
        ref_kind = ref_kind or detected_kind
    if commit is None:
        try:
            commit = head_sha(cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            commit = ""
    try:
        project = project_name(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        project = workspace.resolve().name
    return RunContext(
        ref_name=ref,
        ref_kind=RefKind(ref_kind or "branch"),
        commit=commit,
        source=source,
        project=project,
    )


def context_options(fn):
    fn = click.option("--commit", default=None, help="Commit SHA (defaults to HEAD)")(fn)
    fn = click.option(
        "--source",
        type=click.Choice(["push", "web", "schedule", "api", "trigger"]),
        default=None,
        help="What started the run (defaults from --ref-kind)",
    )(fn)
    fn = click.option(
        "--ref-kind",
        type=click.Choice([k.value for k in RefKind]),
        default=None,
        help="Kind of ref (detected from git when --ref is omitted)",
    )(fn)
    fn = click.option("--ref", default=None, help="Ref name (defaults to the current git branch/tag)")(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--workspace", default=None, type=click.Path(file_okay=False), help="Workspace directory")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="Where artifacts and caches live")
@click.pass_context
def cli(ctx, debug, workspace, state_dir):
    """stageci: staged, cache-aware pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(logging.DEBUG if debug else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config"] = EngineConfig.from_env(
        workspace=Path(workspace) if workspace else None,
        state_dir=Path(state_dir) if state_dir else None,
    )


@cli.command()
@click.option("--manifest", default=None, help="Manifest path (defaults to .stageci.yml if present)")
@click.pass_context
def validate(ctx, manifest):
    """Validate a manifest without running anything."""
    console = get_console()
    path, model = _load(manifest, ctx.obj["config"])
    console.print_info(f"{path}: OK ({len(model.stages)} stages, {len(model.jobs)} jobs)")


@cli.command()
@click.option("--manifest", default=None, help="Manifest path (defaults to .stageci.yml if present)")
@context_options
@click.pass_context
def plan(ctx, manifest, ref, ref_kind, source, commit):
    """Show which jobs a run would admit and in what order."""
    console = get_console()
    config = ctx.obj["config"]
    _path, model = _load(manifest, config)
    run_ctx = _context(ref, ref_kind, source, commit, config.workspace)
    try:
        graph, excluded = plan_run(model, run_ctx)
    except ValidationError as e:
        console.print_error("Invalid pipeline", e.message)
        sys.exit(EXIT_INVALID)
    console.print_plan(graph.levels(), excluded)


@cli.command()
@click.option("--manifest", default=None, help="Manifest path (defaults to .stageci.yml if present)")
@context_options
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of jobs run in parallel")
@click.option("--report", default=None, type=click.Path(dir_okay=False), help="Write the run outcome as JSON")
@click.option("--quiet", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def run(ctx, manifest, ref, ref_kind, source, commit, workers, report, quiet):
    """Run a pipeline."""
    console = get_console()
    console.quiet = quiet
    config = ctx.obj["config"]
    if workers is not None:
        config = dataclasses.replace(config, concurrency=workers)

    _path, model = _load(manifest, config)
    run_ctx = _context(ref, ref_kind, source, commit, config.workspace)

    try:
        graph, excluded = plan_run(model, run_ctx)
        console.print_run_started(
            ref=run_ctx.ref_name,
            ref_kind=run_ctx.ref_kind.value,
            run_id=run_ctx.run_id,
            job_count=len(graph.order),
            excluded=excluded,
        )
        outcome = run_pipeline(model, run_ctx, LocalShellExecutor(), config, console=console)
    except ValidationError as e:
        console.print_error("Invalid pipeline", e.message)
        sys.exit(EXIT_INVALID)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(outcome)
    if report:
        Path(report).write_text(json.dumps(outcome.to_dict(), indent=2), encoding="utf-8")
        console.print_debug(f"Report written to {report}")

    if not outcome.succeeded:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.pass_context
def prune(ctx):
    """Delete expired artifact bundles."""
    console = get_console()
    store = ArtifactStore(ctx.obj["config"].artifacts_root)
    removed = store.prune()
    console.print_info(f"Removed {len(removed)} expired bundle(s)")


if __name__ == "__main__":
    cli()
