# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import click

from ciflow.cache import key_context, resolve_keys, runner_info
from ciflow.dag import topo_levels
from ciflow.errors import DefinitionError
from ciflow.model import Pipeline
from ciflow.runner import Plan, compute_hashes, load_pipeline, plan, run_pipeline
from ciflow.settings import Settings
from ciflow.stores import open_store
from ciflow.trigger import build_trigger, parse_meta
from ciflow.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("ciflow.yml", "ciflow.yaml", "ciflow_pipeline.py")

EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130


def find_pipeline_files(directory: Path = Path(".")) -> List[Path]:
    """Default pipeline files present in `directory`, in lookup order."""
    return [directory / name for name in DEFAULT_PIPELINE_FILES if (directory / name).exists()]


def discover_pipeline(pipeline_arg: Optional[str]) -> Path:
    """
    Resolve the pipeline file from the argument or the defaults.

    Raises:
        SystemExit: If no pipeline file can be found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create ciflow.yml or pass a path:\n  ciflow run path/to/pipeline.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return path

    found = find_pipeline_files()
    if not found:
        console.print_error(
            "No pipeline file found",
            "Could not find a pipeline definition.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_PIPELINE_FILES)],
            suggestion="Create ciflow.yml or pass a path:\n  ciflow run path/to/pipeline.yml",
        )
        sys.exit(EXIT_DEFINITION)
    return found[0]


def _definition_error(e: DefinitionError) -> None:
    get_console().print_error(
        "Invalid pipeline definition",
        e.message,
        details=[f"job: {j}" for j in e.job_ids] or None,
    )
    sys.exit(EXIT_DEFINITION)


def _load(pipeline_path: Path, **trigger_args) -> tuple[Pipeline, Plan]:
    trigger = build_trigger(**trigger_args)
    pipeline = load_pipeline(pipeline_path, trigger=trigger)
    return pipeline, plan(pipeline)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciflow: DAG pipeline runner with matrices, conditions and cache keys."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip jobs that can no longer run after the first failure")
@click.option("--cache-dir", default=None, help="Local cache directory")
@click.option("--redis-url", default=None, help="Use a redis cache store instead of the local directory")
@click.option("--event", default=None, help="Trigger event name (default: $GITHUB_EVENT_NAME or push)")
@click.option("--branch", default=None, help="Branch name (default: from git)")
@click.option("--pr/--no-pr", "is_pr", default=None, help="Treat the trigger as a pull request")
@click.option("--meta", multiple=True, metavar="KEY=VALUE", help="Extra trigger metadata (repeatable)")
@click.option("--critical", multiple=True, metavar="JOB", help="Critical job id (repeatable; overrides the definition)")
@click.option("--report", "report_path", default=None, help="Write the JSON execution report to this path")
@click.option("--dry-run", is_flag=True, default=False, help="Validate and print the plan without running anything")
@click.pass_context
def run(ctx, pipeline, workers, fail_fast, cache_dir, redis_url, event, branch, is_pr, meta, critical, report_path, dry_run):
    """Run a pipeline and exit with its verdict."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    pipeline_path = discover_pipeline(pipeline)

    try:
        try:
            metadata = parse_meta(meta)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--meta") from e

        pipe, p = _load(pipeline_path, event=event, branch=branch, is_pull_request=is_pr, metadata=metadata)

        console.print_run_started(
            pipeline=pipe.name,
            source=pipeline_path.name,
            job_count=len(pipe.jobs),
            instance_count=len(p.instances),
        )
        if dry_run:
            _print_plan(p)
            return

        store = open_store(cache_dir or settings.cache_dir, redis_url or settings.redis_url)
        report = run_pipeline(
            pipe,
            store=store,
            max_workers=workers or settings.max_workers,
            fail_fast=settings.fail_fast if fail_fast is None else fail_fast,
            critical=list(critical) or None,
            on_outcome=console.print_outcome,
        )

        console.print_results(report)

        report_path = report_path or settings.report_path
        if report_path:
            Path(report_path).write_text(report.to_json(), encoding="utf-8")
            console.print_debug(f"report written to {report_path}")

        if report.exit_code:
            sys.exit(report.exit_code)

    except DefinitionError as e:
        _definition_error(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except click.ClickException:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("pipeline", required=False)
@click.pass_context
def validate(ctx, pipeline):
    """Check a pipeline definition and print the execution plan."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)
    try:
        pipe, p = _load(pipeline_path)
    except DefinitionError as e:
        _definition_error(e)
        return
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_header(f"Pipeline '{pipe.name}' is valid")
    _print_plan(p)


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--event", default=None, help="Trigger event name")
@click.option("--branch", default=None, help="Branch name")
@click.pass_context
def keys(ctx, pipeline, event, branch):
    """Print the resolved cache key chain of every instance."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)
    try:
        pipe, p = _load(pipeline_path, event=event, branch=branch)
    except DefinitionError as e:
        _definition_error(e)
        return
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    hashes = compute_hashes(pipe)
    runner = runner_info()
    for inst in p.instances:
        if inst.job.cache is None:
            continue
        warnings: List[str] = []
        ctx_values = key_context(inst, pipe.trigger, runner=runner, env=pipe.env, hashes=hashes)
        chain = resolve_keys(inst.job.cache, ctx_values, warnings)
        console.print_header(inst.instance_id)
        console.print_info(f"  key:     {chain[0]}")
        for fallback in chain[1:]:
            console.print_info(f"  restore: {fallback}")
        for w in warnings:
            console.print_info(f"  WARNING: {w}")


def _print_plan(p: Plan) -> None:
    console = get_console()
    for level, names in enumerate(topo_levels(p.dag)):
        console.print_info(f"Level {level}:")
        for name in names:
            job = p.dag.jobs[name]
            expansion = p.expansions[name]
            needs = ", ".join(job.needs) or "-"
            if expansion.empty:
                count = "empty matrix, skipped"
            else:
                count = f"{len(expansion.instances)} instance(s)"
            console.print_plan_job(name, f"needs {needs}; if {job.condition}; {count}")


if __name__ == "__main__":
    cli()
