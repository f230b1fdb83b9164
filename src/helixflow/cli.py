# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from helixflow import settings
from helixflow.cache import open_store
from helixflow.dag import validate_workflow
from helixflow.errors import ValidationError
from helixflow.runner import load_inputs, load_workflow, plan, run_workflow
from helixflow.settings import EngineConfig
from helixflow.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_EXECUTION_FAILED = 1
EXIT_VALIDATION_ERROR = 2
EXIT_INTERRUPTED = 130


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = list(current_dir.glob("*_workflow.py"))
    workflow_files += list(current_dir.glob("*.workflow.json"))
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  helixflow run --workflow my_workflow.py",
            )
            sys.exit(EXIT_VALIDATION_ERROR)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  *_workflow.py",
                "  *.workflow.json",
            ],
            suggestion="Specify a workflow explicitly:\n  helixflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_VALIDATION_ERROR)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  helixflow run --workflow {workflow_files[0]}",
        )
        sys.exit(EXIT_VALIDATION_ERROR)

    return workflow_files[0]


def _write_json(data: Any, path: str | None) -> None:
    text = json.dumps(data, sort_keys=True, indent=2, ensure_ascii=False)
    if path is None:
        click.echo(text)
        return
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text + "\n", encoding="utf-8")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """helixflow: DAG workflow engine for external bioinformatics tools."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file (*_workflow.py or *.workflow.json; discovered if omitted)",
)
@click.option("--inputs", "inputs_path", default=None, help="Concrete inputs (JSON object)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Max parallel task instances")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True,
              help="Cache directory or database URL (sqlite:///cache.db)")
@click.option("--no-cache", is_flag=True, default=False, help="Disable call caching")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Task working directories")
@click.option("--output", "output_path", default=None, help="Write resolved outputs here (default: stdout)")
@click.option("--report", "report_path", default=None, help="Write the full run report (JSON)")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Stop dispatching new tasks after the first failure")
@click.option("--container-runtime", default=settings.CONTAINER_RUNTIME,
              help="docker/podman; used for tasks that declare a container")
@click.option("--file-hashing", type=click.Choice(["stat", "content"]), default=settings.FILE_HASHING,
              show_default=True, help="How input Files enter the cache key")
@click.option("--max-cpu", default=None, type=int, help="Total cpu budget across running tasks")
@click.option("--max-memory", default=None, help="Per-task memory ceiling, e.g. 16G")
@click.option("--enforce-memory", is_flag=True, default=False, help="Apply the task memory as an rlimit")
@click.pass_context
def run(ctx, workflow, inputs_path, workers, cache_dir, no_cache, work_dir, output_path, report_path,
        fail_fast, container_runtime, file_hashing, max_cpu, max_memory, enforce_memory):
    """Run a workflow."""
    console = get_console()

    workflow_path = discover_workflow(workflow)

    try:
        wf_def = load_workflow(workflow_path)
        inputs, base_dir = load_inputs(inputs_path)
        config = EngineConfig(
            work_dir=work_dir,
            cache_dir=None if no_cache else cache_dir,
            max_workers=workers,
            max_cpu=max_cpu,
            max_memory=max_memory,
            enforce_memory=enforce_memory,
            container_runtime=container_runtime,
            file_hashing=file_hashing,
            fail_fast=fail_fast,
        )
        report = run_workflow(wf_def, inputs, config=config, base_dir=base_dir)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except ValidationError as e:
        console.print_error("Validation failed", str(e))
        sys.exit(EXIT_VALIDATION_ERROR)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_EXECUTION_FAILED)

    _write_json(report.to_dict()["outputs"], output_path)
    if report_path:
        _write_json(report.to_dict(), report_path)

    if not report.succeeded:
        sys.exit(EXIT_EXECUTION_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (discovered if omitted)")
@click.option("--inputs", "inputs_path", default=None, help="Also bind these inputs")
@click.pass_context
def validate(ctx, workflow, inputs_path):
    """Check a workflow (and optionally its inputs) without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf_def = load_workflow(workflow_path)
        if inputs_path:
            inputs, base_dir = load_inputs(inputs_path)
            graph = plan(wf_def, inputs, base_dir=base_dir)
            console.print_info(
                f"Workflow '{wf_def.name}' is valid: {len(graph.nodes)} node(s), "
                f"{len(graph.task_instances())} task instance(s) before expansion"
            )
        else:
            validate_workflow(wf_def)
            console.print_info(f"Workflow '{wf_def.name}' is valid")
    except ValidationError as e:
        console.print_error("Validation failed", str(e))
        sys.exit(EXIT_VALIDATION_ERROR)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_EXECUTION_FAILED)


@cli.group()
def cache():
    """Inspect and maintain the call cache."""


@cache.command()
@click.option("--task", "task_name", required=True, help="Task name")
@click.option("--keep", default=3, type=int, show_default=True, help="Newest entries to keep")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory or database URL")
def prune(task_name, keep, cache_dir):
    """Keep only the newest N cache entries of a task."""
    console = get_console()
    try:
        removed = open_store(cache_dir).prune(task_name, keep=keep)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_EXECUTION_FAILED)
    console.print_info(f"Pruned {removed} entr{'y' if removed == 1 else 'ies'} for task '{task_name}'")


if __name__ == "__main__":
    cli()
