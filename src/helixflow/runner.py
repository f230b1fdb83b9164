# runner.py
from __future__ import annotations

import json
import runpy
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .cache import Fingerprinter, open_store
from .dag import Graph, GraphBuilder
from .documents import load_document
from .errors import ValidationError
from .executor import TaskExecutor
from .model import WorkflowDef
from .scheduler import RunReport, Scheduler
from .settings import EngineConfig
from .ui.console import get_console
from .values import parse_size


# ----------------------------------------------------------------------
# Workflow / inputs loading
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDef:
    """
    Load a workflow from a python file or a JSON document.

    A python file must define either:
      - workflow() -> WorkflowDef
      - WORKFLOW = WorkflowDef(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ValidationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix == ".json":
        return load_document(wf_path)
    if wf_path.suffix != ".py":
        raise ValidationError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"helixflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    workflow = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            workflow = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ValidationError(
                    "Your workflow() is being called with arguments (name collision with a helper). "
                    "Use the 'wf' helper instead: `from helixflow import wf, call` then "
                    "`def workflow(): return wf('name', call(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        workflow = globals_dict["WORKFLOW"]

    if not isinstance(workflow, WorkflowDef):
        raise ValidationError(
            f"{wf_path.name} must define workflow() -> WorkflowDef or WORKFLOW = WorkflowDef(...)"
        )
    return workflow


def load_inputs(path: str | Path | None) -> Tuple[Dict[str, Any], Optional[Path]]:
    """
    Read a concrete-inputs JSON document. Returns (inputs, base_dir); relative
    File paths are resolved against base_dir (the document's directory).
    """
    if path is None:
        return {}, None
    p = Path(path).expanduser().resolve()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ValidationError(f"Inputs file not found: {p}") from None
    except json.JSONDecodeError as e:
        raise ValidationError(f"{p}: invalid JSON: {e}") from None
    if not isinstance(data, dict):
        raise ValidationError(f"{p}: inputs must be a JSON object")
    return data, p.parent


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan(
    workflow: WorkflowDef,
    inputs: Optional[Mapping[str, Any]] = None,
    *,
    base_dir: str | Path | None = None,
) -> Graph:
    """Validate the workflow and bind inputs without running anything."""
    return GraphBuilder(base_dir).build(workflow, inputs)


def run_workflow(
    workflow: WorkflowDef,
    inputs: Optional[Mapping[str, Any]] = None,
    *,
    config: Optional[EngineConfig] = None,
    base_dir: str | Path | None = None,
) -> RunReport:
    """
    Build the graph and run it. ValidationError is raised before anything
    executes; task-level failures end up in the returned report.
    """
    config = config or EngineConfig()
    console = get_console()

    builder = GraphBuilder(base_dir)
    graph = builder.build(workflow, inputs)

    run_id = f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"
    run_dir = Path(config.work_dir).resolve() / workflow.name / run_id

    store = open_store(config.cache_dir) if config.cache_dir else None
    executor = TaskExecutor(
        run_dir,
        store=store,
        fingerprinter=Fingerprinter(config.file_hashing),
        container_runtime=config.container_runtime,
        max_cpu=config.max_cpu,
        max_memory=parse_size(config.max_memory) if config.max_memory else None,
        enforce_memory=config.enforce_memory,
    )
    scheduler = Scheduler(
        executor,
        builder,
        max_workers=config.max_workers,
        max_cpu=config.max_cpu,
        fail_fast=config.fail_fast,
    )

    console.print_run_started(workflow.name, str(run_dir), len(inputs or {}))
    console.print_debug(f"cache: {store!r}")
    report = scheduler.run(graph)
    console.print_results(report.status, report.states())
    return report
