# executor.py
"""
Task Executor: runs one TaskInstance as an external process.

Per attempt:
  <work_root>/<node path>/attempt-N/
    inputs/<param>/...   symlinks (or copies) of the bound input Files
    command.sh           rendered command under `set -euo pipefail`
    stdout, stderr       captured process output
    ...                  whatever the tool writes (declared outputs)
"""
from __future__ import annotations

import json
import os
import re
import shlex
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from glob import glob as _glob
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .cache import Fingerprinter, OutputStore
from .dag import NodeState, TaskInstance
from .errors import (
    CacheCorruption,
    EvaluationError,
    HelixflowError,
    OutputExtractionError,
    ResourceError,
    TaskFailed,
    TypeMismatch,
    ValidationError,
)
from .expr import Expr
from .model import Output, Param, TaskSpec
from .ui.console import get_console
from .values import ABSENT, File, Struct, Type, bind, coerce, parse_size, resolve_default, to_json

SCRIPT_HEADER = "#!/usr/bin/env bash\nset -euo pipefail\n"
STDERR_TAIL = 4000


@dataclass(frozen=True)
class ResolvedResources:
    cpu: int
    memory: Optional[int] = None      # bytes
    disk: Optional[int] = None        # bytes
    max_retries: int = 0
    container: Optional[str] = None


# ----------------------------------------------------------------------
# Command rendering
# ----------------------------------------------------------------------

def shell_format(value: Any, param: Optional[Param] = None) -> str:
    """One value as shell text, escaped per its type."""
    if value is ABSENT:
        return ""
    if isinstance(value, bool):
        if param is not None:
            return param.true if value else param.false
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, File):
        return shlex.quote(value.path)
    if isinstance(value, str):
        return shlex.quote(value)
    if isinstance(value, tuple):
        sep = param.sep if param is not None else " "
        return sep.join(shell_format(v, param) for v in value)
    if isinstance(value, Mapping):
        return shlex.quote(json.dumps(to_json(value), sort_keys=True))
    raise TypeError(f"cannot render {value!r}")


def render_command(spec: TaskSpec, bindings: Mapping[str, Any]) -> str:
    params = {p.name: p for p in spec.inputs}

    def fmt(value: Any, expr: Expr) -> str:
        return shell_format(value, params.get(expr.name) if expr.name else None)

    return spec.command.render(bindings.__getitem__, fmt)


# ----------------------------------------------------------------------
# Output extraction
# ----------------------------------------------------------------------

_TRUE = ("true", "yes", "1")
_FALSE = ("false", "no", "0")


def parse_result(type_: Type, text: str) -> Any:
    """
    Raw value from a result file, finished by coerce():
      String/File: stripped text, Int/Float/Boolean: parsed,
      Array[...]: one item per non-empty line, Map/Struct: JSON.
    """
    base = type_.required()
    kind = base.kind
    if kind in ("Map", "Struct"):
        return json.loads(text)
    if kind == "Array":
        return [parse_result(base.item, line) for line in text.splitlines() if line.strip()]
    text = text.strip()
    if type_.optional and not text:
        return ABSENT
    if kind == "Int":
        return int(text)
    if kind == "Float":
        return float(text)
    if kind == "Boolean":
        if text.lower() in _TRUE:
            return True
        if text.lower() in _FALSE:
            return False
        raise ValueError(f"not a Boolean: {text!r}")
    return text


def _extract_one(o: Output, run_dir: Path, lookup: Callable[[str], Any]) -> Any:
    kind, template = o.rule
    rendered = template.render(lookup)
    if kind == "glob":
        pattern = rendered if os.path.isabs(rendered) else str(run_dir / rendered)
        matches = sorted(p for p in _glob(pattern) if os.path.isfile(p))
        return coerce(o.type, [File(m) for m in matches])

    p = Path(rendered)
    if not p.is_absolute():
        p = run_dir / p
    if not p.exists():
        if o.type.optional:
            return ABSENT
        raise FileNotFoundError(f"{'file' if kind == 'path' else 'result file'} not found: {p}")
    if kind == "path":
        return File(str(p))
    return coerce(o.type, parse_result(o.type, p.read_text(encoding="utf-8")), run_dir)


def extract_outputs(instance: TaskInstance, run_dir: Path, bindings: Mapping[str, Any]) -> Struct:
    spec = instance.spec
    out: Dict[str, Any] = {}
    for o in spec.outputs:
        try:
            out[o.name] = _extract_one(o, run_dir, bindings.__getitem__)
        except (OSError, ValueError, TypeMismatch, EvaluationError) as e:
            raise OutputExtractionError(task=spec.name, node=instance.id, output=o.name, message=str(e)) from None
    return Struct(out)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _files(value: Any) -> List[str]:
    if isinstance(value, File):
        return [value.path]
    if isinstance(value, tuple):
        return [p for v in value for p in _files(v)]
    if isinstance(value, Mapping):
        return [p for v in value.values() for p in _files(v)]
    return []


def _safe_part(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_:-]", "_", name)


def node_path(node_id: str) -> Path:
    """'scatter_s[2].align' -> scatter_s/2/align"""
    parts = re.split(r"[.\[\]]+", node_id)
    return Path(*[_safe_part(p) for p in parts if p])


def _link_or_copy(src: str, dest: Path) -> None:
    src = os.path.abspath(src)
    try:
        os.symlink(src, dest)
    except OSError:
        if os.path.isdir(src):
            shutil.copytree(src, dest)
        else:
            shutil.copy2(src, dest)


def _stage(value: Any, dest: Path, root: Optional[Path] = None) -> Any:
    """Materialize every File under dest; returns the value with staged paths."""
    root = root or dest
    if isinstance(value, File):
        name = os.path.basename(value.path.rstrip("/"))
        if name in ("", ".", ".."):
            name = "input"
        target = dest / name
        if not target.resolve().is_relative_to(root.resolve()):
            raise ValidationError(f"refusing to stage {value.path!r} outside {root}")
        dest.mkdir(parents=True, exist_ok=True)
        _link_or_copy(value.path, target)
        return File(str(target))
    if isinstance(value, tuple):
        return tuple(_stage(v, dest / str(i), root) for i, v in enumerate(value))
    if isinstance(value, Mapping):
        # map keys are data, never path parts
        return Struct(
            (k, _stage(v, dest / f"{i}_{_safe_part(str(k))}", root))
            for i, (k, v) in enumerate(value.items())
        )
    return value


def _tail(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")[-STDERR_TAIL:]
    except OSError:
        return ""


def ensure_clean_dir(path: str | Path) -> None:
    p = Path(path)
    if p.exists():
        shutil.rmtree(p)
    p.mkdir(parents=True, exist_ok=True)


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class TaskExecutor:
    def __init__(
        self,
        work_root: str | Path,
        *,
        store: Optional[OutputStore] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        container_runtime: Optional[str] = None,
        max_cpu: Optional[int] = None,
        max_memory: Optional[int] = None,
        enforce_memory: bool = False,
    ):
        self.work_root = Path(work_root).resolve()
        self.work_root.mkdir(parents=True, exist_ok=True)
        self.store = store
        self.fingerprinter = fingerprinter or Fingerprinter()
        self.container_runtime = container_runtime
        self.max_cpu = max_cpu
        self.max_memory = max_memory
        self.enforce_memory = enforce_memory

    # ---- coordinator side ----

    def prepare(self, instance: TaskInstance, lookup: Callable[[str], Any]) -> ResolvedResources:
        """Bind inputs (evaluating call expressions and defaults) and resolve resources."""
        spec = instance.spec
        env: Dict[str, Any] = {}
        for p in spec.inputs:
            expr = instance.input_exprs.get(p.name)
            raw = expr.evaluate(lookup) if expr is not None else ABSENT
            if raw is ABSENT and p.default is not None:
                env[p.name] = resolve_default(p, env)
            else:
                env[p.name] = bind(p, raw)
        instance.bindings = Struct(env)
        instance.resources = self.resolve_resources(spec, instance.bindings)
        self.check_resources(instance)
        return instance.resources

    def resolve_resources(self, spec: TaskSpec, bindings: Mapping[str, Any]) -> ResolvedResources:
        r = spec.resources
        lookup = bindings.__getitem__
        cpu_text = r.cpu.render(lookup).strip()
        try:
            cpu = int(float(cpu_text))
        except ValueError:
            raise ResourceError(f"Task '{spec.name}': cpu is not a number: {cpu_text!r}") from None
        if cpu < 1:
            raise ResourceError(f"Task '{spec.name}': cpu must be >= 1, got {cpu}")
        try:
            memory = parse_size(r.memory.render(lookup)) if r.memory is not None else None
            disk = parse_size(r.disk.render(lookup)) if r.disk is not None else None
        except ValidationError as e:
            raise ResourceError(f"Task '{spec.name}': {e}") from None
        return ResolvedResources(cpu=cpu, memory=memory, disk=disk,
                                 max_retries=r.max_retries, container=r.container)

    def check_resources(self, instance: TaskInstance) -> None:
        res: ResolvedResources = instance.resources
        name = instance.spec.name
        if self.max_cpu is not None and res.cpu > self.max_cpu:
            raise ResourceError(f"Task '{name}' needs {res.cpu} cpu, limit is {self.max_cpu}")
        if self.max_memory is not None and res.memory is not None and res.memory > self.max_memory:
            raise ResourceError(f"Task '{name}' needs {res.memory} bytes of memory, limit is {self.max_memory}")
        if res.disk is not None:
            free = shutil.disk_usage(self.work_root).free
            if res.disk > free:
                raise ResourceError(f"Task '{name}' needs {res.disk} bytes of disk, {free} free")

    # ---- worker side ----

    def execute(self, instance: TaskInstance) -> Struct:
        """
        Returns the output binding. Raises TaskFailed / OutputExtractionError
        after max_retries + 1 attempts.
        """
        spec = instance.spec
        console = get_console()

        missing = sorted(p for p in _files(instance.bindings) if not os.path.exists(p))
        if missing:
            raise TaskFailed(task=spec.name, node=instance.id, exit_code=None, attempts=0,
                             message=f"input file(s) not found: {missing}")

        if self.store is not None:
            key, _payload = self.fingerprinter.fingerprint(spec, instance.bindings)
            instance.fingerprint = key
            hit = self._lookup(spec.name, key)
            if hit is not None:
                instance.cached = True
                console.print_cache_hit(instance.id, key)
                return hit
            console.print_cache_miss(instance.id)

        attempts = spec.resources.max_retries + 1
        last: Optional[HelixflowError] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                instance.state = NodeState.RETRYING
                console.print_task_retry(instance.id, attempt, attempts, str(last))
                instance.state = NodeState.RUNNING
            instance.attempts = attempt
            try:
                outputs = self._attempt(instance, attempt)
            except TaskFailed as e:
                e.attempts = attempt
                last = e
                continue
            except OutputExtractionError as e:
                last = e
                continue

            if self.store is not None:
                self.store.record(spec.name, instance.fingerprint, outputs)
                console.print_cache_saved(instance.id, instance.fingerprint)
            return outputs

        raise last

    def _lookup(self, task: str, key: str) -> Optional[Struct]:
        console = get_console()
        try:
            outputs = self.store.lookup(task, key)
        except CacheCorruption as e:
            console.print_warning(f"cache entry unreadable, ignoring: {e}")
            self.store.evict(task, key)
            return None
        if outputs is None:
            return None
        gone = [p for p in _files(outputs) if not os.path.exists(p)]
        if gone:
            console.print_debug(f"cache entry {key[:12]} points at missing files {gone}")
            self.store.evict(task, key)
            return None
        return outputs

    def _attempt(self, instance: TaskInstance, attempt: int) -> Struct:
        spec = instance.spec
        res: ResolvedResources = instance.resources
        run_dir = self.work_root / node_path(instance.id) / f"attempt-{attempt}"
        ensure_clean_dir(run_dir)
        instance.work_dir = str(run_dir)

        inputs_dir = run_dir / "inputs"
        staged = Struct((k, _stage(v, inputs_dir / k, inputs_dir)) for k, v in instance.bindings.items())
        command = render_command(spec, staged)
        header = SCRIPT_HEADER
        if self.enforce_memory and res.memory is not None and not self._containerized(res):
            # ulimit -v counts KiB
            header += f"ulimit -v {max(1, res.memory // 1024)}\n"
        script = run_dir / "command.sh"
        script.write_text(header + command + "\n", encoding="utf-8")
        script.chmod(0o755)

        stdout_path = run_dir / "stdout"
        stderr_path = run_dir / "stderr"
        argv = self._argv(res, run_dir, script, instance.bindings)

        with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
            proc = subprocess.run(argv, cwd=str(run_dir), stdout=out, stderr=err)

        if proc.returncode != 0:
            raise TaskFailed(task=spec.name, node=instance.id, exit_code=proc.returncode,
                             attempts=attempt, stderr=_tail(stderr_path))
        return extract_outputs(instance, run_dir, staged)

    def _containerized(self, res: ResolvedResources) -> bool:
        return bool(self.container_runtime and res.container)

    def _argv(self, res: ResolvedResources, run_dir: Path, script: Path, bindings: Mapping[str, Any]) -> List[str]:
        if not self._containerized(res):
            return ["bash", str(script)]

        # staged symlinks point at the source dirs, so mount those too
        mounts = [f"{run_dir}:{run_dir}"]
        for d in sorted({os.path.dirname(os.path.abspath(p)) for p in _files(bindings)}):
            mounts.append(f"{d}:{d}:ro")
        argv = [self.container_runtime, "run", "--rm", "-w", str(run_dir), "--cpus", str(res.cpu)]
        if res.memory is not None:
            argv += ["--memory", str(res.memory)]
        for m in mounts:
            argv += ["-v", m]
        return argv + [res.container, "bash", str(script)]

