# src/helixflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ValidationError
from .expr import Expr, Template, as_expr
from .model import (
    Call,
    Conditional,
    Output,
    Param,
    Resources,
    Scatter,
    Statement,
    TaskSpec,
    WorkflowDef,
    WorkflowOutput,
)
from .values import Type, parse_type


# ---------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------

def lit(value: Any) -> Expr:
    """A literal expression: lit("sample_1") instead of "'sample_1'"."""
    return Expr.literal(value)


def param(
    name: str,
    type: str | Type,
    default: Any = None,
    *,
    sep: str = " ",
    true: str = "true",
    false: str = "false",
) -> Param:
    """Declare an input. String defaults are expressions over earlier inputs."""
    return Param(
        name=name,
        type=parse_type(type),
        default=None if default is None else as_expr(default),
        sep=sep,
        true=true,
        false=false,
    )


def output(
    name: str,
    type: str | Type,
    *,
    path: str | None = None,
    glob: str | None = None,
    read: str | None = None,
) -> Output:
    return Output(
        name=name,
        type=parse_type(type),
        path=None if path is None else Template(path),
        glob=None if glob is None else Template(glob),
        read=None if read is None else Template(read),
    )


def _template(value: Any) -> Optional[Template]:
    if value is None:
        return None
    return value if isinstance(value, Template) else Template(str(value))


# ---------------------------------------------------------------------
# Functional task helper
# ---------------------------------------------------------------------

def task(
    name: str,
    command: str,
    *,
    inputs: Sequence[Param] = (),
    outputs: Sequence[Output] = (),
    cpu: int | str = 1,
    memory: str | None = None,
    disk: str | None = None,
    max_retries: int = 0,
    container: str | None = None,
    version: str | None = None,
) -> TaskSpec:
    return TaskSpec(
        name=name,
        command=Template(command),
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        resources=Resources(
            cpu=_template(cpu),
            memory=_template(memory),
            disk=_template(disk),
            max_retries=max_retries,
            container=container,
        ),
        version=version,
    )


# ---------------------------------------------------------------------
# Workflow statements
# ---------------------------------------------------------------------

def call(
    target: TaskSpec | WorkflowDef,
    alias: str | None = None,
    inputs: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> Call:
    """
    call(INDEX, bam="align.bam")             -> alias "samtools_index"
    call(INDEX, "index", bam="align.bam")    -> alias "index"

    Strings are expressions; use lit() for literal strings.
    """
    merged: Dict[str, Any] = dict(inputs or {})
    merged.update(kwargs)
    return Call(
        target=target,
        alias=alias or target.name,
        inputs={k: as_expr(v) for k, v in merged.items()},
    )


def scatter(variable: str, collection: Any, *body: Statement, name: str | None = None) -> Scatter:
    return Scatter(variable=variable, collection=as_expr(collection), body=tuple(body), name=name)


def when(condition: Any, *body: Statement, name: str | None = None) -> Conditional:
    """Conditional block (`if` is taken)."""
    return Conditional(condition=as_expr(condition), body=tuple(body), name=name)


def wf_output(name: str, type: str | Type, expr: Any) -> WorkflowOutput:
    return WorkflowOutput(name=name, type=parse_type(type), expr=as_expr(expr))


def wf(
    name: str,
    *body: Statement,
    inputs: Iterable[Param] = (),
    outputs: Iterable[WorkflowOutput] = (),
) -> WorkflowDef:
    """
    Workflow definition helper. Named `wf` so workflow files can define
    their own `def workflow(): return wf(...)`.
    """
    return WorkflowDef(name=name, body=tuple(body), inputs=tuple(inputs), outputs=tuple(outputs))


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class TaskBuilder:
    def __init__(self, name: str):
        self.name = name
        self._inputs: List[Param] = []
        self._outputs: List[Output] = []
        self._command: Optional[str] = None
        self._cpu: int | str = 1
        self._memory: Optional[str] = None
        self._disk: Optional[str] = None
        self._max_retries: int = 0
        self._container: Optional[str] = None
        self._version: Optional[str] = None

    def define_input(self, name: str, type: str, default: Any = None, **fmt: str):
        self._inputs.append(param(name, type, default, **fmt))
        return self

    def define_output(self, name: str, type: str, **rule: str):
        self._outputs.append(output(name, type, **rule))
        return self

    def define_command(self, command: str):
        self._command = command
        return self

    def with_resources(
        self,
        *,
        cpu: int | str = 1,
        memory: str | None = None,
        disk: str | None = None,
        max_retries: int = 0,
        container: str | None = None,
    ):
        self._cpu = cpu
        self._memory = memory
        self._disk = disk
        self._max_retries = max_retries
        self._container = container
        return self

    def with_version(self, version: str):
        self._version = version
        return self

    def build(self) -> TaskSpec:
        if not self._command:
            raise ValidationError(f"Task '{self.name}' has no command")
        return task(
            self.name,
            self._command,
            inputs=self._inputs,
            outputs=self._outputs,
            cpu=self._cpu,
            memory=self._memory,
            disk=self._disk,
            max_retries=self._max_retries,
            container=self._container,
            version=self._version,
        )


def build(name: str) -> TaskBuilder:
    """Convenience: build('index').define_input(...).define_command(...).build()"""
    return TaskBuilder(name)
