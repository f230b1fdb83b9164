# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple, Union

from .errors import UndeclaredReference, UnresolvedDependency, ValidationError
from .expr import Expr, Template
from .values import Type


@dataclass(frozen=True)
class Param:
    """A typed input parameter (task or workflow)."""
    name: str
    type: Type
    default: Optional[Expr] = None

    # command rendering
    sep: str = " "            # joins Array values
    true: str = "true"        # token for Boolean true
    false: str = "false"      # token for Boolean false

    @property
    def required(self) -> bool:
        return not self.type.optional and self.default is None


@dataclass(frozen=True)
class Output:
    """
    A declared task output plus its extraction rule (exactly one of):
      - path: fixed file (File / File?)
      - glob: pattern relative to the task dir (Array[File])
      - read: result file parsed per the declared type
    """
    name: str
    type: Type
    path: Optional[Template] = None
    glob: Optional[Template] = None
    read: Optional[Template] = None

    def __post_init__(self) -> None:
        rules = [r for r in (self.path, self.glob, self.read) if r is not None]
        if len(rules) != 1:
            raise ValidationError(
                f"Output '{self.name}' needs exactly one of path/glob/read"
            )
        base = self.type.required()
        if self.path is not None and base.kind != "File":
            raise ValidationError(f"Output '{self.name}': path rule needs a File type, got {self.type}")
        if self.glob is not None and not (base.kind == "Array" and base.item.required().kind == "File"):
            raise ValidationError(f"Output '{self.name}': glob rule needs Array[File], got {self.type}")

    @property
    def rule(self) -> Tuple[str, Template]:
        if self.path is not None:
            return "path", self.path
        if self.glob is not None:
            return "glob", self.glob
        return "read", self.read


@dataclass(frozen=True)
class Resources:
    cpu: Template = field(default_factory=lambda: Template("1"))
    memory: Optional[Template] = None
    disk: Optional[Template] = None
    max_retries: int = 0
    container: Optional[str] = None

    def templates(self) -> list[Template]:
        return [t for t in (self.cpu, self.memory, self.disk) if t is not None]


@dataclass(frozen=True)
class TaskSpec:
    """Static description of one external-tool invocation."""
    name: str
    command: Template
    inputs: Tuple[Param, ...] = ()
    outputs: Tuple[Output, ...] = ()
    resources: Resources = field(default_factory=Resources)
    version: Optional[str] = None

    def __post_init__(self) -> None:
        names = [p.name for p in self.inputs]
        if len(set(names)) != len(names):
            raise ValidationError(f"Task '{self.name}' has duplicate input names")
        outs = [o.name for o in self.outputs]
        if len(set(outs)) != len(outs):
            raise ValidationError(f"Task '{self.name}' has duplicate output names")
        if self.resources.max_retries < 0:
            raise ValidationError(f"Task '{self.name}': max_retries must be >= 0")

        # defaults may only look at earlier inputs
        for i, p in enumerate(self.inputs):
            if p.default is None:
                continue
            earlier = set(names[:i])
            for ref in p.default.references:
                if ref.name not in earlier:
                    raise UnresolvedDependency(
                        f"Task '{self.name}': default for '{p.name}' refers to "
                        f"'{ref.name}', which is not an earlier input"
                    )

        known = set(names)
        templates = [("command", self.command)]
        templates += [(f"output '{o.name}'", o.rule[1]) for o in self.outputs]
        templates += [("resources", t) for t in self.resources.templates()]
        for where, template in templates:
            for ref in template.references:
                if ref.name not in known:
                    raise UndeclaredReference(
                        f"Task '{self.name}': {where} references undeclared input '{ref.name}'"
                    )

    def input(self, name: str) -> Optional[Param]:
        for p in self.inputs:
            if p.name == name:
                return p
        return None

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(o.name for o in self.outputs)


# ----------------------------------------------------------------------
# Workflow statements
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Call:
    target: Union[TaskSpec, "WorkflowDef"]
    alias: str
    inputs: Mapping[str, Expr] = field(default_factory=dict)


@dataclass(frozen=True)
class Scatter:
    variable: str
    collection: Expr
    body: Tuple["Statement", ...]
    name: Optional[str] = None


@dataclass(frozen=True)
class Conditional:
    condition: Expr
    body: Tuple["Statement", ...]
    name: Optional[str] = None


Statement = Union[Call, Scatter, Conditional]


@dataclass(frozen=True)
class WorkflowOutput:
    name: str
    type: Type
    expr: Expr


@dataclass(frozen=True)
class WorkflowDef:
    name: str
    body: Tuple[Statement, ...] = ()
    inputs: Tuple[Param, ...] = ()
    outputs: Tuple[WorkflowOutput, ...] = ()

    def input(self, name: str) -> Optional[Param]:
        for p in self.inputs:
            if p.name == name:
                return p
        return None

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(o.name for o in self.outputs)
