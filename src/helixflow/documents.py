# documents.py
"""
JSON workflow documents.

    {
      "imports":   {"qc": "qc.workflow.json"},
      "tasks":     {"samtools_index": {"inputs": [...], "outputs": [...],
                                       "command": "...", "runtime": {...}}},
      "workflows": {"main": {"inputs": [...], "body": [...], "outputs": [...]}},
      "main": "main"
    }

Statements:
    {"call": "samtools_index", "as": "index", "inputs": {"bam": "bam"}}
    {"scatter": "bam", "in": "bams", "body": [...]}
    {"if": "run_qc", "body": [...]}

Imported definitions are referenced as "<alias>.<name>".
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .dsl import call, output, param, scatter, task, wf, wf_output, when
from .errors import ValidationError
from .model import Statement, TaskSpec, WorkflowDef


# -------------------- Schemas --------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ParamDoc(_Doc):
    name: str
    type: str
    default: Any = None
    sep: str = " "
    true: str = "true"
    false: str = "false"


class OutputDoc(_Doc):
    name: str
    type: str
    path: Optional[str] = None
    glob: Optional[str] = None
    read: Optional[str] = None


class RuntimeDoc(_Doc):
    cpu: Union[int, str] = 1
    memory: Optional[str] = None
    disk: Optional[str] = None
    max_retries: int = Field(default=0, alias="maxRetries", ge=0)
    container: Optional[str] = None


class TaskDoc(_Doc):
    command: str
    inputs: List[ParamDoc] = Field(default_factory=list)
    outputs: List[OutputDoc] = Field(default_factory=list)
    runtime: RuntimeDoc = Field(default_factory=RuntimeDoc)
    version: Optional[str] = None


class CallDoc(_Doc):
    call: str
    alias: Optional[str] = Field(default=None, alias="as")
    inputs: Dict[str, Any] = Field(default_factory=dict)


class ScatterDoc(_Doc):
    scatter: str
    collection: str = Field(alias="in")
    body: List["StatementDoc"]
    name: Optional[str] = None


class ConditionalDoc(_Doc):
    condition: str = Field(alias="if")
    body: List["StatementDoc"]
    name: Optional[str] = None


StatementDoc = Union[CallDoc, ScatterDoc, ConditionalDoc]


class WorkflowOutputDoc(_Doc):
    name: str
    type: str
    expr: str


class WorkflowDoc(_Doc):
    inputs: List[ParamDoc] = Field(default_factory=list)
    body: List[StatementDoc] = Field(default_factory=list)
    outputs: List[WorkflowOutputDoc] = Field(default_factory=list)


class Document(_Doc):
    imports: Dict[str, str] = Field(default_factory=dict)
    tasks: Dict[str, TaskDoc] = Field(default_factory=dict)
    workflows: Dict[str, WorkflowDoc] = Field(default_factory=dict)
    main: Optional[str] = None


ScatterDoc.model_rebuild()
ConditionalDoc.model_rebuild()
WorkflowDoc.model_rebuild()


# -------------------- Loading --------------------

def parse_document(data: Any, source: str = "<document>") -> Document:
    try:
        return Document.model_validate(data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"{source}: invalid workflow document: {details}") from None


def _param(p: ParamDoc):
    return param(p.name, p.type, p.default, sep=p.sep, true=p.true, false=p.false)


def _task(name: str, td: TaskDoc) -> TaskSpec:
    rt = td.runtime
    return task(
        name,
        td.command,
        inputs=[_param(p) for p in td.inputs],
        outputs=[output(o.name, o.type, path=o.path, glob=o.glob, read=o.read) for o in td.outputs],
        cpu=rt.cpu,
        memory=rt.memory,
        disk=rt.disk,
        max_retries=rt.max_retries,
        container=rt.container,
        version=td.version,
    )


class _Namespace:
    """Definitions of one document, with its imports resolved through the loader."""

    def __init__(self, path: Path, doc: Document, loader: "DocumentLoader"):
        self.path = path
        self.doc = doc
        self.loader = loader
        self.tasks = {name: _task(name, td) for name, td in doc.tasks.items()}
        self.workflows: Dict[str, WorkflowDef] = {}
        self._building: List[str] = []

    def target(self, ref: str) -> TaskSpec | WorkflowDef:
        if "." in ref:
            alias, _, name = ref.partition(".")
            if alias not in self.doc.imports:
                raise ValidationError(f"{self.path}: unknown import '{alias}' in '{ref}'")
            imported = self.loader.namespace(self.path.parent / self.doc.imports[alias])
            return imported.target(name)
        if ref in self.tasks:
            return self.tasks[ref]
        if ref in self.doc.workflows:
            return self.workflow(ref)
        raise ValidationError(f"{self.path}: unknown task or workflow '{ref}'")

    def workflow(self, name: str) -> WorkflowDef:
        if name in self.workflows:
            return self.workflows[name]
        if name in self._building:
            chain = " -> ".join(self._building + [name])
            raise ValidationError(f"{self.path}: workflow recursion: {chain}")
        if name not in self.doc.workflows:
            raise ValidationError(f"{self.path}: unknown workflow '{name}'")

        self._building.append(name)
        try:
            wd = self.doc.workflows[name]
            self.workflows[name] = wf(
                name,
                *self._statements(wd.body),
                inputs=[_param(p) for p in wd.inputs],
                outputs=[wf_output(o.name, o.type, o.expr) for o in wd.outputs],
            )
        finally:
            self._building.pop()
        return self.workflows[name]

    def _statements(self, body: List[StatementDoc]) -> List[Statement]:
        out: List[Statement] = []
        for st in body:
            if isinstance(st, CallDoc):
                target = self.target(st.call)
                out.append(call(target, st.alias or st.call.rpartition(".")[2], st.inputs))
            elif isinstance(st, ScatterDoc):
                out.append(scatter(st.scatter, st.collection, *self._statements(st.body), name=st.name))
            else:
                out.append(when(st.condition, *self._statements(st.body), name=st.name))
        return out

    def main(self) -> WorkflowDef:
        name = self.doc.main
        if name is None:
            if len(self.doc.workflows) != 1:
                raise ValidationError(
                    f"{self.path}: set \"main\" (document defines {len(self.doc.workflows)} workflows)"
                )
            name = next(iter(self.doc.workflows))
        return self.workflow(name)


class DocumentLoader:
    def __init__(self):
        self._namespaces: Dict[Path, _Namespace] = {}
        self._loading: List[Path] = []

    def namespace(self, path: str | Path) -> _Namespace:
        p = Path(path).expanduser().resolve()
        if p in self._namespaces:
            return self._namespaces[p]
        if p in self._loading:
            raise ValidationError(f"Import cycle: {' -> '.join(str(x) for x in self._loading + [p])}")
        if not p.exists():
            raise ValidationError(f"Workflow document not found: {p}")

        self._loading.append(p)
        try:
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValidationError(f"{p}: invalid JSON: {e}") from None
            ns = _Namespace(p, parse_document(data, str(p)), self)
            # resolve imports eagerly so cycles surface at load time
            for rel in ns.doc.imports.values():
                self.namespace(p.parent / rel)
        finally:
            self._loading.pop()
        self._namespaces[p] = ns
        return ns


def load_document(path: str | Path) -> WorkflowDef:
    """Load a JSON workflow document and return its main workflow."""
    return DocumentLoader().namespace(path).main()
