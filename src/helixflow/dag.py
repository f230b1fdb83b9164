# dag.py
"""
Graph Builder: workflow definition + concrete inputs -> explicit DAG.

The graph is an arena of nodes keyed by id plus an edge lookup table
(deps / dependents). Call statements become TaskInstance nodes; workflow
inputs, outputs and sub-workflow bindings become ExprNode/ConstNode; scatter
and conditional blocks become ScatterNode/ConditionalNode plus one
GatherNode/OptionalNode per name the block exports.

Block bodies are expanded lazily (expand_scatter / expand_conditional), once
the scheduler knows the array length or the guard value. Every node only ever
depends on nodes that already exist, so the graph is acyclic by construction.
"""
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import EvaluationError, UndeclaredReference, ValidationError
from .expr import Expr
from .model import Call, Conditional, Scatter, Statement, TaskSpec, WorkflowDef
from .values import ABSENT, Struct, Type, bind, coerce


class NodeState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL = frozenset({NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED})


class Scope:
    """Name -> node id, with lookup through enclosing scopes."""

    def __init__(self, parent: Optional["Scope"] = None):
        self.parent = parent
        self.names: Dict[str, str] = {}

    def declare(self, name: str, node_id: str) -> None:
        self.names[name] = node_id

    def resolve(self, name: str) -> Optional[str]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.names:
                return scope.names[name]
            scope = scope.parent
        return None


# ----------------------------------------------------------------------
# Nodes
# ----------------------------------------------------------------------

@dataclass(eq=False)
class Node:
    id: str
    scope: Optional[Scope] = None
    deps: Set[str] = field(default_factory=set)
    tolerant: Set[str] = field(default_factory=set)     # deps read as ABSENT if they fail
    state: NodeState = NodeState.PENDING
    result: Any = None
    error: Optional[str] = None
    failure: bool = False                               # skipped because of an upstream failure
    absent_deps: Set[str] = field(default_factory=set)  # tolerated failed deps (set by scheduler)
    partial: bool = False                               # succeeded, but some members read as ABSENT

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL

    @property
    def failed_like(self) -> bool:
        return self.state == NodeState.FAILED or (self.state == NodeState.SKIPPED and self.failure)

    def evaluate(self, graph: "Graph", lookup: Callable[[str], Any]) -> Any:
        raise NotImplementedError


@dataclass(eq=False)
class ConstNode(Node):
    value: Any = None

    def evaluate(self, graph, lookup):
        return self.value


@dataclass(eq=False)
class ExprNode(Node):
    expr: Optional[Expr] = None
    type: Optional[Type] = None

    def evaluate(self, graph, lookup):
        return coerce(self.type, self.expr.evaluate(lookup))


@dataclass(eq=False)
class StructNode(Node):
    """Sub-workflow call: its outputs as one struct value."""
    members: Dict[str, str] = field(default_factory=dict)

    def evaluate(self, graph, lookup):
        return Struct((name, graph.nodes[nid].result) for name, nid in self.members.items())


@dataclass(eq=False)
class GatherNode(Node):
    """
    Ordered gather of one exported name across scatter iterations.
    A failed iteration leaves ABSENT at its index, so the length always
    matches the collection.
    """
    members: List[str] = field(default_factory=list)

    def evaluate(self, graph, lookup):
        self.partial = bool(self.absent_deps) or any(graph.nodes[nid].partial for nid in self.members)
        return tuple(
            ABSENT if nid in self.absent_deps else graph.nodes[nid].result
            for nid in self.members
        )


@dataclass(eq=False)
class OptionalNode(Node):
    """A name exported from a conditional: the inner value, or ABSENT."""
    inner: Optional[str] = None

    def evaluate(self, graph, lookup):
        if self.inner is None:
            return ABSENT
        return graph.nodes[self.inner].result


@dataclass(eq=False)
class ScatterNode(Node):
    statement: Optional[Scatter] = None
    gathers: Dict[str, str] = field(default_factory=dict)

    def evaluate(self, graph, lookup):
        values = self.statement.collection.evaluate(lookup)
        if not isinstance(values, tuple):
            raise EvaluationError(f"scatter '{self.id}' needs an Array, got {values!r}")
        return values


@dataclass(eq=False)
class ConditionalNode(Node):
    statement: Optional[Conditional] = None
    optionals: Dict[str, str] = field(default_factory=dict)

    def evaluate(self, graph, lookup):
        guard = self.statement.condition.evaluate(lookup)
        if not isinstance(guard, bool):
            raise EvaluationError(f"condition '{self.id}' needs a Boolean, got {guard!r}")
        return guard


@dataclass(eq=False)
class TaskInstance(Node):
    """One concrete invocation of a TaskSpec."""
    spec: Optional[TaskSpec] = None
    alias: str = ""
    input_exprs: Mapping[str, Expr] = field(default_factory=dict)

    # filled in by the executor
    bindings: Optional[Struct] = None
    resources: Any = None
    fingerprint: Optional[str] = None
    attempts: int = 0
    cached: bool = False
    stderr: str = ""
    work_dir: Optional[str] = None


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------

class Graph:
    def __init__(self, workflow: WorkflowDef):
        self.workflow = workflow
        self.nodes: Dict[str, Node] = {}
        self.order: List[str] = []                       # creation order
        self.dependents: Dict[str, Set[str]] = defaultdict(set)
        self.outputs: Dict[str, str] = {}                # workflow output name -> node id

    def add(self, node: Node) -> Node:
        if node.id in self.nodes:
            raise ValidationError(f"Duplicate node id: {node.id}")
        self.nodes[node.id] = node
        self.order.append(node.id)
        for dep in node.deps:
            self.dependents[dep].add(node.id)
        return node

    def add_dependency(self, node_id: str, dep_id: str) -> None:
        self.nodes[node_id].deps.add(dep_id)
        self.dependents[dep_id].add(node_id)

    def task_instances(self) -> List[TaskInstance]:
        return [n for n in (self.nodes[i] for i in self.order) if isinstance(n, TaskInstance)]

    def topological_order(self) -> List[str]:
        """Kahn's algorithm over the current arena. Raises on a cycle."""
        indeg = {nid: len(self.nodes[nid].deps) for nid in self.order}
        q = deque(nid for nid in self.order if indeg[nid] == 0)
        out: List[str] = []
        while q:
            nid = q.popleft()
            out.append(nid)
            for child in sorted(self.dependents.get(nid, ())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        if len(out) != len(indeg):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise ValidationError(f"Graph has a cycle. Stuck nodes: {stuck}")
        return out


# ----------------------------------------------------------------------
# Static validation
# ----------------------------------------------------------------------

def block_label(statement: Statement, index: int) -> str:
    if statement.name:
        return statement.name
    if isinstance(statement, Scatter):
        return f"scatter_{statement.variable}"
    return f"if_{index}"


def exported_names(statements: Iterable[Statement]) -> List[str]:
    """Names a block makes visible to its enclosing scope."""
    names: List[str] = []
    for st in statements:
        if isinstance(st, Call):
            names.append(st.alias)
        else:
            names.extend(exported_names(st.body))
    return names


class _Symbols:
    def __init__(self, parent: Optional["_Symbols"] = None):
        self.parent = parent
        self.names: Dict[str, Any] = {}   # name -> call target (or None)

    def lookup(self, name: str) -> Tuple[bool, Any]:
        sym: Optional[_Symbols] = self
        while sym is not None:
            if name in sym.names:
                return True, sym.names[name]
            sym = sym.parent
        return False, None


def validate_workflow(workflow: WorkflowDef, _stack: Tuple[str, ...] = ()) -> None:
    """
    Check a definition before anything runs:
      - names are declared once per workflow
      - every reference points at something declared earlier in scope
      - call inputs exist and required ones are supplied
      - no sub-workflow recursion
    """
    if workflow.name in _stack:
        chain = " -> ".join(_stack + (workflow.name,))
        raise ValidationError(f"Workflow recursion: {chain}")
    stack = _stack + (workflow.name,)
    wf_name = workflow.name
    seen: Set[str] = set()

    def declare(symbols: _Symbols, name: str, target: Any = None) -> None:
        if name in seen or name in symbols.names:
            raise ValidationError(f"Workflow '{wf_name}': '{name}' is declared more than once")
        seen.add(name)
        symbols.names[name] = target

    def check(expr: Expr, symbols: _Symbols, where: str) -> None:
        for ref in expr.references:
            found, target = symbols.lookup(ref.name)
            if not found:
                raise UndeclaredReference(
                    f"Workflow '{wf_name}': {where} references '{ref.name}' before it is declared"
                )
            if ref.member is not None and target is not None and ref.member not in target.output_names:
                raise UndeclaredReference(
                    f"Workflow '{wf_name}': {where} reads '{ref.name}.{ref.member}', "
                    f"but '{target.name}' has outputs {list(target.output_names)}"
                )

    def walk(statements: Iterable[Statement], symbols: _Symbols) -> None:
        for index, st in enumerate(statements):
            if isinstance(st, Call):
                target = st.target
                if isinstance(target, WorkflowDef):
                    validate_workflow(target, stack)
                elif not isinstance(target, TaskSpec):
                    raise ValidationError(f"Workflow '{wf_name}': call '{st.alias}' has no task or workflow")
                params = {p.name: p for p in target.inputs}
                for key, expr in st.inputs.items():
                    if key not in params:
                        raise ValidationError(
                            f"Workflow '{wf_name}': call '{st.alias}' sets unknown input '{key}' "
                            f"of '{target.name}'"
                        )
                    check(expr, symbols, f"call '{st.alias}' input '{key}'")
                missing = [p.name for p in target.inputs if p.required and p.name not in st.inputs]
                if missing:
                    raise ValidationError(
                        f"Workflow '{wf_name}': call '{st.alias}' is missing required input(s) {missing}"
                    )
                declare(symbols, st.alias, target)
            elif isinstance(st, (Scatter, Conditional)):
                label = block_label(st, index)
                if label in seen:
                    raise ValidationError(f"Workflow '{wf_name}': block name '{label}' is already used")
                seen.add(label)
                inner = _Symbols(symbols)
                if isinstance(st, Scatter):
                    check(st.collection, symbols, f"scatter '{label}'")
                    # the variable is local to its block; sibling blocks may reuse it
                    if symbols.lookup(st.variable)[0]:
                        raise ValidationError(
                            f"Workflow '{wf_name}': scatter variable '{st.variable}' shadows an earlier name"
                        )
                    inner.names[st.variable] = None
                else:
                    check(st.condition, symbols, f"condition '{label}'")
                walk(st.body, inner)
                for name, target in inner.names.items():
                    if isinstance(st, Scatter) and name == st.variable:
                        continue
                    symbols.names[name] = target
            else:
                raise ValidationError(f"Workflow '{wf_name}': unknown statement {st!r}")

    root = _Symbols()
    for p in workflow.inputs:
        if p.default is not None:
            check(p.default, root, f"default for input '{p.name}'")
        declare(root, p.name)

    walk(workflow.body, root)

    names = [o.name for o in workflow.outputs]
    if len(set(names)) != len(names):
        raise ValidationError(f"Workflow '{wf_name}' has duplicate output names")
    for o in workflow.outputs:
        check(o.expr, root, f"output '{o.name}'")


# ----------------------------------------------------------------------
# Builder
# ----------------------------------------------------------------------

class GraphBuilder:
    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = base_dir

    def build(self, workflow: WorkflowDef, inputs: Optional[Mapping[str, Any]] = None) -> Graph:
        validate_workflow(workflow)
        inputs = dict(inputs or {})
        unknown = sorted(set(inputs) - {p.name for p in workflow.inputs})
        if unknown:
            raise ValidationError(f"Unknown input(s) for workflow '{workflow.name}': {unknown}")

        graph = Graph(workflow)
        scope = Scope()
        for p in workflow.inputs:
            node_id = f"input:{p.name}"
            if p.name in inputs:
                self._const(graph, node_id, bind(p, inputs[p.name], self.base_dir))
            elif p.default is not None:
                self._expr(graph, node_id, p.default, scope, p.type)
            elif p.type.optional:
                self._const(graph, node_id, ABSENT)
            else:
                raise ValidationError(
                    f"Missing required input '{p.name}' for workflow '{workflow.name}'"
                )
            scope.declare(p.name, node_id)

        self._instantiate(graph, workflow.body, scope, "")

        for o in workflow.outputs:
            node = self._expr(graph, f"output:{o.name}", o.expr, scope, o.type)
            graph.outputs[o.name] = node.id
        return graph

    # ---- lazy expansion (called by the scheduler) ----

    def expand_scatter(self, graph: Graph, node: ScatterNode, values: tuple) -> None:
        st = node.statement
        for i, item in enumerate(values):
            iscope = Scope(parent=node.scope)
            prefix = f"{node.id}[{i}]."
            var_id = prefix + st.variable
            self._const(graph, var_id, item)
            iscope.declare(st.variable, var_id)
            self._instantiate(graph, st.body, iscope, prefix)
            for name, gather_id in node.gathers.items():
                member_id = iscope.names[name]
                gather = graph.nodes[gather_id]
                gather.members.append(member_id)
                gather.tolerant.add(member_id)
                graph.add_dependency(gather_id, member_id)

    def expand_conditional(self, graph: Graph, node: ConditionalNode, guard: bool) -> None:
        cscope = Scope(parent=node.scope)
        prefix = f"{node.id}."
        if not guard:
            self._instantiate(graph, node.statement.body, cscope, prefix, skipped="condition false")
            return
        self._instantiate(graph, node.statement.body, cscope, prefix)
        for name, opt_id in node.optionals.items():
            inner = cscope.names[name]
            graph.nodes[opt_id].inner = inner
            graph.add_dependency(opt_id, inner)

    # ---- instantiation ----

    def _instantiate(
        self,
        graph: Graph,
        statements: Iterable[Statement],
        scope: Scope,
        prefix: str,
        skipped: Optional[str] = None,
    ) -> None:
        for index, st in enumerate(statements):
            if isinstance(st, Call):
                self._call(graph, st, scope, prefix, skipped)
            else:
                self._block(graph, st, scope, prefix, block_label(st, index), skipped)

    def _call(self, graph: Graph, st: Call, scope: Scope, prefix: str, skipped: Optional[str]) -> None:
        node_id = prefix + st.alias
        target = st.target
        if isinstance(target, TaskSpec):
            node = TaskInstance(id=node_id, scope=scope, spec=target, alias=st.alias,
                                input_exprs=dict(st.inputs))
            self._add(graph, node, st.inputs.values(), scope, skipped)
            scope.declare(st.alias, node_id)
            return

        # sub-workflow: inline its body under "<alias>."
        sub = Scope()
        sub_prefix = node_id + "."
        for p in target.inputs:
            pid = f"{sub_prefix}input:{p.name}"
            if p.name in st.inputs:
                self._expr(graph, pid, st.inputs[p.name], scope, p.type, skipped)
            elif p.default is not None:
                self._expr(graph, pid, p.default, sub, p.type, skipped)
            else:
                self._const(graph, pid, ABSENT, skipped)
            sub.declare(p.name, pid)

        self._instantiate(graph, target.body, sub, sub_prefix, skipped)

        members: Dict[str, str] = {}
        for o in target.outputs:
            oid = f"{sub_prefix}output:{o.name}"
            self._expr(graph, oid, o.expr, sub, o.type, skipped)
            members[o.name] = oid
        node = StructNode(id=node_id, members=members)
        self._add_fixed(graph, node, members.values(), skipped)
        scope.declare(st.alias, node_id)

    def _block(self, graph: Graph, st: Statement, scope: Scope, prefix: str, label: str,
               skipped: Optional[str]) -> None:
        block_id = prefix + label
        if isinstance(st, Scatter):
            node: Node = ScatterNode(id=block_id, scope=scope, statement=st)
            self._add(graph, node, [st.collection], scope, skipped)
            for name in exported_names(st.body):
                gather = self._add_fixed(graph, GatherNode(id=prefix + name), [block_id], skipped)
                node.gathers[name] = gather.id
                scope.declare(name, gather.id)
        else:
            node = ConditionalNode(id=block_id, scope=scope, statement=st)
            self._add(graph, node, [st.condition], scope, skipped)
            for name in exported_names(st.body):
                opt = self._add_fixed(graph, OptionalNode(id=prefix + name), [block_id], skipped)
                node.optionals[name] = opt.id
                scope.declare(name, opt.id)

    # ---- node helpers ----

    def _const(self, graph: Graph, node_id: str, value: Any, skipped: Optional[str] = None) -> Node:
        node = ConstNode(id=node_id, value=value)
        if skipped:
            node.state, node.error = NodeState.SKIPPED, skipped
        else:
            node.state, node.result = NodeState.SUCCEEDED, value
        return graph.add(node)

    def _expr(self, graph: Graph, node_id: str, expr: Expr, scope: Scope, type_: Type,
              skipped: Optional[str] = None) -> Node:
        node = ExprNode(id=node_id, scope=scope, expr=expr, type=type_)
        return self._add(graph, node, [expr], scope, skipped)

    def _add(self, graph: Graph, node: Node, exprs: Iterable[Expr], scope: Scope,
             skipped: Optional[str]) -> Node:
        if skipped:
            node.state, node.error = NodeState.SKIPPED, skipped
            return graph.add(node)

        tolerant: Dict[str, bool] = {}
        for expr in exprs:
            for ref in expr.references:
                target = scope.resolve(ref.name)
                if target is None:
                    raise UndeclaredReference(f"'{node.id}' references undeclared '{ref.name}'")
                node.deps.add(target)
                tolerant[target] = tolerant.get(target, True) and ref.tolerant
        node.tolerant = {t for t, ok in tolerant.items() if ok}
        return graph.add(node)

    def _add_fixed(self, graph: Graph, node: Node, deps: Iterable[str], skipped: Optional[str]) -> Node:
        if skipped:
            node.state, node.error = NodeState.SKIPPED, skipped
        else:
            node.deps.update(deps)
        return graph.add(node)
