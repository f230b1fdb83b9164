# scheduler.py
from __future__ import annotations

import os
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from .dag import (
    ConditionalNode,
    Graph,
    GraphBuilder,
    Node,
    NodeState,
    ScatterNode,
    TaskInstance,
)
from .errors import TaskFailed
from .executor import TaskExecutor
from .ui.console import get_console
from .values import ABSENT, to_json


@dataclass
class NodeReport:
    id: str
    task: str
    state: NodeState
    attempts: int = 0
    cached: bool = False
    fingerprint: Optional[str] = None
    error: Optional[str] = None
    stderr: str = ""
    work_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task,
            "state": self.state.value,
            "attempts": self.attempts,
            "cached": self.cached,
            "fingerprint": self.fingerprint,
            "error": self.error,
            "stderr": self.stderr,
            "work_dir": self.work_dir,
        }


@dataclass
class RunReport:
    workflow: str
    status: str                                  # "succeeded" | "failed"
    tasks: List[NodeReport] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)   # failed non-task nodes

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def task(self, node_id: str) -> NodeReport:
        for t in self.tasks:
            if t.id == node_id:
                return t
        raise KeyError(node_id)

    def states(self) -> Dict[str, str]:
        return {t.id: t.state.value for t in self.tasks}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "status": self.status,
            "outputs": {k: to_json(v) for k, v in self.outputs.items()},
            "tasks": [t.to_dict() for t in self.tasks],
            "errors": dict(self.errors),
        }


def default_max_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Single-threaded coordination over a thread pool.

    Non-task nodes (inputs, expressions, gathers, scatter/conditional guards)
    are evaluated inline on the coordinator. Task instances are prepared
    inline, then executed on the pool; the coordinator waits for one
    completion at a time and re-checks the dependents.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        builder: GraphBuilder,
        *,
        max_workers: int | None = None,
        max_cpu: int | None = None,
        fail_fast: bool = False,
    ):
        self.executor = executor
        self.builder = builder
        self.max_workers = max_workers or default_max_workers()
        self.max_cpu = max_cpu or os.cpu_count() or 1
        self.fail_fast = fail_fast

    def run(self, graph: Graph) -> RunReport:
        console = get_console()
        work: Deque[str] = deque(graph.order)
        ready: Deque[TaskInstance] = deque()
        in_flight: Dict[Future, TaskInstance] = {}
        reserved_cpu = 0
        aborted = False

        def enqueue_dependents(node: Node) -> None:
            work.extend(sorted(graph.dependents.get(node.id, ())))

        def finish(node: Node, state: NodeState, *, result: Any = None, error: str | None = None,
                   failure: bool = False) -> None:
            node.state, node.result, node.error, node.failure = state, result, error, failure
            enqueue_dependents(node)

        def fail(node: Node, exc: BaseException) -> None:
            nonlocal aborted
            finish(node, NodeState.FAILED, error=str(exc))
            if self.fail_fast:
                aborted = True
            if isinstance(node, TaskInstance):
                if isinstance(exc, TaskFailed):
                    node.stderr = exc.stderr
                console.print_task_failure(node.id, str(exc), getattr(exc, "exit_code", None), node.stderr)
            else:
                console.print_debug(f"{node.id} failed: {exc}")

        def skip(node: Node, reason: str, failure: bool) -> None:
            finish(node, NodeState.SKIPPED, error=reason, failure=failure)
            if isinstance(node, TaskInstance):
                console.print_task_skipped(node.id, reason)

        def lookup_for(node: Node) -> Callable[[str], Any]:
            def lookup(name: str) -> Any:
                nid = node.scope.resolve(name) if node.scope is not None else None
                if nid is None:
                    raise KeyError(name)
                if nid in node.absent_deps:
                    return ABSENT
                dep = graph.nodes[nid]
                if dep.state != NodeState.SUCCEEDED:
                    raise KeyError(name)
                return dep.result
            return lookup

        def drain() -> None:
            while work:
                node = graph.nodes[work.popleft()]
                if node.terminal or node.state in (NodeState.READY, NodeState.RUNNING, NodeState.RETRYING):
                    continue

                deps = [graph.nodes[d] for d in sorted(node.deps)]
                if any(not d.terminal for d in deps):
                    node.state = NodeState.BLOCKED
                    continue

                # a partial gather only reaches consumers that tolerate missing items
                bad = [d for d in deps if d.state != NodeState.SUCCEEDED or d.partial]
                blocking = [d for d in bad if d.id not in node.tolerant]
                if blocking:
                    first = blocking[0]
                    failure = any(d.failed_like or d.partial for d in blocking)
                    state = "partially failed" if first.partial else first.state.value
                    skip(node, f"upstream '{first.id}' {state}", failure)
                    continue
                node.absent_deps = {d.id for d in bad if d.state != NodeState.SUCCEEDED}

                if isinstance(node, TaskInstance):
                    try:
                        self.executor.prepare(node, lookup_for(node))
                    except Exception as e:
                        fail(node, e)
                        continue
                    node.state = NodeState.READY
                    ready.append(node)
                    continue

                try:
                    value = node.evaluate(graph, lookup_for(node))
                    if isinstance(node, ScatterNode):
                        before = len(graph.order)
                        self.builder.expand_scatter(graph, node, value)
                        work.extend(graph.order[before:])
                    elif isinstance(node, ConditionalNode):
                        before = len(graph.order)
                        self.builder.expand_conditional(graph, node, value)
                        work.extend(graph.order[before:])
                except Exception as e:
                    fail(node, e)
                    continue
                finish(node, NodeState.SUCCEEDED, result=value)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                while True:
                    drain()

                    if aborted:
                        while ready:
                            skip(ready.popleft(), "run aborted", True)
                        if work:
                            continue

                    # schedule what fits: worker slots and cpu budget
                    while ready and len(in_flight) < self.max_workers:
                        inst = ready[0]
                        cpu = inst.resources.cpu
                        if in_flight and reserved_cpu + cpu > self.max_cpu:
                            break
                        ready.popleft()
                        inst.state = NodeState.RUNNING
                        console.print_task_start(inst.id, inst.spec.name)
                        fut = pool.submit(self.executor.execute, inst)
                        in_flight[fut] = inst
                        reserved_cpu += cpu

                    if not in_flight:
                        if work or ready:
                            continue
                        break

                    # wait for one completion, then loop to schedule newly-ready nodes
                    fut = next(as_completed(list(in_flight.keys())))
                    inst = in_flight.pop(fut)
                    reserved_cpu -= inst.resources.cpu

                    try:
                        outputs = fut.result()
                    except Exception as e:
                        fail(inst, e)
                        continue
                    finish(inst, NodeState.SUCCEEDED, result=outputs)
                    console.print_task_success(inst.id, cached=inst.cached)
            except KeyboardInterrupt:
                for f in in_flight:
                    f.cancel()
                raise

        return self._report(graph)

    def _report(self, graph: Graph) -> RunReport:
        tasks = [
            NodeReport(
                id=t.id,
                task=t.spec.name,
                state=t.state,
                attempts=t.attempts,
                cached=t.cached,
                fingerprint=t.fingerprint,
                error=t.error,
                stderr=t.stderr,
                work_dir=t.work_dir,
            )
            for t in graph.task_instances()
        ]
        errors = {
            nid: n.error or ""
            for nid, n in graph.nodes.items()
            if n.state == NodeState.FAILED and not isinstance(n, TaskInstance)
        }
        outputs = {
            name: graph.nodes[nid].result
            for name, nid in graph.outputs.items()
            if graph.nodes[nid].state == NodeState.SUCCEEDED
        }
        failed = any(n.failed_like for n in graph.nodes.values())
        return RunReport(
            workflow=graph.workflow.name,
            status="failed" if failed else "succeeded",
            tasks=tasks,
            outputs=outputs,
            errors=errors,
        )
