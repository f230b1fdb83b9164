from __future__ import annotations

import pytest

from helixflow.dag import GraphBuilder, NodeState, TaskInstance, validate_workflow
from helixflow.dsl import build, call, output, param, scatter, task, wf, wf_output, when
from helixflow.errors import TypeMismatch, UndeclaredReference, UnresolvedDependency, ValidationError

ECHO = task(
    "echo",
    "echo ~{msg} > out.txt",
    inputs=[param("msg", "String")],
    outputs=[output("text", "String", read="out.txt")],
)


def _chain():
    return wf(
        "chain",
        call(ECHO, "a", msg="name"),
        call(ECHO, "b", msg="a.text"),
        inputs=[param("name", "String")],
        outputs=[wf_output("final", "String", "b.text")],
    )


# ---- task declarations ----

def test_task_default_must_use_earlier_inputs() -> None:
    with pytest.raises(UnresolvedDependency):
        task("t", "echo", inputs=[param("a", "String", "b"), param("b", "String")])


def test_task_command_must_reference_inputs() -> None:
    with pytest.raises(UndeclaredReference):
        task("t", "echo ~{nope}")


def test_output_rule_must_fit_type() -> None:
    with pytest.raises(ValidationError):
        output("n", "Int", path="n.txt")
    with pytest.raises(ValidationError):
        output("n", "File", path="a", read="b")


def test_builder_needs_a_command() -> None:
    with pytest.raises(ValidationError):
        build("empty").define_input("x", "Int").build()
    spec = (
        build("sort")
        .define_input("bam", "File")
        .define_command("samtools sort ~{bam}")
        .with_resources(cpu=2, max_retries=1)
        .build()
    )
    assert spec.resources.max_retries == 1
    assert spec.input("bam") is not None


# ---- workflow validation ----

def test_forward_reference_is_rejected() -> None:
    bad = wf("w", call(ECHO, "b", msg="a.text"), call(ECHO, "a", msg="'x'"))
    with pytest.raises(UndeclaredReference):
        validate_workflow(bad)


def test_member_must_be_a_declared_output() -> None:
    bad = wf("w", call(ECHO, "a", msg="'x'"), call(ECHO, "b", msg="a.missing"))
    with pytest.raises(UndeclaredReference):
        validate_workflow(bad)


def test_duplicate_alias_is_rejected() -> None:
    bad = wf("w", call(ECHO, "a", msg="'x'"), call(ECHO, "a", msg="'y'"))
    with pytest.raises(ValidationError, match="more than once"):
        validate_workflow(bad)


def test_call_inputs_are_checked() -> None:
    with pytest.raises(ValidationError, match="missing required"):
        validate_workflow(wf("w", call(ECHO, "a")))
    with pytest.raises(ValidationError, match="unknown input"):
        validate_workflow(wf("w", call(ECHO, "a", msg="'x'", colour="'red'")))


def test_scatter_variable_is_not_visible_outside() -> None:
    bad = wf(
        "w",
        scatter("s", "items", call(ECHO, "e", msg="s")),
        call(ECHO, "after", msg="s"),
        inputs=[param("items", "Array[String]")],
    )
    with pytest.raises(UndeclaredReference):
        validate_workflow(bad)


def test_sibling_scatters_may_reuse_a_variable() -> None:
    workflow = wf(
        "w",
        scatter("s", "items", call(ECHO, "first", msg="s"), name="one"),
        scatter("s", "items", call(ECHO, "second", msg="s"), name="two"),
        inputs=[param("items", "Array[String]")],
    )
    validate_workflow(workflow)
    graph = GraphBuilder().build(workflow, {"items": ["x"]})
    assert {"one", "two", "first", "second"} <= set(graph.nodes)

    with pytest.raises(ValidationError, match="shadows"):
        validate_workflow(wf("w", scatter("items", "items", call(ECHO, "e", msg="items")),
                             inputs=[param("items", "Array[String]")]))
    with pytest.raises(ValidationError, match="more than once"):
        validate_workflow(wf("w", scatter("s", "items", call(ECHO, "s", msg="'x'")),
                             inputs=[param("items", "Array[String]")]))


# ---- graph building ----

def test_build_checks_inputs() -> None:
    builder = GraphBuilder()
    with pytest.raises(ValidationError, match="Missing required input"):
        builder.build(_chain(), {})
    with pytest.raises(ValidationError, match="Unknown input"):
        builder.build(_chain(), {"name": "x", "extra": 1})
    with pytest.raises(TypeMismatch):
        builder.build(_chain(), {"name": 5})


def test_graph_ids_and_order() -> None:
    graph = GraphBuilder().build(_chain(), {"name": "x"})
    assert set(graph.nodes) == {"input:name", "a", "b", "output:final"}
    assert graph.nodes["b"].deps == {"a"}
    order = graph.topological_order()
    for nid in order:
        for dep in graph.nodes[nid].deps:
            assert order.index(dep) < order.index(nid)


def test_scatter_expands_in_collection_order() -> None:
    workflow = wf(
        "w",
        scatter("s", "items", call(ECHO, "e", msg="s")),
        inputs=[param("items", "Array[String]")],
        outputs=[wf_output("texts", "Array[String]", "e.text")],
    )
    builder = GraphBuilder()
    graph = builder.build(workflow, {"items": ["x", "y", "z"]})
    node = graph.nodes["scatter_s"]
    builder.expand_scatter(graph, node, ("x", "y", "z"))

    gather = graph.nodes["e"]
    assert gather.members == ["scatter_s[0].e", "scatter_s[1].e", "scatter_s[2].e"]
    assert [t.id for t in graph.task_instances()] == gather.members
    assert graph.nodes["scatter_s[1].e"].deps == {"scatter_s[1].s"}


def test_false_conditional_is_built_skipped() -> None:
    workflow = wf(
        "w",
        when("flag", call(ECHO, "e", msg="'hi'")),
        inputs=[param("flag", "Boolean")],
    )
    builder = GraphBuilder()
    graph = builder.build(workflow, {"flag": False})
    builder.expand_conditional(graph, graph.nodes["if_0"], False)
    skipped = graph.nodes["if_0.e"]
    assert isinstance(skipped, TaskInstance)
    assert skipped.state == NodeState.SKIPPED
    assert not skipped.failed_like
    assert graph.nodes["e"].inner is None


def test_sub_workflow_is_inlined() -> None:
    inner = wf(
        "inner",
        call(ECHO, "say", msg="word"),
        inputs=[param("word", "String", "'default'")],
        outputs=[wf_output("said", "String", "say.text")],
    )
    outer = wf(
        "outer",
        call(inner, "sub"),
        call(ECHO, "after", msg="sub.said"),
    )
    graph = GraphBuilder().build(outer, {})
    assert "sub.say" in graph.nodes
    assert "sub.input:word" in graph.nodes
    assert graph.nodes["sub"].members == {"said": "sub.output:said"}
    assert graph.nodes["after"].deps == {"sub"}


def test_tolerant_dependencies() -> None:
    workflow = wf(
        "w",
        call(ECHO, "a", msg="'1'"),
        call(ECHO, "b", msg="'2'"),
        call(ECHO, "pick", msg="select_first([a.text, b.text])"),
        call(ECHO, "strict", msg="a.text + select_first([b.text])"),
    )
    graph = GraphBuilder().build(workflow, {})
    assert graph.nodes["pick"].tolerant == {"a", "b"}
    assert graph.nodes["strict"].tolerant == {"b"}
