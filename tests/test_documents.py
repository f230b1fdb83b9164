from __future__ import annotations

import json

import pytest

from helixflow.documents import load_document, parse_document
from helixflow.errors import ValidationError
from helixflow.model import Scatter, TaskSpec, WorkflowDef
from helixflow.runner import load_workflow, run_workflow

ECHO_TASK = {
    "command": "echo ~{msg} > out.txt",
    "inputs": [{"name": "msg", "type": "String"}],
    "outputs": [{"name": "text", "type": "String", "read": "out.txt"}],
    "runtime": {"cpu": 1, "maxRetries": 1},
    "version": "1",
}

GREET = {
    "inputs": [{"name": "names", "type": "Array[String]"}],
    "body": [
        {
            "scatter": "n",
            "in": "names",
            "body": [{"call": "echo", "as": "greet", "inputs": {"msg": "'hello ' + n"}}],
        }
    ],
    "outputs": [{"name": "greetings", "type": "Array[String]", "expr": "greet.text"}],
}


def _write(path, doc):
    path.write_text(json.dumps(doc))
    return path


def test_load_document(tmp_path) -> None:
    path = _write(tmp_path / "greet.workflow.json", {"tasks": {"echo": ECHO_TASK}, "workflows": {"greet": GREET}})
    workflow = load_document(path)

    assert isinstance(workflow, WorkflowDef)
    assert workflow.name == "greet"
    block = workflow.body[0]
    assert isinstance(block, Scatter)
    spec = block.body[0].target
    assert isinstance(spec, TaskSpec)
    assert spec.resources.max_retries == 1
    assert load_workflow(path).name == "greet"


def test_document_runs(tmp_path, config) -> None:
    path = _write(tmp_path / "greet.workflow.json", {"tasks": {"echo": ECHO_TASK}, "workflows": {"greet": GREET}})
    report = run_workflow(load_document(path), {"names": ["ada", "alan"]}, config=config)
    assert report.succeeded
    assert report.outputs["greetings"] == ("hello ada", "hello alan")


def test_imports_resolve_relative_to_document(tmp_path) -> None:
    (tmp_path / "lib").mkdir()
    _write(tmp_path / "lib" / "tools.json", {"tasks": {"echo": ECHO_TASK}})
    main = {
        "imports": {"tools": "lib/tools.json"},
        "workflows": {
            "one": {"body": [{"call": "tools.echo", "inputs": {"msg": "'x'"}}]},
        },
    }
    workflow = load_document(_write(tmp_path / "main.json", main))
    assert workflow.body[0].alias == "echo"
    assert workflow.body[0].target.name == "echo"


def test_import_cycle(tmp_path) -> None:
    _write(tmp_path / "a.json", {"imports": {"b": "b.json"}, "tasks": {"echo": ECHO_TASK}})
    _write(tmp_path / "b.json", {"imports": {"a": "a.json"}, "tasks": {"echo": ECHO_TASK}})
    with pytest.raises(ValidationError, match="Import cycle"):
        load_document(tmp_path / "a.json")


def test_workflow_recursion(tmp_path) -> None:
    doc = {
        "main": "a",
        "workflows": {
            "a": {"body": [{"call": "b"}]},
            "b": {"body": [{"call": "a"}]},
        },
    }
    with pytest.raises(ValidationError, match="recursion"):
        load_document(_write(tmp_path / "loop.json", doc))


def test_main_is_required_with_several_workflows(tmp_path) -> None:
    doc = {"tasks": {"echo": ECHO_TASK}, "workflows": {"greet": GREET, "again": GREET}}
    with pytest.raises(ValidationError, match="main"):
        load_document(_write(tmp_path / "two.json", doc))


def test_schema_errors_become_validation_errors() -> None:
    with pytest.raises(ValidationError, match="colour"):
        parse_document({"tasks": {"echo": {**ECHO_TASK, "colour": "red"}}})
    with pytest.raises(ValidationError):
        parse_document({"tasks": {"echo": {**ECHO_TASK, "runtime": {"maxRetries": -1}}}})


def test_bad_json(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{")
    with pytest.raises(ValidationError, match="invalid JSON"):
        load_document(path)
