from __future__ import annotations

import json

from click.testing import CliRunner

from helixflow.cli import EXIT_EXECUTION_FAILED, EXIT_OK, EXIT_VALIDATION_ERROR, cli

WORKFLOW = '''
from helixflow.dsl import call, output, param, task, wf, wf_output

ECHO = task(
    "echo",
    "echo ~{msg} > out.txt\\nexit ~{code}",
    inputs=[param("msg", "String"), param("code", "Int", 0)],
    outputs=[output("text", "String", read="out.txt")],
)


def workflow():
    return wf(
        "hello",
        call(ECHO, "say", msg="msg", code="code"),
        inputs=[param("msg", "String"), param("code", "Int", 0)],
        outputs=[wf_output("text", "String", "say.text")],
    )
'''


def _setup(tmp_path, **inputs):
    wf_path = tmp_path / "hello_workflow.py"
    wf_path.write_text(WORKFLOW)
    inputs_path = tmp_path / "inputs.json"
    inputs_path.write_text(json.dumps(inputs))
    return wf_path, inputs_path


def _run(tmp_path, *extra):
    wf_path, inputs_path = tmp_path / "hello_workflow.py", tmp_path / "inputs.json"
    args = [
        "--quiet", "run",
        "--workflow", str(wf_path),
        "--inputs", str(inputs_path),
        "--work-dir", str(tmp_path / "work"),
        "--cache-dir", str(tmp_path / "cache"),
        "--output", str(tmp_path / "outputs.json"),
        "--report", str(tmp_path / "report.json"),
        *extra,
    ]
    return CliRunner().invoke(cli, args)


def test_run_writes_outputs_and_report(tmp_path) -> None:
    _setup(tmp_path, msg="hi")
    result = _run(tmp_path)
    assert result.exit_code == EXIT_OK, result.output

    assert json.loads((tmp_path / "outputs.json").read_text()) == {"text": "hi"}
    report = json.loads((tmp_path / "report.json").read_text())
    assert report["status"] == "succeeded"
    assert [t["id"] for t in report["tasks"]] == ["say"]
    assert report["tasks"][0]["cached"] is False

    result = _run(tmp_path)
    assert result.exit_code == EXIT_OK
    report = json.loads((tmp_path / "report.json").read_text())
    assert report["tasks"][0]["cached"] is True


def test_failed_task_exits_one(tmp_path) -> None:
    _setup(tmp_path, msg="hi", code=4)
    result = _run(tmp_path, "--no-cache")
    assert result.exit_code == EXIT_EXECUTION_FAILED
    report = json.loads((tmp_path / "report.json").read_text())
    assert report["status"] == "failed"
    assert report["tasks"][0]["state"] == "failed"
    assert json.loads((tmp_path / "outputs.json").read_text()) == {}


def test_missing_input_exits_two(tmp_path) -> None:
    _setup(tmp_path)
    result = _run(tmp_path)
    assert result.exit_code == EXIT_VALIDATION_ERROR
    assert not (tmp_path / "work").exists()


def test_wrong_input_type_exits_two(tmp_path) -> None:
    _setup(tmp_path, msg="hi", code="four")
    assert _run(tmp_path).exit_code == EXIT_VALIDATION_ERROR


def test_validate(tmp_path) -> None:
    wf_path, inputs_path = _setup(tmp_path, msg="hi")
    runner = CliRunner()
    result = runner.invoke(cli, ["validate", "--workflow", str(wf_path)])
    assert result.exit_code == EXIT_OK
    assert "is valid" in result.output

    result = runner.invoke(cli, ["validate", "--workflow", str(wf_path), "--inputs", str(inputs_path)])
    assert result.exit_code == EXIT_OK

    inputs_path.write_text(json.dumps({"msg": "hi", "extra": 1}))
    result = runner.invoke(cli, ["validate", "--workflow", str(wf_path), "--inputs", str(inputs_path)])
    assert result.exit_code == EXIT_VALIDATION_ERROR


def test_discovery(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["validate"]).exit_code == EXIT_VALIDATION_ERROR

    _setup(tmp_path, msg="hi")
    assert runner.invoke(cli, ["validate"]).exit_code == EXIT_OK

    (tmp_path / "other_workflow.py").write_text(WORKFLOW)
    assert runner.invoke(cli, ["validate"]).exit_code == EXIT_VALIDATION_ERROR


def test_cache_prune(tmp_path) -> None:
    cache_dir = tmp_path / "cache" / "echo"
    cache_dir.mkdir(parents=True)
    for i in range(4):
        (cache_dir / f"k{i}.json").write_text("{}")

    result = CliRunner().invoke(
        cli, ["cache", "prune", "--task", "echo", "--keep", "1", "--cache-dir", str(tmp_path / "cache")]
    )
    assert result.exit_code == EXIT_OK
    assert "Pruned 3 entries" in result.output
    assert len(list(cache_dir.glob("*.json"))) == 1
