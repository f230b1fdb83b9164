from __future__ import annotations

from pathlib import Path

import pytest

from helixflow.dag import TaskInstance
from helixflow.dsl import lit, output, param, task
from helixflow.errors import OutputExtractionError, ResourceError, TaskFailed
from helixflow.executor import TaskExecutor, node_path, parse_result, render_command, shell_format
from helixflow.expr import Expr
from helixflow.values import ABSENT, File, Struct, parse_type

COPY = task(
    "copy",
    "cat ~{src} > ~{name}.copy\necho done >&2",
    inputs=[param("src", "File"), param("name", "String", "basename(src, '.txt')")],
    outputs=[output("copy", "File", path="~{name}.copy")],
)


def _instance(spec, node_id="t", **inputs) -> TaskInstance:
    return TaskInstance(
        id=node_id,
        spec=spec,
        alias=node_id,
        input_exprs={k: Expr.literal(v) for k, v in inputs.items()},
    )


def _run(executor: TaskExecutor, instance: TaskInstance) -> Struct:
    executor.prepare(instance, lambda name: ABSENT)
    return executor.execute(instance)


# ---- rendering ----

def test_shell_format_escapes_by_type() -> None:
    flag = param("fast", "Boolean", true="--fast-mode", false="")
    files = param("reads", "Array[File]", sep=",")
    assert shell_format("two words") == "'two words'"
    assert shell_format(File("/data/a b.bam")) == "'/data/a b.bam'"
    assert shell_format(True, flag) == "--fast-mode"
    assert shell_format(False, flag) == ""
    assert shell_format((File("/r/1.fq"), File("/r/2.fq")), files) == "/r/1.fq,/r/2.fq"
    assert shell_format(3) == "3"
    assert shell_format(ABSENT) == ""


def test_render_command_uses_param_formatting() -> None:
    spec = task(
        "t",
        "tool ~{flags} ~{fast} ~{bam}",
        inputs=[
            param("bam", "File"),
            param("flags", "Array[String]", lit(["-F", "0x904"])),
            param("fast", "Boolean", True, true="--fast"),
        ],
    )
    bindings = {"bam": File("/d/x.bam"), "flags": ("-F", "0x904"), "fast": True}
    assert render_command(spec, bindings) == "tool -F 0x904 --fast /d/x.bam"


def test_parse_result() -> None:
    assert parse_result(parse_type("Int"), " 42\n") == 42
    assert parse_result(parse_type("Boolean"), "yes") is True
    assert parse_result(parse_type("Array[Int]"), "1\n2\n\n3\n") == [1, 2, 3]
    assert parse_result(parse_type("Map[String, Int]"), '{"a": 1}') == {"a": 1}
    assert parse_result(parse_type("String?"), "  ") is ABSENT
    with pytest.raises(ValueError):
        parse_result(parse_type("Boolean"), "maybe")


def test_node_path() -> None:
    assert node_path("scatter_s[2].align") == Path("scatter_s/2/align")
    assert node_path("qc.index") == Path("qc/index")


# ---- running ----

def test_runs_in_isolated_dir_with_staged_inputs(tmp_path) -> None:
    src = tmp_path / "sample.txt"
    src.write_text("ACGT\n")
    executor = TaskExecutor(tmp_path / "work")
    instance = _instance(COPY, src=str(src))

    outputs = _run(executor, instance)

    run_dir = Path(instance.work_dir)
    assert run_dir == (tmp_path / "work" / "t" / "attempt-1").resolve()
    assert outputs["copy"] == File(str(run_dir / "sample.copy"))
    assert Path(outputs["copy"].path).read_text() == "ACGT\n"
    assert (run_dir / "inputs" / "src" / "sample.txt").exists()
    assert (run_dir / "stderr").read_text() == "done\n"
    assert (run_dir / "command.sh").read_text().startswith("#!/usr/bin/env bash\nset -euo pipefail\n")
    assert src.read_text() == "ACGT\n"


def test_nonzero_exit_raises_task_failed(tmp_path) -> None:
    spec = task("boom", "echo broken pipe >&2\nexit 3", max_retries=1)
    executor = TaskExecutor(tmp_path / "work")
    instance = _instance(spec)

    with pytest.raises(TaskFailed) as info:
        _run(executor, instance)
    assert info.value.exit_code == 3
    assert info.value.attempts == 2
    assert "broken pipe" in info.value.stderr
    assert (tmp_path / "work" / "t" / "attempt-2").is_dir()


def test_missing_output_raises_extraction_error(tmp_path) -> None:
    spec = task("lazy", "true", outputs=[output("report", "File", path="report.html")])
    with pytest.raises(OutputExtractionError) as info:
        _run(TaskExecutor(tmp_path / "work"), _instance(spec))
    assert info.value.output == "report"


def test_optional_and_glob_outputs(tmp_path) -> None:
    spec = task(
        "many",
        "touch b.zip a.zip",
        outputs=[
            output("zips", "Array[File]", glob="*.zip"),
            output("extra", "File?", path="extra.txt"),
        ],
    )
    executor = TaskExecutor(tmp_path / "work")
    instance = _instance(spec)
    outputs = _run(executor, instance)
    assert [Path(f.path).name for f in outputs["zips"]] == ["a.zip", "b.zip"]
    assert outputs["extra"] is ABSENT


def test_missing_input_file_fails_before_launch(tmp_path) -> None:
    executor = TaskExecutor(tmp_path / "work")
    instance = _instance(COPY, src=str(tmp_path / "nope.txt"))
    with pytest.raises(TaskFailed) as info:
        _run(executor, instance)
    assert info.value.exit_code is None
    assert info.value.attempts == 0
    assert instance.work_dir is None


def test_resource_limits(tmp_path) -> None:
    spec = task("big", "true", inputs=[param("threads", "Int", 4)], cpu="~{threads}", memory="2 GB")
    executor = TaskExecutor(tmp_path / "work", max_cpu=2)
    with pytest.raises(ResourceError, match="cpu"):
        executor.prepare(_instance(spec), lambda name: ABSENT)

    executor = TaskExecutor(tmp_path / "work", max_memory=1024 ** 3)
    with pytest.raises(ResourceError, match="memory"):
        executor.prepare(_instance(spec, threads=1), lambda name: ABSENT)

    res = TaskExecutor(tmp_path / "work").prepare(_instance(spec, threads=2), lambda name: ABSENT)
    assert res.cpu == 2
    assert res.memory == 2_000_000_000


def test_bad_resource_expression(tmp_path) -> None:
    spec = task("odd", "true", memory="lots")
    with pytest.raises(ResourceError):
        TaskExecutor(tmp_path / "work").prepare(_instance(spec), lambda name: ABSENT)


def test_container_argv(tmp_path) -> None:
    spec = task("boxed", "true", cpu=2, memory="1G", container="biocontainers/samtools:1.19")
    executor = TaskExecutor(tmp_path / "work", container_runtime="docker")
    instance = _instance(spec)
    res = executor.prepare(instance, lambda name: ABSENT)
    argv = executor._argv(res, tmp_path / "run", tmp_path / "run" / "command.sh", instance.bindings)
    assert argv[:3] == ["docker", "run", "--rm"]
    assert "--cpus" in argv and argv[argv.index("--cpus") + 1] == "2"
    assert argv[argv.index("--memory") + 1] == str(1024 ** 3)
    assert argv[-3:] == ["biocontainers/samtools:1.19", "bash", str(tmp_path / "run" / "command.sh")]


def test_map_keys_stay_inside_the_attempt_dir(tmp_path) -> None:
    ref = tmp_path / "ref.fa"
    ref.write_text(">chr1\nACGT\n")
    spec = task(
        "refs",
        "cat ~{refs['../../../../escaped']} > seen.fa",
        inputs=[param("refs", "Map[String, File]")],
        outputs=[output("seen", "File", path="seen.fa")],
    )
    executor = TaskExecutor(tmp_path / "work")
    instance = _instance(spec, refs={"../../../../escaped": str(ref)})

    outputs = _run(executor, instance)

    run_dir = Path(instance.work_dir)
    assert Path(outputs["seen"].path).read_text() == ">chr1\nACGT\n"
    staged = [p for p in tmp_path.rglob("ref.fa") if p != ref]
    assert staged
    assert all(p.parent.resolve().is_relative_to(run_dir / "inputs" / "refs") for p in staged)


def test_enforced_memory_limit(tmp_path) -> None:
    spec = task(
        "hungry",
        "printf -v pad '%*s' ~{size} ''\necho ${#pad} > n.txt",
        inputs=[param("size", "Int")],
        outputs=[output("n", "Int", read="n.txt")],
        memory="128M",
    )
    executor = TaskExecutor(tmp_path / "work", enforce_memory=True)

    small = _instance(spec, node_id="small", size=1000)
    assert _run(executor, small)["n"] == 1000
    script = (Path(small.work_dir) / "command.sh").read_text()
    assert "ulimit -v 131072\n" in script

    with pytest.raises(TaskFailed):
        _run(executor, _instance(spec, node_id="big", size=512 * 1024 ** 2))
