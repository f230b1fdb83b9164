from __future__ import annotations

import shlex

from bam_qc_workflow import workflow
from helixflow.dag import GraphBuilder, validate_workflow
from helixflow.executor import TaskExecutor, render_command
from helixflow.tools.alignment import HTSEQ_COUNT, STAR_ALIGN
from helixflow.tools.qc import FASTQC, MULTIQC
from helixflow.tools.samtools import COUNT, INDEX, SORT
from helixflow.values import ABSENT, File, Struct, resolve_default


def _bind(spec, **given) -> Struct:
    env = {}
    for p in spec.inputs:
        if p.name in given:
            env[p.name] = given[p.name]
        elif p.default is not None:
            env[p.name] = resolve_default(p, env)
        else:
            env[p.name] = ABSENT
    return Struct(env)


def _bam(tmp_path, name="s1.bam"):
    p = tmp_path / name
    p.write_bytes(b"\x1f\x8b" * 16)
    return File(str(p))


def test_index_formulas(tmp_path) -> None:
    bam = _bam(tmp_path)
    bindings = _bind(INDEX, bam=bam, threads=4)
    res = TaskExecutor(tmp_path / "work").resolve_resources(INDEX, bindings)
    assert res.cpu == 4
    assert res.memory == 4 * 1024 ** 3
    assert res.disk == 3 * 1000 ** 3
    assert render_command(INDEX, bindings) == f"samtools index -@ 4 {shlex.quote(bam.path)} s1.bam.bai"


def test_sort_boolean_flag_and_memory_formula(tmp_path) -> None:
    bam = _bam(tmp_path)
    bindings = _bind(SORT, bam=bam, by_name=True)
    assert render_command(SORT, bindings) == (
        f"samtools sort -n -@ 2 -m 768M -o s1.sorted.bam {shlex.quote(bam.path)}"
    )
    res = TaskExecutor(tmp_path / "work").resolve_resources(SORT, bindings)
    assert res.memory == 4 * 1024 ** 3


def test_count_flags_are_separate_arguments(tmp_path) -> None:
    bam = _bam(tmp_path)
    assert render_command(COUNT, _bind(COUNT, bam=bam)) == (
        f"samtools view -c -F 0x904 {shlex.quote(bam.path)} > count.txt"
    )


def test_fastqc_threads_default_to_read_count(tmp_path) -> None:
    reads = (_bam(tmp_path, "r1.fq.gz"), _bam(tmp_path, "r2.fq.gz"))
    bindings = _bind(FASTQC, reads=reads)
    assert bindings["threads"] == 2
    assert TaskExecutor(tmp_path / "work").resolve_resources(FASTQC, bindings).memory == 1012 * 1024 ** 2


def test_star_defaults(tmp_path) -> None:
    bindings = _bind(
        STAR_ALIGN,
        genome_dir=File(str(tmp_path)),
        read_one=_bam(tmp_path, "s1_R1.fastq.gz"),
    )
    assert bindings["prefix"] == "s1"
    assert bindings["gzipped"] is True
    command = render_command(STAR_ALIGN, bindings)
    assert "--readFilesCommand zcat" in command
    assert "--outFileNamePrefix s1." in command


def test_htseq_prefix(tmp_path) -> None:
    bindings = _bind(HTSEQ_COUNT, bam=_bam(tmp_path), gtf=_bam(tmp_path, "genes.gtf"))
    assert bindings["prefix"] == "s1"
    assert render_command(HTSEQ_COUNT, bindings).endswith("> s1.feature-counts.txt")


def test_multiqc_default_name(tmp_path) -> None:
    bindings = _bind(MULTIQC, reports=(_bam(tmp_path, "a.txt"),))
    assert bindings["report_name"] == "multiqc_report"


def test_bam_qc_workflow_plans(tmp_path) -> None:
    validate_workflow(workflow())
    bams = [_bam(tmp_path, "a.bam").path, _bam(tmp_path, "b.bam").path]
    graph = GraphBuilder().build(workflow(), {"bams": bams, "run_coverage": False})
    assert "scatter_bam" in graph.nodes
    assert "multiqc" in graph.nodes
    assert graph.nodes["multiqc"].deps == {"qc", "input:report_name"}
