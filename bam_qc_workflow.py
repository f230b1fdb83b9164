# bam_qc_workflow.py
# QC for a cohort of BAMs: index + flagstat per BAM, optional coverage, one MultiQC report
from __future__ import annotations
from helixflow.dsl import wf, call, scatter, when, param, wf_output
from helixflow.tools.samtools import INDEX, FLAGSTAT
from helixflow.tools.qc import MOSDEPTH, MULTIQC


def single_bam_qc():
    return wf(
        "single_bam_qc",
        call(INDEX, "index", bam="bam"),
        call(FLAGSTAT, "flagstat", bam="bam"),

        # coverage is the slow part; skip it for quick looks
        when(
            "run_coverage",
            call(MOSDEPTH, "coverage", bam="bam", bai="index.bai", threads="threads"),
        ),
        inputs=[
            param("bam", "File"),
            param("run_coverage", "Boolean", True),
            param("threads", "Int", 2),
        ],
        outputs=[
            wf_output("bai", "File", "index.bai"),
            wf_output("flagstat", "File", "flagstat.flagstat"),
            wf_output("coverage_summary", "File?", "coverage.summary"),
        ],
    )


def workflow():
    return wf(
        "bam_qc_cohort",
        scatter(
            "bam", "bams",
            call(single_bam_qc(), "qc", bam="bam", run_coverage="run_coverage"),
        ),
        call(
            MULTIQC,
            "multiqc",
            reports="flatten([qc.flagstat, select_all(qc.coverage_summary)])",
            report_name="report_name",
        ),
        inputs=[
            param("bams", "Array[File]"),
            param("run_coverage", "Boolean", True),
            param("report_name", "String", "'cohort_qc'"),
        ],
        outputs=[
            wf_output("multiqc_report", "File", "multiqc.report"),
            wf_output("flagstats", "Array[File]", "qc.flagstat"),
            wf_output("coverage_summaries", "Array[File]", "select_all(qc.coverage_summary)"),
        ],
    )
