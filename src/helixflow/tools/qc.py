# tools/qc.py
from __future__ import annotations

from ..dsl import lit, output, param, task

FASTQC = task(
    "fastqc",
    "fastqc --threads ~{threads} --outdir . ~{reads}",
    inputs=[
        param("reads", "Array[File]"),
        param("threads", "Int", "length(reads)"),
    ],
    outputs=[
        output("zips", "Array[File]", glob="*_fastqc.zip"),
        output("reports", "Array[File]", glob="*_fastqc.html"),
    ],
    cpu="~{threads}",
    memory="~{250 * threads + 512}M",
    disk="~{ceil(size(reads, 'GB') * 2) + 1} GB",
    max_retries=1,
    version="0.12.1",
)

# mosdepth wants <bam>.bai next to the bam, so both are linked into the task dir.
MOSDEPTH = task(
    "mosdepth",
    "ln -s ~{bam} ~{basename(bam)} && ln -s ~{bai} ~{basename(bam)}.bai && "
    "mosdepth ~{fast_mode} --threads ~{threads} ~{prefix} ~{basename(bam)}",
    inputs=[
        param("bam", "File"),
        param("bai", "File"),
        param("prefix", "String", "basename(bam, '.bam')"),
        param("fast_mode", "Boolean", True, true="--fast-mode", false=""),
        param("threads", "Int", 1),
    ],
    outputs=[
        output("summary", "File", path="~{prefix}.mosdepth.summary.txt"),
        output("global_dist", "File", path="~{prefix}.mosdepth.global.dist.txt"),
        output("per_base", "File?", path="~{prefix}.per-base.bed.gz"),
    ],
    cpu="~{threads}",
    memory="4G",
    disk="~{ceil(size(bam, 'GB')) + 2} GB",
    version="0.3.6",
)

MULTIQC = task(
    "multiqc",
    "mkdir -p collected && for f in ~{reports}; do ln -s \"$f\" collected/; done && "
    "multiqc --filename ~{report_name} --outdir . collected",
    inputs=[
        param("reports", "Array[File]"),
        param("report_name", "String", lit("multiqc_report")),
    ],
    outputs=[
        output("report", "File", path="~{report_name}.html"),
        output("data", "Array[File]", glob="~{report_name}_data/*"),
    ],
    memory="4G",
    disk="~{ceil(size(reports, 'GB') * 2) + 1} GB",
    version="1.21",
)
