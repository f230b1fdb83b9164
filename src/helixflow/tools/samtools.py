# tools/samtools.py
from __future__ import annotations

from ..dsl import build, lit, output, param, task

# ---------------------------------------------------------------------
# samtools wrappers
# ---------------------------------------------------------------------
# Disk formulas: input size plus headroom, in whole GB.

INDEX = task(
    "samtools_index",
    "samtools index -@ ~{threads} ~{bam} ~{basename(bam)}.bai",
    inputs=[
        param("bam", "File"),
        param("threads", "Int", 1),
    ],
    outputs=[output("bai", "File", path="~{basename(bam)}.bai")],
    cpu="~{threads}",
    memory="4G",
    disk="~{ceil(size(bam, 'GB') * 1.2) + 2} GB",
    max_retries=1,
    version="1.17",
)

FLAGSTAT = task(
    "samtools_flagstat",
    "samtools flagstat -@ ~{threads} ~{bam} > ~{prefix}.flagstat.txt",
    inputs=[
        param("bam", "File"),
        param("prefix", "String", "basename(bam, '.bam')"),
        param("threads", "Int", 1),
    ],
    outputs=[output("flagstat", "File", path="~{prefix}.flagstat.txt")],
    cpu="~{threads}",
    memory="2G",
    disk="~{ceil(size(bam, 'GB')) + 1} GB",
    max_retries=1,
    version="1.17",
)


def sort_task(memory_per_thread: str = "768M"):
    """samtools sort; coordinate order unless by_name."""
    return (
        build("samtools_sort")
        .define_input("bam", "File")
        .define_input("prefix", "String", "basename(bam, '.bam')")
        .define_input("by_name", "Boolean", False, true="-n", false="")
        .define_input("threads", "Int", 2)
        .define_output("sorted_bam", "File", path="~{prefix}.sorted.bam")
        .define_command(
            f"samtools sort ~{{by_name}} -@ ~{{threads}} -m {memory_per_thread} "
            "-o ~{prefix}.sorted.bam ~{bam}"
        )
        .with_resources(
            cpu="~{threads}",
            memory="~{threads + 2}G",
            disk="~{ceil(size(bam, 'GB') * 3) + 4} GB",
            max_retries=1,
        )
        .with_version("1.17")
        .build()
    )


SORT = sort_task()

# samtools view -c: read count as an Int result
COUNT = task(
    "samtools_count",
    "samtools view -c ~{flags} ~{bam} > count.txt",
    inputs=[
        param("bam", "File"),
        param("flags", "Array[String]", lit(["-F", "0x904"])),
    ],
    outputs=[output("reads", "Int", read="count.txt")],
    version="1.17",
)
