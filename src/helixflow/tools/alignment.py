# tools/alignment.py
from __future__ import annotations

from ..dsl import lit, output, param, task

STAR_ALIGN = task(
    "star_align",
    "STAR --runMode alignReads --runThreadN ~{threads} --genomeDir ~{genome_dir} "
    "--readFilesIn ~{read_one} ~{read_two} "
    "~{gzipped} "
    "--outSAMtype BAM Unsorted --outSAMattributes NH HI AS nM XS "
    "--outFileNamePrefix ~{prefix}.",
    inputs=[
        param("genome_dir", "File"),
        param("read_one", "File"),
        param("read_two", "File?"),
        param("prefix", "String", "sub(basename(read_one), '(_R1)?\\\\.f(ast)?q(\\\\.gz)?$', '')"),
        param("gzipped", "Boolean", "basename(read_one) != basename(read_one, '.gz')",
              true="--readFilesCommand zcat", false=""),
        param("threads", "Int", 8),
        param("memory_gb", "Int", 50),
    ],
    outputs=[
        output("bam", "File", path="~{prefix}.Aligned.out.bam"),
        output("log", "File", path="~{prefix}.Log.final.out"),
        output("junctions", "File", path="~{prefix}.SJ.out.tab"),
    ],
    cpu="~{threads}",
    memory="~{memory_gb}G",
    disk="~{ceil(size([read_one, read_two], 'GB') * 4) + 20} GB",
    max_retries=1,
    version="2.7.11a",
)

HTSEQ_COUNT = task(
    "htseq_count",
    "htseq-count --format bam --order pos --stranded ~{strandedness} "
    "--type exon --idattr ~{id_attr} ~{bam} ~{gtf} > ~{prefix}.feature-counts.txt",
    inputs=[
        param("bam", "File"),
        param("gtf", "File"),
        param("strandedness", "String", lit("reverse")),
        param("id_attr", "String", lit("gene_name")),
        param("prefix", "String", "basename(bam, '.bam')"),
    ],
    outputs=[output("counts", "File", path="~{prefix}.feature-counts.txt")],
    memory="8G",
    disk="~{ceil(size([bam, gtf], 'GB')) + 5} GB",
    version="2.0.3",
)
