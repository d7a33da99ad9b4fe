"""Quantification module: external read quantification into count matrices.

Example Usage
-------------
>>> from scintegrate.core.quantification import CellRangerQuantifier, QuantifierParams
>>> params = QuantifierParams("S1", ["fastq/S1"], "refdata-gex-GRCh38", "runs")
>>> matrix_dir = CellRangerQuantifier().run(params)
"""

from .cellranger import (
    CellRangerQuantifier,
    Quantifier,
    QuantifierParams,
    collect_fastqs,
    illumina_names,
    quantify_samples,
    read_sample_list,
)

__all__ = [
    "CellRangerQuantifier",
    "Quantifier",
    "QuantifierParams",
    "collect_fastqs",
    "illumina_names",
    "quantify_samples",
    "read_sample_list",
]
