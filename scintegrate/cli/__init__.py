"""Command-line interface for scintegrate.

Example Usage
-------------
    # From command line:
    scintegrate --help
    scintegrate run --samples samples.csv --out results/ --model bonemarrowref
    scintegrate quantify --sample-id S1 --fastqs fastq/S1 --transcriptome ref/ --out runs/
    scintegrate models list
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
