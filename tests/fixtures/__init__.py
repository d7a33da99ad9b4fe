"""Test fixtures for scintegrate.

Provides synthetic count generators and test utilities.
"""

from .synthetic import (
    FakePredictor,
    create_counts,
    create_samples,
    gene_names,
    write_10x,
    write_sample_sheet,
)

__all__ = [
    "FakePredictor",
    "create_counts",
    "create_samples",
    "gene_names",
    "write_10x",
    "write_sample_sheet",
]
