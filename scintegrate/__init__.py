"""scintegrate: multi-sample single-cell RNA integration and annotation.

This package provides tools for:
- Loading per-sample count matrices and removing doublets and low-quality cells
- Per-sample variance-stabilizing normalization and shared feature selection
- Anchor-based cross-sample integration
- PCA/UMAP embeddings and hierarchical cell-type prediction

Example usage:
    >>> from scintegrate.pipeline import IntegrationPipeline, PipelineConfig
    >>>
    >>> config = PipelineConfig.from_yaml("config.yaml")
    >>> pipeline = IntegrationPipeline(config)
    >>> result = pipeline.run("samples.csv", "results/")
"""

__version__ = "0.1.0"
