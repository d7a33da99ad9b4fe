"""Core computational modules for scintegrate.

This package contains the analysis engines:
- quantification: External read quantification (Cell Ranger)
- preprocessing: Loading, doublet removal, QC, merging, normalization, features
- integration: Pairwise anchors and anchor-weighted correction
- embedding: PCA and UMAP
- annotation: Hierarchical cell-type prediction
"""
