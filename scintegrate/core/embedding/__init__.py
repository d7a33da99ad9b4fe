"""Embedding module: PCA and UMAP of the integrated values.

Example Usage
-------------
>>> from scintegrate.core.embedding import DimReducer, EmbeddingConfig
>>> result = DimReducer(EmbeddingConfig(n_pcs=30)).reduce(integrated)
>>> result.adata.obsm["X_umap"].shape
"""

from .config import EmbeddingConfig
from .engine import DimReducer, EmbeddingResult

__all__ = [
    "EmbeddingConfig",
    "DimReducer",
    "EmbeddingResult",
]
