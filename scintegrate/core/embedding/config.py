"""Configuration classes for the embedding module."""

from dataclasses import dataclass


@dataclass
class EmbeddingConfig:
    """Configuration for PCA and UMAP.

    Attributes
    ----------
    n_pcs : int
        Number of principal components
    n_neighbors : int
        k for the neighborhood graph used by UMAP
    scale_clip : float
        Value clipping during scaling
    min_dist : float
        UMAP minimum distance
    random_seed : int
        Random seed for reproducibility
    """

    n_pcs: int = 30
    n_neighbors: int = 30
    scale_clip: float = 10.0
    min_dist: float = 0.3
    random_seed: int = 1337
