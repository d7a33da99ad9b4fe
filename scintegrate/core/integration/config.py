"""Configuration classes for the integration module."""

from dataclasses import dataclass


@dataclass
class AnchorConfig:
    """Configuration for pairwise anchor finding.

    Attributes
    ----------
    n_dims : int
        Canonical correlation dimensions
    min_canonical_ratio : float
        A canonical dimension is kept only if its singular value is at least
        this multiple of the value expected without shared structure
    k_anchor : int
        Neighbors for mutual nearest neighbor search
    k_filter : int
        Upper bound on cross-sample neighbors checked in the joint space
    filter_fraction : float
        Fraction of the partner sample's cells checked in the joint space
        (bounded by k_filter)
    k_score : int
        Neighbors per side for neighborhood-overlap scoring
    min_similarity : float
        Minimum cosine similarity between anchored cells (joint space)
    min_overlap : float
        Anchors whose neighborhood overlap is below this are dropped
    score_quantiles : tuple
        Overlap quantiles mapped to scores 0 and 1
    nn_method : str
        'auto', 'exact' (scikit-learn) or 'approximate' (pynndescent)
    approximate_threshold : int
        Cells in a pair above which 'auto' switches to approximate search
    random_seed : int
        Random seed for SVD start vectors and approximate search
    """

    n_dims: int = 30
    min_canonical_ratio: float = 2.0
    k_anchor: int = 5
    k_filter: int = 200
    filter_fraction: float = 0.2
    k_score: int = 30
    min_similarity: float = 0.2
    min_overlap: float = 0.05
    score_quantiles: tuple = (0.01, 0.90)
    nn_method: str = "auto"
    approximate_threshold: int = 20000
    random_seed: int = 42

    def __post_init__(self):
        if self.nn_method not in ("auto", "exact", "approximate"):
            raise ValueError(
                f"nn_method must be 'auto', 'exact' or 'approximate', got {self.nn_method!r}"
            )
        self.score_quantiles = tuple(self.score_quantiles)


@dataclass
class IntegrationConfig:
    """Configuration for anchor-weighted correction.

    Attributes
    ----------
    n_pcs_weight : int
        Query PCA dimensions used to weight anchors
    k_weight : int
        Nearest anchors considered per query cell
    sd_weight : float
        Gaussian kernel width for anchor weights
    random_seed : int
        Random seed for the query PCA
    """

    n_pcs_weight: int = 30
    k_weight: int = 100
    sd_weight: float = 1.0
    random_seed: int = 42
