"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class LoaderConfig:
    """Configuration for matrix loading.

    Attributes
    ----------
    min_cells : int
        Keep genes detected in at least this many cells
    min_genes : int
        Keep cells with at least this many detected genes
    gex_only : bool
        Keep only the Gene Expression modality
    var_names : str
        Gene identifier to use as var_names (gene_symbols or gene_ids)
    sample_id_col : str
        Sample sheet column holding sample identifiers
    matrix_dir_col : str
        Sample sheet column holding matrix directories
    """

    min_cells: int = 3
    min_genes: int = 200
    gex_only: bool = True
    var_names: str = "gene_symbols"
    sample_id_col: str = "sample_id"
    matrix_dir_col: str = "matrix_dir"


@dataclass
class DoubletConfig:
    """Configuration for simulated-doublet detection.

    Attributes
    ----------
    random_seed : int
        Random seed for simulation, PCA and classifier
    n_features : int
        Number of most expressed genes used as features
    n_pcs : int
        Number of principal components
    artificial_ratio : float
        Artificial doublets per real cell
    min_artificial : int
        Minimum number of artificial doublets
    k : int, optional
        Neighbors for the doublet-density feature (None = sqrt heuristic)
    expected_rate : float, optional
        Expected doublet fraction (None = 1% per 1000 cells)
    rate_tolerance : float
        Tolerance on the expected doublet fraction during thresholding
    max_rate : float
        Upper bound on the doublet fraction estimated from the scores
    min_cells : int
        Below this many cells all cells are marked singlet
    cv_folds : int
        Folds for out-of-fold scoring
    """

    random_seed: int = 1234
    n_features: int = 1000
    n_pcs: int = 20
    artificial_ratio: float = 0.8
    min_artificial: int = 500
    k: Optional[int] = None
    expected_rate: Optional[float] = None
    rate_tolerance: float = 0.015
    max_rate: float = 0.25
    min_cells: int = 50
    cv_folds: int = 5


@dataclass
class QCConfig:
    """Configuration for cell quality control.

    Attributes
    ----------
    min_genes : int
        Detected genes must be strictly greater than this
    max_genes : int
        Detected genes must be strictly less than this
    max_counts : float
        Total counts must be strictly less than this
    max_mito_fraction : float
        Mitochondrial fraction (0-1) must be strictly less than this
    mito_pattern : str
        Regular expression matching mitochondrial gene symbols
    """

    min_genes: int = 200
    max_genes: int = 5000
    max_counts: float = 20000
    max_mito_fraction: float = 0.25
    mito_pattern: str = "^MT-"


@dataclass
class NormalizationConfig:
    """Configuration for per-sample variance-stabilizing normalization.

    Attributes
    ----------
    n_hvg : int
        Number of highly variable genes ranked per sample
    regress_mito : bool
        Include mitochondrial fraction as a model covariate
    mito_pattern : str
        Regular expression matching mitochondrial gene symbols, used when
        the cells carry no mito_fraction from QC
    min_cells : int
        Model genes detected in at least this many cells
    min_cells_to_fit : int
        Minimum cells required to fit a sample
    n_genes_step1 : int
        Genes used for the unregularized fit
    n_cells_step1 : int
        Cells used for the unregularized fit
    lowess_frac : float
        LOWESS span for parameter regularization
    clip : float, optional
        Residual clip (None = sqrt(n_cells / 30))
    theta_bounds : List[float]
        Bounds applied to theta before regularization
    random_seed : int
        Random seed for gene/cell subsampling
    """

    n_hvg: int = 3000
    regress_mito: bool = True
    mito_pattern: str = "^MT-"
    min_cells: int = 5
    min_cells_to_fit: int = 20
    n_genes_step1: int = 2000
    n_cells_step1: int = 5000
    lowess_frac: float = 0.3
    clip: Optional[float] = None
    theta_bounds: List[float] = field(default_factory=lambda: [1e-2, 1e5])
    random_seed: int = 1448145


@dataclass
class FeatureSelectionConfig:
    """Configuration for shared feature selection.

    Attributes
    ----------
    n_features : int
        Maximum number of shared integration features
    """

    n_features: int = 3000


def config_to_dict(config: Any) -> Dict[str, Any]:
    """Convert a config dataclass to a plain dictionary."""
    return asdict(config)
