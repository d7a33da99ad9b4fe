"""Preprocessing module for data loading, filtering and normalization.

Pipeline Stages
---------------
- Loader: Count matrix loading and minimum cells/genes filters
- Doublets: Simulated-doublet classification per sample
- QC: Fixed-threshold cell quality control
- Merge: Identifier-prefixing merge and re-split
- Normalization: Per-sample regularized negative binomial residuals
- Features: Shared integration feature selection

Example Usage
-------------
>>> from scintegrate.core.preprocessing import (
...     MatrixLoader, DoubletFilter, QualityFilter, SampleMerger,
...     Normalizer, FeatureSelector,
... )
>>> loader = MatrixLoader()
>>> result = loader.load_sample("runs/S1/outs", "S1")
>>> singlets, doublet_result = DoubletFilter().filter_sample(result.adata, "S1")
>>> passing, qc_result = QualityFilter().filter_sample(singlets, "S1")
"""

# Configuration classes
from .config import (
    LoaderConfig,
    DoubletConfig,
    QCConfig,
    NormalizationConfig,
    FeatureSelectionConfig,
    config_to_dict,
)

# Loading
from .loader import (
    MatrixLoader,
    LoadResult,
    MATRIX_LAYOUTS,
    find_matrix_dir,
)

# Doublet detection
from .doublets import (
    DoubletFilter,
    DoubletResult,
    SINGLET,
    DOUBLET,
)

# Cell QC
from .qc import (
    QualityFilter,
    QCResult,
    REASON_COLUMNS,
    passes_thresholds,
)

# Merging
from .merge import (
    SampleMerger,
    MergeResult,
    prefix_cell_ids,
)

# Normalization
from .normalization import (
    Normalizer,
    NormalizationResult,
    SampleModel,
)

# Feature selection
from .features import (
    FeatureSelector,
    FeatureSelectionResult,
)

__all__ = [
    # Config
    "LoaderConfig",
    "DoubletConfig",
    "QCConfig",
    "NormalizationConfig",
    "FeatureSelectionConfig",
    "config_to_dict",
    # Loader
    "MatrixLoader",
    "LoadResult",
    "MATRIX_LAYOUTS",
    "find_matrix_dir",
    # Doublets
    "DoubletFilter",
    "DoubletResult",
    "SINGLET",
    "DOUBLET",
    # QC
    "QualityFilter",
    "QCResult",
    "REASON_COLUMNS",
    "passes_thresholds",
    # Merge
    "SampleMerger",
    "MergeResult",
    "prefix_cell_ids",
    # Normalization
    "Normalizer",
    "NormalizationResult",
    "SampleModel",
    # Features
    "FeatureSelector",
    "FeatureSelectionResult",
]
