"""Annotation module for hierarchical cell-type prediction.

Provides the predictor interface, a local model cache, the CellTypist
implementation, and the engine that builds the expression table and
writes predicted_celltype_l1..l3.

Example Usage
-------------
>>> from scintegrate.core.annotation import (
...     AnnotationConfig, AnnotationEngine, CellTypistPredictor, ModelCache,
... )
>>> config = AnnotationConfig.from_dict(cfg["annotation"])
>>> predictor = CellTypistPredictor(config.references, ModelCache(config.cache_path))
>>> result = AnnotationEngine(predictor, config).annotate(merged)
"""

from .config import N_LEVELS, AnnotationConfig, ReferenceSpec
from .cache import ModelCache
from .predictor import LEVEL_COLUMNS, CellTypePredictor, CellTypistPredictor
from .engine import (
    LABEL_COLUMNS,
    AnnotationEngine,
    AnnotationResult,
    hierarchy_violations,
    load_hierarchy,
)

__all__ = [
    "N_LEVELS",
    "AnnotationConfig",
    "ReferenceSpec",
    "ModelCache",
    "LEVEL_COLUMNS",
    "CellTypePredictor",
    "CellTypistPredictor",
    "LABEL_COLUMNS",
    "AnnotationEngine",
    "AnnotationResult",
    "hierarchy_violations",
    "load_hierarchy",
]
