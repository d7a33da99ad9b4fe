"""Integration module for cross-sample batch correction.

Provides pairwise anchor finding (canonical correlation + mutual nearest
neighbors) and anchor-weighted correction of each sample into a growing
integrated reference.

Example Usage
-------------
>>> from scintegrate.core.integration import IntegrationAnchorFinder, Integrator
>>> anchor_set = IntegrationAnchorFinder(n_jobs=4).find_anchors(residuals, cell_ids)
>>> result = Integrator().integrate(residuals, cell_ids, anchor_set, features, merged)
"""

from .config import AnchorConfig, IntegrationConfig
from .anchors import (
    ANCHOR_COLUMNS,
    AnchorSet,
    IntegrationAnchorFinder,
    PairTask,
    canonical_correlation,
    find_pair_anchors,
    run_pair_task,
    unshared_level,
)
from .integrate import IntegrationResult, Integrator

__all__ = [
    "AnchorConfig",
    "IntegrationConfig",
    "ANCHOR_COLUMNS",
    "AnchorSet",
    "IntegrationAnchorFinder",
    "PairTask",
    "canonical_correlation",
    "find_pair_anchors",
    "run_pair_task",
    "unshared_level",
    "IntegrationResult",
    "Integrator",
]
