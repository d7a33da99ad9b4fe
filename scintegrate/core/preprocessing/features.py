"""Shared integration feature selection (FeatureSelector)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import FeatureSelectionConfig
from .normalization import NormalizationResult


@dataclass
class FeatureSelectionResult:
    """Selected features with the statistics used to order them.

    Attributes
    ----------
    features : List[str]
        Selected genes, in selection order
    table : pd.DataFrame
        Per-candidate n_samples (top-set frequency) and median_rank
    n_candidates : int
        Genes modeled in every sample
    """

    features: List[str] = field(default_factory=list)
    table: Optional[pd.DataFrame] = None
    n_candidates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_features": len(self.features),
            "n_candidates": self.n_candidates,
            "top_features": self.features[:10],
        }


class FeatureSelector:
    """Select genes shared by all samples for integration.

    Candidates are genes modeled in every sample. They are ordered by the
    number of samples whose HVG set contains them (descending), then by the
    median HVG rank across those samples (ascending), then by gene name.

    Parameters
    ----------
    config : FeatureSelectionConfig
        Selection configuration
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(
        self,
        config: Optional[FeatureSelectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FeatureSelectionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def select(self, results: Dict[str, NormalizationResult]) -> FeatureSelectionResult:
        """Select shared features.

        Parameters
        ----------
        results : Dict[str, NormalizationResult]
            Per-sample normalization results

        Returns
        -------
        FeatureSelectionResult
            At most n_features genes, all modeled in every sample
        """
        if not results:
            raise ValueError("No normalization results to select features from")

        modeled = [set(r.modeled_genes) for r in results.values()]
        candidates = sorted(set.intersection(*modeled))

        table = pd.DataFrame(index=pd.Index(candidates, name="gene"))
        ranks = pd.DataFrame(
            {sid: r.hvg.reindex(candidates) for sid, r in results.items()},
            index=table.index,
        )
        table["n_samples"] = ranks.notna().sum(axis=1).astype(int)
        table["median_rank"] = ranks.median(axis=1, skipna=True)

        # Genes outside every top set sort last
        table = table[table["n_samples"] > 0]
        table = table.assign(
            _name=table.index.astype(str)
        ).sort_values(
            by=["n_samples", "median_rank", "_name"],
            ascending=[False, True, True],
            kind="mergesort",
        ).drop(columns="_name")

        features = table.index[: self.config.n_features].tolist()
        self.logger.info(
            "Selected %d shared features from %d candidates across %d samples",
            len(features),
            len(candidates),
            len(results),
        )
        return FeatureSelectionResult(
            features=features, table=table, n_candidates=len(candidates)
        )

    def restrict(
        self,
        results: Dict[str, NormalizationResult],
        features: List[str],
    ) -> Dict[str, np.ndarray]:
        """Per-sample residual matrices restricted to the shared features.

        Returns
        -------
        Dict[str, np.ndarray]
            Map of sample_id to a dense cells x features residual matrix
        """
        return {sid: r.residuals_for(features) for sid, r in results.items()}
