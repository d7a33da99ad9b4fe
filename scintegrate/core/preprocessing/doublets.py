"""Doublet detection (DoubletFilter).

Flags likely multiplets per sample by simulating artificial doublets from
pairs of real cells, training a classifier to separate artificial doublets
from real cells, and scoring every real cell out-of-fold.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import InsufficientDataError
from .config import DoubletConfig

SINGLET = "singlet"
DOUBLET = "doublet"


@dataclass
class DoubletResult:
    """Result from scoring a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    scores : pd.Series
        Doublet score per cell (0-1)
    classes : pd.Series
        'singlet' or 'doublet' per cell
    threshold : float
        Score threshold used for calling doublets
    expected_rate : float
        Expected doublet fraction used for thresholding
    estimated_rate : float
        Doublet fraction estimated from the scores
    n_artificial : int
        Number of simulated doublets
    degraded : bool
        True if the sample was too small and all cells were marked singlet
    reason : str
        Why scoring degraded, if it did
    """

    sample_id: str
    scores: pd.Series = field(default_factory=lambda: pd.Series(dtype=float))
    classes: pd.Series = field(default_factory=lambda: pd.Series(dtype=object))
    threshold: float = float("nan")
    expected_rate: float = 0.0
    estimated_rate: float = 0.0
    n_artificial: int = 0
    degraded: bool = False
    reason: str = ""

    @property
    def n_cells(self) -> int:
        return int(len(self.classes))

    @property
    def n_doublets(self) -> int:
        return int((self.classes == DOUBLET).sum())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "sample_id": self.sample_id,
            "n_cells": self.n_cells,
            "n_doublets": self.n_doublets,
            "doublet_fraction": round(self.n_doublets / self.n_cells, 4)
            if self.n_cells
            else 0.0,
            "threshold": round(float(self.threshold), 4),
            "expected_rate": round(self.expected_rate, 4),
            "estimated_rate": round(self.estimated_rate, 4),
            "n_artificial": self.n_artificial,
            "degraded": self.degraded,
            "reason": self.reason,
        }


class DoubletFilter:
    """Simulated-doublet classifier.

    Parameters
    ----------
    config : DoubletConfig
        Doublet detection configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.preprocessing import DoubletFilter, DoubletConfig
    >>> doublets = DoubletFilter(DoubletConfig(random_seed=7))
    >>> singlets, result = doublets.filter_sample(adata, "S1")
    """

    def __init__(
        self,
        config: Optional[DoubletConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DoubletConfig()
        self.logger = logger or logging.getLogger(__name__)

    def expected_rate(self, n_cells: int) -> float:
        """Expected doublet fraction for a sample of n_cells."""
        if self.config.expected_rate is not None:
            return float(self.config.expected_rate)
        return 0.01 * n_cells / 1000.0

    def simulate_doublets(
        self,
        counts: sparse.csr_matrix,
        rng: np.random.Generator,
    ) -> sparse.csr_matrix:
        """Sum the counts of random pairs of distinct cells.

        Parameters
        ----------
        counts : sparse.csr_matrix
            Cells x genes counts
        rng : np.random.Generator
            Seeded generator

        Returns
        -------
        sparse.csr_matrix
            Artificial doublets x genes
        """
        n_cells = counts.shape[0]
        n_art = max(
            self.config.min_artificial,
            int(np.ceil(self.config.artificial_ratio * n_cells)),
        )
        first = rng.integers(0, n_cells, size=n_art)
        second = rng.integers(0, n_cells - 1, size=n_art)
        second = second + (second >= first)
        return (counts[first] + counts[second]).tocsr()

    def _check_size(self, adata: Any, sample_id: str) -> None:
        if adata.n_obs < max(self.config.min_cells, 2):
            raise InsufficientDataError(
                f"{adata.n_obs} cells (< {self.config.min_cells}) for doublet simulation",
                sample_id=sample_id,
            )
        if adata.n_vars < 2:
            raise InsufficientDataError(
                f"{adata.n_vars} genes for doublet simulation", sample_id=sample_id
            )

    def _features(
        self,
        combined: sparse.csr_matrix,
        is_artificial: np.ndarray,
    ) -> np.ndarray:
        """Build classifier features for real and artificial profiles."""
        from sklearn.decomposition import PCA
        from sklearn.neighbors import NearestNeighbors

        cfg = self.config
        library = np.asarray(combined.sum(axis=1)).ravel()
        detected = np.asarray((combined > 0).sum(axis=1)).ravel()

        scale = sparse.diags(1e4 / np.maximum(library, 1.0))
        lognorm = (scale @ combined).tocsr()
        lognorm.data = np.log1p(lognorm.data)
        dense = lognorm.toarray()

        n_total = dense.shape[0]
        n_pcs = max(1, min(cfg.n_pcs, dense.shape[1] - 1, n_total - 1))
        pcs = PCA(
            n_components=n_pcs, svd_solver="randomized", random_state=cfg.random_seed
        ).fit_transform(dense)

        k = cfg.k or int(np.clip(round(np.sqrt(n_total)), 10, 50))
        k = max(1, min(k, n_total - 1))
        nn = NearestNeighbors(n_neighbors=k + 1).fit(pcs)
        _, idx = nn.kneighbors(pcs)
        artificial_density = is_artificial[idx[:, 1:]].mean(axis=1)

        return np.column_stack(
            [pcs, np.log1p(library), np.log1p(detected), artificial_density]
        )

    def estimate_rate(
        self,
        real_scores: np.ndarray,
        artificial_scores: np.ndarray,
    ) -> float:
        """Estimate the doublet fraction among real cells.

        At a threshold that most artificial doublets pass (their 10th
        percentile), few singlets should pass, so the fraction of real cells
        above it divided by the artificial pass rate estimates the share of
        real doublets. Capped at max_rate.
        """
        t_low = float(np.quantile(artificial_scores, 0.1))
        passed = float(np.mean(artificial_scores >= t_low))
        rate = float(np.mean(real_scores >= t_low)) / max(passed, 1e-6)
        return float(np.clip(rate, 0.0, self.config.max_rate))

    def choose_threshold(
        self,
        real_scores: np.ndarray,
        artificial_scores: np.ndarray,
        expected_rate: float,
    ) -> float:
        """Pick the score threshold balancing misclassification and expected rate.

        Cost = FNR(artificial) + FPR(real) + ((called - target) / tolerance)^2

        Real cells are a mixture of singlets and a fraction ``rate`` of
        doublets (see estimate_rate) that score like the artificial ones, so
        FPR(real) = max(0, called - rate * TPR(artificial)) / (1 - rate).
        The target fraction is the larger of the expected and estimated rates.
        """
        pooled = np.concatenate([real_scores, artificial_scores])
        candidates = np.unique(np.quantile(pooled, np.linspace(0.01, 0.99, 99)))
        tolerance = max(self.config.rate_tolerance, 1e-6)
        rate = self.estimate_rate(real_scores, artificial_scores)
        target = max(expected_rate, rate)

        best_t, best_cost = 1.0, np.inf
        for t in candidates:
            tpr = float(np.mean(artificial_scores >= t))
            called = float(np.mean(real_scores >= t))
            fpr = max(0.0, called - rate * tpr) / max(1.0 - rate, 1e-6)
            deviation = ((called - target) / tolerance) ** 2
            cost = (1.0 - tpr) + fpr + deviation
            if cost < best_cost:
                best_t, best_cost = float(t), cost
        return best_t

    def score_sample(self, adata: Any, sample_id: Optional[str] = None) -> DoubletResult:
        """Score every cell of a sample.

        Parameters
        ----------
        adata : AnnData
            Raw counts for one sample
        sample_id : str, optional
            Sample identifier (default: adata.uns['sample_id'])

        Returns
        -------
        DoubletResult
            Scores and singlet/doublet calls per cell
        """
        from sklearn.ensemble import HistGradientBoostingClassifier
        from sklearn.model_selection import StratifiedKFold, cross_val_predict

        sample_id = sample_id or str(adata.uns.get("sample_id", "sample"))
        cfg = self.config
        index = adata.obs_names.copy()
        result = DoubletResult(sample_id=sample_id)
        result.expected_rate = self.expected_rate(adata.n_obs)

        try:
            self._check_size(adata, sample_id)
        except InsufficientDataError as e:
            self.logger.warning("Doublet detection skipped, all cells singlet: %s", e)
            result.scores = pd.Series(0.0, index=index, name="doublet_score")
            result.classes = pd.Series(SINGLET, index=index, name="doublet_class")
            result.threshold = 1.0
            result.degraded = True
            result.reason = e.message
            return result

        rng = np.random.default_rng(cfg.random_seed)
        counts = sparse.csr_matrix(adata.X, dtype=np.float64)

        totals = np.asarray(counts.sum(axis=0)).ravel()
        n_features = min(cfg.n_features, adata.n_vars)
        genes = np.sort(np.argsort(-totals, kind="stable")[:n_features])
        counts = counts[:, genes].tocsr()

        artificial = self.simulate_doublets(counts, rng)
        n_cells, n_art = counts.shape[0], artificial.shape[0]
        combined = sparse.vstack([counts, artificial]).tocsr()
        is_artificial = np.concatenate([np.zeros(n_cells), np.ones(n_art)])

        features = self._features(combined, is_artificial)

        clf = HistGradientBoostingClassifier(random_state=cfg.random_seed)
        cv = StratifiedKFold(
            n_splits=max(2, min(cfg.cv_folds, n_cells)),
            shuffle=True,
            random_state=cfg.random_seed,
        )
        proba = cross_val_predict(
            clf, features, is_artificial.astype(int), cv=cv, method="predict_proba"
        )[:, 1]

        real_scores, artificial_scores = proba[:n_cells], proba[n_cells:]
        threshold = self.choose_threshold(
            real_scores, artificial_scores, result.expected_rate
        )
        result.estimated_rate = self.estimate_rate(real_scores, artificial_scores)

        result.scores = pd.Series(real_scores, index=index, name="doublet_score")
        result.classes = pd.Series(
            np.where(real_scores >= threshold, DOUBLET, SINGLET),
            index=index,
            name="doublet_class",
        )
        result.threshold = threshold
        result.n_artificial = n_art

        self.logger.info(
            "%s: %d/%d cells called doublet (threshold=%.3f, expected_rate=%.3f, "
            "estimated_rate=%.3f, seed=%d)",
            sample_id,
            result.n_doublets,
            n_cells,
            threshold,
            result.expected_rate,
            result.estimated_rate,
            cfg.random_seed,
        )
        return result

    def filter_sample(
        self, adata: Any, sample_id: Optional[str] = None
    ) -> Tuple[Any, DoubletResult]:
        """Score a sample and drop non-singlets.

        Returns
        -------
        Tuple[AnnData, DoubletResult]
            New AnnData holding singlets only, and the scoring result
        """
        result = self.score_sample(adata, sample_id)
        annotated = adata.copy()
        annotated.obs["doublet_score"] = result.scores.to_numpy()
        annotated.obs["doublet_class"] = result.classes.to_numpy()
        keep = (annotated.obs["doublet_class"] == SINGLET).to_numpy()
        return annotated[keep].copy(), result

    def filter_samples(
        self, samples: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, DoubletResult]]:
        """Filter every sample independently.

        Returns
        -------
        Tuple[Dict[str, AnnData], Dict[str, DoubletResult]]
            Singlet-only samples and per-sample results
        """
        filtered: Dict[str, Any] = {}
        results: Dict[str, DoubletResult] = {}
        for sample_id, adata in samples.items():
            filtered[sample_id], results[sample_id] = self.filter_sample(adata, sample_id)
        return filtered, results
