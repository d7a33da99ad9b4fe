"""Anchor-weighted integration (Integrator).

Samples are integrated one at a time into a growing reference. Each query
cell is corrected by a weighted average of anchor vectors (reference value
minus query value), weighted by the cell's proximity to the anchors in the
query's own PCA space and by the anchor scores.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from .anchors import AnchorSet
from .config import IntegrationConfig


@dataclass
class IntegrationResult:
    """Result from integrating all samples.

    Attributes
    ----------
    adata : AnnData
        Integrated values over the merged cells and the shared features
    order : List[str]
        Integration order (first sample is the initial reference)
    anchors_used : Dict[str, int]
        Anchors used to correct each sample
    pass_through : List[str]
        Samples left uncorrected for lack of anchors
    """

    adata: Any = None  # AnnData
    order: List[str] = field(default_factory=list)
    anchors_used: Dict[str, int] = field(default_factory=dict)
    pass_through: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "order": list(self.order),
            "anchors_used": dict(self.anchors_used),
            "pass_through": list(self.pass_through),
            "n_cells": 0 if self.adata is None else int(self.adata.n_obs),
            "n_features": 0 if self.adata is None else int(self.adata.n_vars),
        }


class Integrator:
    """Anchor-weighted sample integration.

    Parameters
    ----------
    config : IntegrationConfig
        Integration configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.integration import Integrator
    >>> integrator = Integrator()
    >>> result = integrator.integrate(residuals, cell_ids, anchor_set, features, merged)
    >>> result.adata.X.shape
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def integration_order(
        self, sizes: Dict[str, int], anchor_set: AnchorSet
    ) -> List[str]:
        """Greedy integration order.

        Starts from the largest sample (ties by id), then repeatedly adds the
        remaining sample with the highest total anchor score to the samples
        already integrated (ties by size, then id).
        """
        remaining = sorted(sizes, key=lambda s: (-sizes[s], s))
        order = [remaining.pop(0)]
        while remaining:
            scores = {q: anchor_set.total_score(q, order) for q in remaining}
            nxt = sorted(remaining, key=lambda q: (-scores[q], -sizes[q], q))[0]
            remaining.remove(nxt)
            order.append(nxt)
        return order

    def anchor_weights(
        self, query: np.ndarray, query_index: np.ndarray, scores: np.ndarray
    ) -> sparse.csr_matrix:
        """Row-normalized cells x anchors weight matrix.

        Parameters
        ----------
        query : np.ndarray
            Query cells x features values
        query_index : np.ndarray
            Query cell position of each anchor
        scores : np.ndarray
            Anchor scores

        Returns
        -------
        sparse.csr_matrix
            Weights; rows of cells without usable anchors are all zero
        """
        from sklearn.decomposition import PCA
        from sklearn.neighbors import NearestNeighbors

        cfg = self.config
        n_cells, n_features = query.shape
        n_anchors = len(query_index)

        n_pcs = max(1, min(cfg.n_pcs_weight, n_cells - 1, n_features))
        pcs = PCA(n_components=n_pcs, random_state=cfg.random_seed).fit_transform(query)

        k = min(cfg.k_weight, n_anchors)
        nn = NearestNeighbors(n_neighbors=k).fit(pcs[query_index])
        dist, idx = nn.kneighbors(pcs)

        d_k = dist[:, -1:]
        proximity = np.where(d_k > 0, 1.0 - dist / np.where(d_k > 0, d_k, 1.0), 1.0)
        w = proximity * scores[idx]
        w = 1.0 - np.exp(-w / (2.0 / cfg.sd_weight) ** 2)

        row_sum = w.sum(axis=1, keepdims=True)
        w = np.divide(w, row_sum, out=np.zeros_like(w), where=row_sum > 0)

        return sparse.csr_matrix(
            (w.ravel(), (np.repeat(np.arange(n_cells), k), idx.ravel())),
            shape=(n_cells, n_anchors),
        )

    def correct_sample(
        self,
        sample_id: str,
        query: np.ndarray,
        integrated: Dict[str, np.ndarray],
        anchor_set: AnchorSet,
    ) -> np.ndarray:
        """Correct one query sample against the integrated samples.

        Returns
        -------
        np.ndarray
            Corrected values; the query unchanged when it has no anchors
        """
        anchors = anchor_set.oriented(sample_id, list(integrated))
        if anchors.empty:
            self.logger.warning(
                "%s: no anchors with integrated samples, passing through unchanged",
                sample_id,
            )
            return query.copy()

        query_index = anchors["query_index"].to_numpy(dtype=int)
        ref_values = np.vstack(
            [
                integrated[ref][int(i)]
                for ref, i in zip(anchors["ref_sample"], anchors["ref_index"])
            ]
        )
        anchor_vectors = ref_values - query[query_index]

        weights = self.anchor_weights(
            query, query_index, anchors["score"].to_numpy(dtype=float)
        )
        corrected = query + np.asarray(weights @ anchor_vectors)

        self.logger.info(
            "%s: corrected with %d anchors against %s",
            sample_id,
            len(anchors),
            ", ".join(sorted(anchors["ref_sample"].unique())),
        )
        return corrected

    def integrate(
        self,
        data: Dict[str, np.ndarray],
        cell_ids: Dict[str, Sequence[str]],
        anchor_set: AnchorSet,
        features: Sequence[str],
        merged: Any,
    ) -> IntegrationResult:
        """Integrate all samples.

        Parameters
        ----------
        data : Dict[str, np.ndarray]
            Per-sample cells x features residuals over the shared features
        cell_ids : Dict[str, Sequence[str]]
            Per-sample cell identifiers matching the rows of data
        anchor_set : AnchorSet
            Anchors for all pairs
        features : Sequence[str]
            Shared features (columns of data)
        merged : AnnData
            Merged dataset whose cells and order the output follows

        Returns
        -------
        IntegrationResult
            Integrated AnnData and integration summary
        """
        import anndata as ad

        result = IntegrationResult()
        sizes = {sid: int(X.shape[0]) for sid, X in data.items()}
        result.order = self.integration_order(sizes, anchor_set)

        integrated: Dict[str, np.ndarray] = {}
        for sample_id in result.order:
            query = np.asarray(data[sample_id], dtype=np.float64)
            if not integrated:
                integrated[sample_id] = query.copy()
                result.anchors_used[sample_id] = 0
                self.logger.info("%s: initial reference (%d cells)", sample_id, sizes[sample_id])
                continue
            n_used = len(anchor_set.oriented(sample_id, list(integrated)))
            integrated[sample_id] = self.correct_sample(
                sample_id, query, integrated, anchor_set
            )
            result.anchors_used[sample_id] = n_used
            if n_used == 0:
                result.pass_through.append(sample_id)

        position = pd.Series(np.arange(merged.n_obs), index=merged.obs_names.astype(str))
        X = np.zeros((merged.n_obs, len(features)), dtype=np.float64)
        covered = np.zeros(merged.n_obs, dtype=bool)
        for sample_id, values in integrated.items():
            rows = position.reindex([str(c) for c in cell_ids[sample_id]])
            if rows.isna().any():
                raise ValueError(
                    f"{int(rows.isna().sum())} cells of sample {sample_id} are not in the merged dataset"
                )
            rows = rows.to_numpy(dtype=int)
            X[rows] = values
            covered[rows] = True
        if not covered.all():
            raise ValueError(
                f"{int((~covered).sum())} merged cells have no integrated values"
            )

        adata = ad.AnnData(
            X=X,
            obs=merged.obs.copy(),
            var=pd.DataFrame(index=pd.Index([str(f) for f in features], name="gene")),
        )
        adata.uns["integration"] = {
            "order": list(result.order),
            "anchors_used": dict(result.anchors_used),
            "pass_through": list(result.pass_through),
            "n_anchors": anchor_set.n_anchors,
        }
        result.adata = adata
        return result
