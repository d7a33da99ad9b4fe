"""Dimensionality reduction (DimReducer).

Pipeline: scale → PCA → neighbors → UMAP, computed on a working copy of the
integrated values. Embeddings are attached to a new AnnData; the input is
never modified.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
from scipy import sparse

from .config import EmbeddingConfig


@dataclass
class EmbeddingResult:
    """Result from dimensionality reduction.

    Attributes
    ----------
    adata : AnnData
        Copy of the input with obsm['X_pca'] and obsm['X_umap']
    n_pcs : int
        Principal components actually computed
    n_neighbors : int
        Neighbors actually used
    variance_ratio : np.ndarray
        Explained variance ratio per component
    """

    adata: Any = None  # AnnData
    n_pcs: int = 0
    n_neighbors: int = 0
    variance_ratio: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_pcs": self.n_pcs,
            "n_neighbors": self.n_neighbors,
            "variance_explained": round(float(np.sum(self.variance_ratio)), 4),
        }


class DimReducer:
    """PCA + UMAP embedding engine.

    Parameters
    ----------
    config : EmbeddingConfig, optional
        Embedding configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from scintegrate.core.embedding import DimReducer
    >>> result = DimReducer().reduce(integrated)
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or EmbeddingConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Embedding requires scanpy. Install with: pip install scanpy"
            )

    def reduce(self, adata: Any) -> EmbeddingResult:
        """Compute PCA and UMAP embeddings.

        Parameters
        ----------
        adata : AnnData
            Integrated values (cells x features); not modified

        Returns
        -------
        EmbeddingResult
            New AnnData with embeddings, and run statistics
        """
        import anndata as ad
        import scanpy as sc

        cfg = self.config
        if adata.n_obs < 3 or adata.n_vars < 2:
            raise ValueError(
                f"Cannot embed {adata.n_obs} cells x {adata.n_vars} features"
            )

        base = adata.X.toarray() if sparse.issparse(adata.X) else np.asarray(adata.X)
        work = ad.AnnData(X=base.astype(np.float32, copy=True))

        sc.pp.scale(work, zero_center=True, max_value=cfg.scale_clip)

        # Adjust n_pcs to the data shape
        use_pcs = min(cfg.n_pcs, max(work.n_vars - 1, 1), max(work.n_obs - 1, 1))
        n_neighbors = max(2, min(cfg.n_neighbors, work.n_obs - 1))

        self.logger.info(
            "Running embedding pipeline: n_pcs=%d, n_neighbors=%d, seed=%d",
            use_pcs,
            n_neighbors,
            cfg.random_seed,
        )
        sc.tl.pca(work, n_comps=use_pcs, svd_solver="arpack", random_state=cfg.random_seed)
        sc.pp.neighbors(
            work, n_neighbors=n_neighbors, n_pcs=use_pcs, random_state=cfg.random_seed
        )
        sc.tl.umap(work, min_dist=cfg.min_dist, random_state=cfg.random_seed)

        out = adata.copy()
        out.obsm["X_pca"] = np.asarray(work.obsm["X_pca"])
        out.obsm["X_umap"] = np.asarray(work.obsm["X_umap"])
        out.uns["embedding"] = {
            "n_pcs": int(use_pcs),
            "n_neighbors": int(n_neighbors),
            "variance_ratio": np.asarray(work.uns["pca"]["variance_ratio"]),
        }

        result = EmbeddingResult(
            adata=out,
            n_pcs=int(use_pcs),
            n_neighbors=int(n_neighbors),
            variance_ratio=np.asarray(work.uns["pca"]["variance_ratio"]),
        )
        self.logger.info(
            "Computed %d PCs (%.1f%% variance) and 2-D UMAP for %d cells",
            result.n_pcs,
            100 * float(np.sum(result.variance_ratio)),
            out.n_obs,
        )
        return result
