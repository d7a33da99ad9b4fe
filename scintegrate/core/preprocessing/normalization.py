"""Variance-stabilizing normalization (Normalizer).

Fits a regularized negative binomial model per sample and returns Pearson
residuals, the per-sample HVG ranking and the fitted SampleModel.

The model follows three steps:
1. Per-gene Poisson GLM on a subset of genes and cells, with theta
   estimated by the method of moments from the fitted means
2. Regularization: every coefficient and log10(theta) is smoothed against
   log10(gene mean) with LOWESS and evaluated for all modeled genes
3. Pearson residuals (y - mu) / sqrt(mu + mu^2 / theta), clipped
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import InsufficientDataError
from ..parallel import run_tasks
from .config import NormalizationConfig

MIN_MODELED_GENES = 10
GENE_CHUNK = 1000


@dataclass
class SampleModel:
    """Fitted per-sample count model.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    genes : List[str]
        Modeled genes
    covariates : List[str]
        Model covariates after the intercept ('log_umi', optionally 'mito')
    coefficients : np.ndarray
        Regularized coefficients (n_genes, 1 + n_covariates)
    theta : np.ndarray
        Regularized overdispersion per gene
    gene_mean : np.ndarray
        Mean count per gene
    cell_ids : List[str]
        Cells the model was fit on, in order
    log_umi : np.ndarray
        log10 total UMI per cell
    mito_fraction : np.ndarray
        Mitochondrial fraction per cell
    clip : float
        Absolute residual clip
    """

    sample_id: str
    genes: List[str]
    covariates: List[str]
    coefficients: np.ndarray
    theta: np.ndarray
    gene_mean: np.ndarray
    cell_ids: List[str]
    log_umi: np.ndarray
    mito_fraction: np.ndarray
    clip: float
    _gene_pos: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self._gene_pos = {g: i for i, g in enumerate(self.genes)}

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)

    def design(self) -> np.ndarray:
        """Design matrix [1, log_umi, (mito)] for the model's cells."""
        columns = [np.ones(self.n_cells), self.log_umi]
        if "mito" in self.covariates:
            columns.append(self.mito_fraction)
        return np.column_stack(columns)

    def has_genes(self, genes: Sequence[str]) -> bool:
        return all(g in self._gene_pos for g in genes)

    def expected(self, genes: Sequence[str]) -> np.ndarray:
        """Fitted means (cells x genes)."""
        idx = self._positions(genes)
        eta = self.design() @ self.coefficients[idx].T
        return np.exp(np.minimum(eta, 50.0))

    def _positions(self, genes: Sequence[str]) -> np.ndarray:
        missing = [g for g in genes if g not in self._gene_pos]
        if missing:
            raise KeyError(
                f"{len(missing)} genes not modeled in sample {self.sample_id}: {missing[:5]}"
            )
        return np.array([self._gene_pos[g] for g in genes], dtype=int)

    def pearson_residuals(self, counts: np.ndarray, genes: Sequence[str]) -> np.ndarray:
        """Clipped Pearson residuals for a dense cells x genes count block."""
        mu = self.expected(genes)
        theta = self.theta[self._positions(genes)]
        resid = (counts - mu) / np.sqrt(mu + mu ** 2 / theta)
        return np.clip(resid, -self.clip, self.clip)

    def residuals(self, adata: Any, genes: Optional[Sequence[str]] = None) -> np.ndarray:
        """Compute residuals for any modeled genes of the sample.

        Parameters
        ----------
        adata : AnnData
            The sample's raw counts (same cells, same order as the fit)
        genes : Sequence[str], optional
            Genes to compute (default: all modeled genes)

        Returns
        -------
        np.ndarray
            Dense cells x genes residual matrix
        """
        genes = list(self.genes if genes is None else genes)
        if list(map(str, adata.obs_names)) != self.cell_ids:
            raise ValueError(
                f"Cells of sample {self.sample_id} do not match the fitted model"
            )
        block = adata[:, genes].X
        block = block.toarray() if sparse.issparse(block) else np.asarray(block)
        return self.pearson_residuals(block.astype(np.float64), genes)


@dataclass
class NormalizationResult:
    """Result from normalizing a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    model : SampleModel
        Fitted count model
    hvg : pd.Series
        Rank (1 = most variable) of the top genes, indexed by gene
    residual_variance : pd.Series
        Residual variance of every modeled gene
    residuals : pd.DataFrame
        Cells x HVG residual matrix
    counts : AnnData
        Raw counts the model was fit on
    """

    sample_id: str
    model: SampleModel
    hvg: pd.Series
    residual_variance: pd.Series
    residuals: pd.DataFrame
    counts: Any = None  # AnnData

    @property
    def modeled_genes(self) -> List[str]:
        return list(self.model.genes)

    @property
    def n_cells(self) -> int:
        return self.model.n_cells

    def residuals_for(self, genes: Sequence[str]) -> np.ndarray:
        """Residual matrix (cells x genes), computing non-HVG columns on demand."""
        genes = list(genes)
        cached = [g for g in genes if g in self.residuals.columns]
        missing = [g for g in genes if g not in self.residuals.columns]
        out = pd.DataFrame(index=self.residuals.index, columns=genes, dtype=float)
        if cached:
            out[cached] = self.residuals[cached].to_numpy()
        if missing:
            if self.counts is None:
                raise ValueError(
                    f"Counts for sample {self.sample_id} are needed for genes outside the HVG set"
                )
            out[missing] = self.model.residuals(self.counts, missing)
        return out.to_numpy(dtype=np.float64)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "sample_id": self.sample_id,
            "n_cells": self.n_cells,
            "n_modeled_genes": len(self.model.genes),
            "n_hvg": int(len(self.hvg)),
            "covariates": list(self.model.covariates),
            "clip": round(self.model.clip, 4),
            "top_hvg": list(self.hvg.index[:10]),
        }


@dataclass
class NormalizationWorkItem:
    """Minimal per-sample data for parallel normalization."""

    sample_id: str
    counts: sparse.csr_matrix
    gene_names: List[str]
    cell_ids: List[str]
    mito_fraction: np.ndarray
    config: NormalizationConfig


@dataclass
class _SampleFit:
    sample_id: str
    model: SampleModel
    variance: np.ndarray
    hvg_genes: List[str]
    hvg_residuals: np.ndarray


def _mito_fraction(adata: Any, pattern: str) -> np.ndarray:
    if "mito_fraction" in adata.obs.columns:
        return adata.obs["mito_fraction"].to_numpy(dtype=np.float64)
    mt = np.asarray(adata.var_names.str.contains(pattern, case=False, regex=True))
    X = adata.X
    total = np.asarray(X.sum(axis=1)).ravel()
    mito = np.asarray(X[:, mt].sum(axis=1)).ravel() if mt.any() else np.zeros(adata.n_obs)
    return np.divide(mito, total, out=np.zeros_like(mito, dtype=float), where=total > 0)


def _sample_genes(
    log_mean: np.ndarray, n: int, rng: np.random.Generator
) -> np.ndarray:
    """Density-weighted draw of gene positions, favoring sparse mean ranges."""
    if len(log_mean) <= n:
        return np.arange(len(log_mean))
    if np.ptp(log_mean) == 0:
        return np.sort(rng.choice(len(log_mean), size=n, replace=False))
    from scipy.stats import gaussian_kde

    density = gaussian_kde(log_mean)(log_mean)
    p = 1.0 / np.maximum(density, 1e-12)
    p /= p.sum()
    return np.sort(rng.choice(len(log_mean), size=n, replace=False, p=p))


def _theta_mm(y: np.ndarray, mu: np.ndarray, bounds: Sequence[float]) -> float:
    """Method-of-moments overdispersion from fitted Poisson means."""
    denom = float(np.sum((y - mu) ** 2 - mu))
    if denom <= 0:
        return float(bounds[1])
    return float(np.clip(np.sum(mu ** 2) / denom, bounds[0], bounds[1]))


def _regularize(
    values: np.ndarray, x_fit: np.ndarray, x_all: np.ndarray, frac: float
) -> np.ndarray:
    from statsmodels.nonparametric.smoothers_lowess import lowess

    smoothed = lowess(values, x_fit, frac=frac, it=0, xvals=x_all)
    bad = ~np.isfinite(smoothed)
    if bad.any():
        order = np.argsort(x_fit)
        smoothed[bad] = np.interp(x_all[bad], x_fit[order], values[order])
    return smoothed


def fit_sample(item: NormalizationWorkItem) -> _SampleFit:
    """Fit the count model of one sample (worker function).

    Raises
    ------
    InsufficientDataError
        Too few cells or modeled genes
    """
    import statsmodels.api as sm

    cfg = item.config
    counts = item.counts
    n_cells = counts.shape[0]
    if n_cells < cfg.min_cells_to_fit:
        raise InsufficientDataError(
            f"{n_cells} cells (< {cfg.min_cells_to_fit}) for normalization",
            sample_id=item.sample_id,
        )

    detected = np.asarray((counts > 0).sum(axis=0)).ravel()
    modeled = np.where(detected >= cfg.min_cells)[0]
    if len(modeled) < MIN_MODELED_GENES:
        raise InsufficientDataError(
            f"{len(modeled)} genes detected in >= {cfg.min_cells} cells "
            f"(< {MIN_MODELED_GENES}) for normalization",
            sample_id=item.sample_id,
        )

    total = np.asarray(counts.sum(axis=1)).ravel()
    log_umi = np.log10(np.maximum(total, 1.0))
    mito = np.asarray(item.mito_fraction, dtype=np.float64)
    covariates = ["log_umi"]
    if cfg.regress_mito and np.var(mito) > 0:
        covariates.append("mito")

    y_all = counts[:, modeled].tocsc()
    gene_mean = np.asarray(y_all.mean(axis=0)).ravel()
    log_mean = np.log10(gene_mean)

    rng = np.random.default_rng(cfg.random_seed)
    cells = np.arange(n_cells)
    if n_cells > cfg.n_cells_step1:
        cells = np.sort(rng.choice(n_cells, size=cfg.n_cells_step1, replace=False))

    sub = y_all[cells]
    nonzero = np.where(np.asarray(sub.sum(axis=0)).ravel() > 0)[0]
    step1 = nonzero[_sample_genes(log_mean[nonzero], cfg.n_genes_step1, rng)]

    design = [np.ones(n_cells), log_umi]
    if "mito" in covariates:
        design.append(mito)
    design = np.column_stack(design)
    design_sub = design[cells]

    params, log_theta, fitted = [], [], []
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        for g in step1:
            y = sub[:, g].toarray().ravel()
            try:
                fit = sm.GLM(y, design_sub, family=sm.families.Poisson()).fit()
            except np.linalg.LinAlgError:
                continue
            if not np.all(np.isfinite(fit.params)):
                continue
            params.append(fit.params)
            log_theta.append(np.log10(_theta_mm(y, fit.mu, cfg.theta_bounds)))
            fitted.append(g)

    if len(fitted) < MIN_MODELED_GENES:
        raise InsufficientDataError(
            f"only {len(fitted)} genes could be fit in step 1",
            sample_id=item.sample_id,
        )

    params = np.asarray(params)
    log_theta = np.asarray(log_theta)
    x_fit = log_mean[fitted]

    coefficients = np.column_stack(
        [
            _regularize(params[:, j], x_fit, log_mean, cfg.lowess_frac)
            for j in range(params.shape[1])
        ]
    )
    theta = np.clip(
        10 ** _regularize(log_theta, x_fit, log_mean, cfg.lowess_frac),
        cfg.theta_bounds[0],
        cfg.theta_bounds[1],
    )

    model = SampleModel(
        sample_id=item.sample_id,
        genes=[item.gene_names[i] for i in modeled],
        covariates=covariates,
        coefficients=coefficients,
        theta=theta,
        gene_mean=gene_mean,
        cell_ids=list(item.cell_ids),
        log_umi=log_umi,
        mito_fraction=mito,
        clip=cfg.clip if cfg.clip is not None else float(np.sqrt(n_cells / 30.0)),
    )

    variance = np.empty(len(modeled))
    for start in range(0, len(modeled), GENE_CHUNK):
        stop = min(start + GENE_CHUNK, len(modeled))
        genes = model.genes[start:stop]
        block = y_all[:, start:stop].toarray().astype(np.float64)
        variance[start:stop] = model.pearson_residuals(block, genes).var(axis=0)

    names = np.asarray(model.genes, dtype=object)
    order = np.lexsort((names, -variance))[: cfg.n_hvg]
    hvg_genes = [model.genes[i] for i in order]
    hvg_block = y_all[:, order].toarray().astype(np.float64)

    return _SampleFit(
        sample_id=item.sample_id,
        model=model,
        variance=variance,
        hvg_genes=hvg_genes,
        hvg_residuals=model.pearson_residuals(hvg_block, hvg_genes),
    )


class Normalizer:
    """Per-sample regularized negative binomial normalizer.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration
    n_jobs : int
        Parallel workers over samples (1 = sequential)
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.preprocessing import Normalizer, NormalizationConfig
    >>> normalizer = Normalizer(NormalizationConfig(n_hvg=2000), n_jobs=4)
    >>> results = normalizer.normalize_samples(samples)
    >>> results["S1"].hvg.head()
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        n_jobs: int = 1,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.n_jobs = n_jobs
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import statsmodels.api  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Normalization requires statsmodels. "
                "Install with: pip install statsmodels"
            )

    def _work_item(self, sample_id: str, adata: Any) -> NormalizationWorkItem:
        return NormalizationWorkItem(
            sample_id=sample_id,
            counts=sparse.csr_matrix(adata.X, dtype=np.float64),
            gene_names=[str(g) for g in adata.var_names],
            cell_ids=[str(c) for c in adata.obs_names],
            mito_fraction=_mito_fraction(adata, self.config.mito_pattern),
            config=self.config,
        )

    def _result(self, fit: _SampleFit, adata: Any) -> NormalizationResult:
        hvg = pd.Series(
            np.arange(1, len(fit.hvg_genes) + 1), index=fit.hvg_genes, name="hvg_rank"
        )
        result = NormalizationResult(
            sample_id=fit.sample_id,
            model=fit.model,
            hvg=hvg,
            residual_variance=pd.Series(
                fit.variance, index=fit.model.genes, name="residual_variance"
            ),
            residuals=pd.DataFrame(
                fit.hvg_residuals, index=fit.model.cell_ids, columns=fit.hvg_genes
            ),
            counts=adata,
        )
        self.logger.info(
            "%s: modeled %d genes on %d cells (%s), %d HVGs, clip=%.2f",
            fit.sample_id,
            len(fit.model.genes),
            fit.model.n_cells,
            "+".join(fit.model.covariates),
            len(hvg),
            fit.model.clip,
        )
        return result

    def normalize_sample(
        self, adata: Any, sample_id: Optional[str] = None
    ) -> NormalizationResult:
        """Normalize a single sample.

        Parameters
        ----------
        adata : AnnData
            Raw counts for one sample
        sample_id : str, optional
            Sample identifier (default: adata.uns['sample_id'])

        Returns
        -------
        NormalizationResult
            Model, HVG ranking and residuals

        Raises
        ------
        InsufficientDataError
            If the sample has too few cells or genes to fit
        """
        sample_id = sample_id or str(adata.uns.get("sample_id", "sample"))
        fit = fit_sample(self._work_item(sample_id, adata))
        return self._result(fit, adata)

    def normalize_samples(self, samples: Dict[str, Any]) -> Dict[str, NormalizationResult]:
        """Normalize every sample, in parallel when n_jobs != 1.

        Returns
        -------
        Dict[str, NormalizationResult]
            Results keyed by sample_id, in input order
        """
        items = [self._work_item(sid, adata) for sid, adata in samples.items()]
        fits = run_tasks(
            fit_sample, items, n_jobs=self.n_jobs, label="samples", logger=self.logger
        )
        return {
            fit.sample_id: self._result(fit, samples[fit.sample_id]) for fit in fits
        }
