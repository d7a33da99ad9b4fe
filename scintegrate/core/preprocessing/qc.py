"""Cell-level quality control (QualityFilter).

Provides fixed-threshold cell filtering on detected genes, total counts and
mitochondrial fraction, plus the post-merge re-assertion of the singlet and
quality invariants.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .config import QCConfig


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_genes",
    "high_genes",
    "high_counts",
    "high_mito",
]


@dataclass
class QCResult:
    """Result from QC filtering a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier (or 'merged')
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    removal_fraction : float
        Fraction of cells removed
    reason_counts : Dict[str, int]
        Counts per removal reason (a cell can count under several)
    removal_records : List[Dict]
        Details of removed cells
    """

    sample_id: str
    cells_total: int = 0
    cells_removed: int = 0
    removal_fraction: float = 0.0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    removal_records: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "sample_id": self.sample_id,
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS + ["not_singlet"]:
            if reason in REASON_COLUMNS or reason in self.reason_counts:
                result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


class QualityFilter:
    """Fixed-threshold cell quality filter.

    Parameters
    ----------
    config : QCConfig
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.preprocessing import QualityFilter, QCConfig
    >>> qc = QualityFilter(QCConfig(max_mito_fraction=0.2))
    >>> filtered, result = qc.filter_sample(adata, "S1")
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def compute_metrics(self, adata: Any) -> Any:
        """Return a copy of adata with per-cell QC metrics in obs.

        Adds n_genes_by_counts, total_counts, pct_counts_mt and mito_fraction.
        """
        import scanpy as sc

        adata = adata.copy()
        adata.var["mt"] = adata.var_names.str.contains(
            self.config.mito_pattern, case=False, regex=True
        )
        sc.pp.calculate_qc_metrics(
            adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True
        )
        adata.obs["pct_counts_mt"] = adata.obs["pct_counts_mt"].fillna(0.0)
        adata.obs["mito_fraction"] = adata.obs["pct_counts_mt"] / 100.0
        return adata

    def flag_cells(self, obs: pd.DataFrame) -> pd.DataFrame:
        """Build boolean reason flags from computed metrics.

        Parameters
        ----------
        obs : pd.DataFrame
            Cell metadata holding the QC metrics

        Returns
        -------
        pd.DataFrame
            One boolean column per reason in REASON_COLUMNS
        """
        cfg = self.config
        n_genes = obs["n_genes_by_counts"].astype(float)
        reasons = pd.DataFrame(index=obs.index)
        reasons["low_genes"] = n_genes <= cfg.min_genes
        reasons["high_genes"] = n_genes >= cfg.max_genes
        reasons["high_counts"] = obs["total_counts"].astype(float) >= cfg.max_counts
        reasons["high_mito"] = obs["mito_fraction"].astype(float) >= cfg.max_mito_fraction
        return reasons

    def _apply(
        self, adata: Any, reasons: pd.DataFrame, sample_id: str
    ) -> Tuple[Any, QCResult]:
        result = QCResult(sample_id=sample_id)
        flagged = reasons.any(axis=1).to_numpy()

        result.cells_total = int(adata.n_obs)
        result.cells_removed = int(flagged.sum())
        result.removal_fraction = (
            result.cells_removed / result.cells_total if result.cells_total else 0.0
        )
        for reason in reasons.columns:
            result.reason_counts[reason] = int(reasons[reason].sum())

        for cell_id, row_values in reasons.loc[flagged].iterrows():
            cell_reasons = [name for name in reasons.columns if bool(row_values[name])]
            result.removal_records.append(
                {
                    "sample_id": sample_id,
                    "cell_id": cell_id,
                    "reasons": ";".join(sorted(cell_reasons)),
                }
            )

        return adata[~flagged].copy(), result

    def filter_sample(
        self, adata: Any, sample_id: Optional[str] = None
    ) -> Tuple[Any, QCResult]:
        """Filter cells based on QC thresholds.

        Parameters
        ----------
        adata : AnnData
            Raw counts for one sample
        sample_id : str, optional
            Sample identifier (default: adata.uns['sample_id'])

        Returns
        -------
        Tuple[AnnData, QCResult]
            New AnnData with passing cells only, and the filtering summary
        """
        sample_id = sample_id or str(adata.uns.get("sample_id", "sample"))
        annotated = self.compute_metrics(adata)
        reasons = self.flag_cells(annotated.obs)
        filtered, result = self._apply(annotated, reasons, sample_id)

        self.logger.info(
            "%s: QC removed %d/%d cells (%s)",
            sample_id,
            result.cells_removed,
            result.cells_total,
            ", ".join(f"{k}={v}" for k, v in result.reason_counts.items()),
        )
        return filtered, result

    def filter_samples(
        self, samples: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, QCResult]]:
        """Filter every sample independently."""
        filtered: Dict[str, Any] = {}
        results: Dict[str, QCResult] = {}
        for sample_id, adata in samples.items():
            filtered[sample_id], results[sample_id] = self.filter_sample(adata, sample_id)
        return filtered, results

    def reassert_merged(self, adata: Any) -> Tuple[Any, QCResult]:
        """Re-apply the thresholds and the singlet requirement after merging.

        Any cell whose doublet_class is not 'singlet' is removed along with
        cells failing the QC thresholds. Both counts are expected to be zero.

        Parameters
        ----------
        adata : AnnData
            Merged dataset

        Returns
        -------
        Tuple[AnnData, QCResult]
            New AnnData and a summary with sample_id 'merged'
        """
        annotated = self.compute_metrics(adata)
        reasons = self.flag_cells(annotated.obs)
        if "doublet_class" in annotated.obs.columns:
            reasons["not_singlet"] = (
                annotated.obs["doublet_class"].astype(str) != "singlet"
            ).to_numpy()
        else:
            reasons["not_singlet"] = False

        filtered, result = self._apply(annotated, reasons, "merged")
        if result.cells_removed:
            self.logger.warning(
                "Post-merge re-assertion removed %d cells (%d not singlet)",
                result.cells_removed,
                result.reason_counts.get("not_singlet", 0),
            )
        else:
            self.logger.info("Post-merge re-assertion: all %d cells pass", result.cells_total)
        return filtered, result


def passes_thresholds(obs: pd.DataFrame, config: Optional[QCConfig] = None) -> np.ndarray:
    """Boolean mask of cells satisfying every QC threshold."""
    return ~QualityFilter(config).flag_cells(obs).any(axis=1).to_numpy()
