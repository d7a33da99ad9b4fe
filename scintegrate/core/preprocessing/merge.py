"""Sample merging (SampleMerger).

Merges per-sample AnnData objects into one dataset with sample-traceable
cell identifiers, and splits a merged dataset back into samples.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ...errors import IdentifierCollisionError


@dataclass
class MergeResult:
    """Result from merging samples.

    Attributes
    ----------
    adata : AnnData
        Merged AnnData object (raw counts)
    n_cells : int
        Total number of cells
    n_genes : int
        Number of genes in the union
    sample_ids : List[str]
        Samples in merge order
    cells_per_sample : Dict[str, int]
        Cell count per sample
    """

    adata: Any = None  # AnnData
    n_cells: int = 0
    n_genes: int = 0
    sample_ids: List[str] = field(default_factory=list)
    cells_per_sample: Dict[str, int] = field(default_factory=dict)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
            "n_samples": self.n_samples,
            "cells_per_sample": dict(self.cells_per_sample),
        }


def prefix_cell_ids(sample_id: str, barcodes: pd.Index) -> pd.Index:
    """Build merged cell identifiers '{sample_id}_{barcode}'."""
    return pd.Index([f"{sample_id}_{b}" for b in barcodes.astype(str)])


class SampleMerger:
    """Identifier-prefixing sample merger.

    Parameters
    ----------
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.preprocessing import SampleMerger
    >>> merger = SampleMerger()
    >>> result = merger.merge({"S1": adata_1, "S2": adata_2})
    >>> samples = merger.split(result.adata)
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import anndata  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "Sample merging requires anndata. "
                "Install with: pip install anndata"
            )

    def merge(self, samples: Dict[str, Any]) -> MergeResult:
        """Merge samples into a single AnnData object.

        Parameters
        ----------
        samples : Dict[str, AnnData]
            Map of sample_id to per-sample counts

        Returns
        -------
        MergeResult
            Merged result; cells keep the order of the input samples

        Raises
        ------
        IdentifierCollisionError
            If prefixed identifiers are not unique
        """
        import anndata as ad

        result = MergeResult()
        if not samples:
            raise ValueError("No samples to merge")

        parts = []
        for sample_id, adata in samples.items():
            part = adata.copy()
            barcodes = (
                part.obs["barcode"].astype(str)
                if "barcode" in part.obs.columns
                else pd.Series(part.obs_names.astype(str), index=part.obs_names)
            )
            part.obs["barcode"] = barcodes.to_numpy()
            part.obs["sample_id"] = sample_id
            part.obs_names = prefix_cell_ids(sample_id, pd.Index(barcodes))
            part.uns = {}
            parts.append(part)
            result.cells_per_sample[sample_id] = int(part.n_obs)
            result.sample_ids.append(sample_id)

        ids = pd.Index(np.concatenate([p.obs_names.to_numpy() for p in parts]))
        if not ids.is_unique:
            dups = ids[ids.duplicated()].unique().tolist()
            raise IdentifierCollisionError(
                f"{len(dups)} duplicate cell identifiers after merge, e.g. {dups[:5]}"
            )

        merged = ad.concat(parts, join="outer", fill_value=0, merge="first")
        merged.obs["sample_id"] = pd.Categorical(
            merged.obs["sample_id"].astype(str), categories=result.sample_ids
        )
        merged.uns["sample_ids"] = list(result.sample_ids)

        result.adata = merged
        result.n_cells = int(merged.n_obs)
        result.n_genes = int(merged.n_vars)

        self.logger.info(
            "Merged %d samples: %d cells x %d genes",
            result.n_samples,
            result.n_cells,
            result.n_genes,
        )
        return result

    def split(self, merged: Any, drop_absent_genes: bool = True) -> Dict[str, Any]:
        """Split a merged dataset back into samples.

        Parameters
        ----------
        merged : AnnData
            Merged dataset with obs['sample_id']
        drop_absent_genes : bool
            Drop genes with zero counts in a sample from that sample's split

        Returns
        -------
        Dict[str, AnnData]
            Map of sample_id to a copy of its cells, in stable sample order
        """
        sample_col = merged.obs["sample_id"]
        if hasattr(sample_col, "cat"):
            order = [str(s) for s in sample_col.cat.categories]
        else:
            order = list(dict.fromkeys(sample_col.astype(str)))

        samples: Dict[str, Any] = {}
        values = sample_col.astype(str).to_numpy()
        for sample_id in order:
            mask = values == sample_id
            if not mask.any():
                continue
            part = merged[mask].copy()
            if drop_absent_genes:
                detected = np.asarray((part.X != 0).sum(axis=0)).ravel() > 0
                part = part[:, detected].copy()
            part.uns["sample_id"] = sample_id
            samples[sample_id] = part
        return samples
