"""Count matrix loader (MatrixLoader).

Handles loading per-sample 10x-style count matrices and the sample sheet
registry, with validation and the minimum cells/genes filters.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from ...errors import MissingDataError
from .config import LoaderConfig

PathLike = Union[str, Path]

# (matrix, features, barcodes) for the current and the legacy layout
MATRIX_LAYOUTS = {
    "v3": ("matrix.mtx.gz", "features.tsv.gz", "barcodes.tsv.gz"),
    "legacy": ("matrix.mtx", "genes.tsv", "barcodes.tsv"),
}

# Subdirectories searched when a run or outs directory is given
MATRIX_SUBDIRS = [
    "",
    "filtered_feature_bc_matrix",
    "outs/filtered_feature_bc_matrix",
]


@dataclass
class LoadResult:
    """Result from loading a single sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier
    adata : AnnData
        Cells x genes raw counts after the minimum cells/genes filters
    matrix_dir : Path
        Directory the matrix was read from
    layout : str
        'v3' or 'legacy'
    n_cells_raw : int
        Cells before filtering
    n_genes_raw : int
        Genes before filtering
    """

    sample_id: str
    adata: Any = None  # AnnData
    matrix_dir: Optional[Path] = None
    layout: str = "v3"
    n_cells_raw: int = 0
    n_genes_raw: int = 0

    @property
    def n_cells(self) -> int:
        return 0 if self.adata is None else int(self.adata.n_obs)

    @property
    def n_genes(self) -> int:
        return 0 if self.adata is None else int(self.adata.n_vars)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "sample_id": self.sample_id,
            "matrix_dir": str(self.matrix_dir),
            "layout": self.layout,
            "n_cells_raw": self.n_cells_raw,
            "n_genes_raw": self.n_genes_raw,
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
        }


def find_matrix_dir(path: PathLike) -> Optional[Path]:
    """Locate the matrix directory below a sample path.

    Returns
    -------
    Optional[Path]
        Directory holding a complete matrix layout, or None
    """
    base = Path(path)
    for sub in MATRIX_SUBDIRS:
        candidate = base / sub if sub else base
        if detect_layout(candidate) is not None:
            return candidate
    return None


def detect_layout(path: Path) -> Optional[str]:
    """Return the matrix layout present in a directory, if complete."""
    if not path.is_dir():
        return None
    for layout, names in MATRIX_LAYOUTS.items():
        if all((path / name).is_file() for name in names):
            return layout
    return None


class MatrixLoader:
    """Count matrix loader with validation.

    Parameters
    ----------
    config : LoaderConfig
        Loader configuration

    Example
    -------
    >>> from scintegrate.core.preprocessing import MatrixLoader, LoaderConfig
    >>> loader = MatrixLoader(LoaderConfig(min_genes=200))
    >>> result = loader.load_sample("runs/S1/outs/filtered_feature_bc_matrix", "S1")
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LoaderConfig()
        self.logger = logger or logging.getLogger(__name__)

    def load_registry(self, path: PathLike) -> pd.DataFrame:
        """Load the sample sheet.

        Parameters
        ----------
        path : PathLike
            CSV with one row per sample

        Returns
        -------
        pd.DataFrame
            Registry with string sample identifiers

        Raises
        ------
        MissingDataError
            If the file or a required column is missing
        ValueError
            If sample identifiers are duplicated
        """
        path = Path(path)
        if not path.is_file():
            raise MissingDataError(f"Sample sheet not found: {path}")

        df = pd.read_csv(path)
        sample_col = self.config.sample_id_col
        matrix_col = self.config.matrix_dir_col

        missing = [c for c in (sample_col, matrix_col) if c not in df.columns]
        if missing:
            raise MissingDataError(f"Required columns missing from {path}: {missing}")

        df[sample_col] = df[sample_col].astype(str)
        dups = df[sample_col][df[sample_col].duplicated()].tolist()
        if dups:
            raise ValueError(f"Duplicate sample identifiers in {path}: {dups}")

        # Relative matrix paths are resolved against the sheet location
        df[matrix_col] = [
            str(p if Path(p).is_absolute() else (path.parent / p))
            for p in df[matrix_col].astype(str)
        ]
        return df

    def read_matrix(self, path: PathLike, sample_id: str) -> LoadResult:
        """Read a raw matrix without filtering.

        Parameters
        ----------
        path : PathLike
            Matrix, outs, or run directory
        sample_id : str
            Sample identifier

        Returns
        -------
        LoadResult
            Result holding the unfiltered counts

        Raises
        ------
        MissingDataError
            If the expected files are absent or unreadable
        """
        import scanpy as sc

        matrix_dir = find_matrix_dir(path)
        if matrix_dir is None:
            expected = ", ".join(MATRIX_LAYOUTS["v3"])
            raise MissingDataError(
                f"No count matrix found under {path} (expected {expected})",
                sample_id=sample_id,
            )

        layout = detect_layout(matrix_dir)
        try:
            adata = sc.read_10x_mtx(
                matrix_dir,
                var_names=self.config.var_names,
                make_unique=True,
                gex_only=self.config.gex_only,
            )
        except Exception as e:
            raise MissingDataError(
                f"Could not read count matrix in {matrix_dir}: {e}",
                sample_id=sample_id,
            ) from e

        adata.obs["barcode"] = adata.obs_names.astype(str)
        adata.obs["sample_id"] = sample_id
        adata.uns["sample_id"] = sample_id

        return LoadResult(
            sample_id=sample_id,
            adata=adata,
            matrix_dir=matrix_dir,
            layout=layout or "v3",
            n_cells_raw=int(adata.n_obs),
            n_genes_raw=int(adata.n_vars),
        )

    def load_sample(self, path: PathLike, sample_id: str) -> LoadResult:
        """Load a sample and apply the minimum cells/genes filters.

        Parameters
        ----------
        path : PathLike
            Matrix, outs, or run directory
        sample_id : str
            Sample identifier

        Returns
        -------
        LoadResult
            Loading result with filtered counts
        """
        import scanpy as sc

        result = self.read_matrix(path, sample_id)
        adata = result.adata

        sc.pp.filter_cells(adata, min_genes=self.config.min_genes)
        sc.pp.filter_genes(adata, min_cells=self.config.min_cells)

        self.logger.info(
            "Loaded %s: %d x %d raw -> %d cells x %d genes "
            "(min_genes=%d, min_cells=%d)",
            sample_id,
            result.n_cells_raw,
            result.n_genes_raw,
            adata.n_obs,
            adata.n_vars,
            self.config.min_genes,
            self.config.min_cells,
        )
        return result

    def load_samples(self, registry: pd.DataFrame) -> Dict[str, Any]:
        """Load every sample in a registry.

        Parameters
        ----------
        registry : pd.DataFrame
            Sample sheet from load_registry

        Returns
        -------
        Dict[str, AnnData]
            Map of sample_id to filtered counts, in registry order
        """
        samples: Dict[str, Any] = {}
        for _, row in registry.iterrows():
            sample_id = str(row[self.config.sample_id_col])
            result = self.load_sample(row[self.config.matrix_dir_col], sample_id)
            samples[sample_id] = result.adata
        return samples

    def sample_ids(self, registry: pd.DataFrame) -> List[str]:
        """Sample identifiers in registry order."""
        return registry[self.config.sample_id_col].astype(str).tolist()
