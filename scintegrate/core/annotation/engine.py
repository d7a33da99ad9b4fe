"""Cell-type annotation engine (AnnotationEngine).

Builds the prediction table from the raw counts of the quality-filtered
cells (never the integrated values), runs the predictor for the selected
reference and writes predicted_celltype_l1..l3.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd
import yaml

from ...errors import ModelUnavailableError
from .config import AnnotationConfig, N_LEVELS
from .predictor import LEVEL_COLUMNS, CellTypePredictor

LABEL_COLUMNS = [f"predicted_celltype_l{i}" for i in range(1, N_LEVELS + 1)]


def load_hierarchy(path: Union[str, Path]) -> Dict[str, Dict[str, str]]:
    """Load a label hierarchy.

    The YAML maps each level to {child_label: parent_label}::

        level_2:
          CD4 T: T cell
        level_3:
          CD4 naive: CD4 T

    Returns
    -------
    Dict[str, Dict[str, str]]
        Mapping keyed by 'level_2' and 'level_3'
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return {
        level: {str(k): str(v) for k, v in (data.get(level) or {}).items()}
        for level in LEVEL_COLUMNS[1:]
    }


def hierarchy_violations(
    labels: pd.DataFrame, hierarchy: Dict[str, Dict[str, str]]
) -> pd.Index:
    """Cells whose label is not a child of the label one level up.

    Labels absent from the hierarchy are not counted.

    Parameters
    ----------
    labels : pd.DataFrame
        Columns level_1..level_3 (or predicted_celltype_l1..l3)
    hierarchy : Dict[str, Dict[str, str]]
        Child to parent mapping per level (see load_hierarchy)

    Returns
    -------
    pd.Index
        Offending cell ids
    """
    if set(LABEL_COLUMNS).issubset(labels.columns):
        labels = labels[LABEL_COLUMNS].set_axis(LEVEL_COLUMNS, axis=1)

    bad = np.zeros(len(labels), dtype=bool)
    for parent_col, child_col in zip(LEVEL_COLUMNS[:-1], LEVEL_COLUMNS[1:]):
        mapping = hierarchy.get(child_col, {})
        if not mapping:
            continue
        expected = labels[child_col].astype(str).map(mapping)
        known = expected.notna().to_numpy()
        bad |= known & (expected.to_numpy() != labels[parent_col].astype(str).to_numpy())
    return labels.index[bad]


@dataclass
class AnnotationResult:
    """Result from cell-type annotation.

    Attributes
    ----------
    model_name : str
        Reference used
    labels : pd.DataFrame
        predicted_celltype_l1..l3 per cell
    n_violations : int, optional
        Hierarchy violations (None if no hierarchy is configured)
    """

    model_name: str
    labels: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_violations: Optional[int] = None

    def apply(self, adata: Any) -> Any:
        """Return a copy of adata with the label columns added by cell id."""
        out = adata.copy()
        aligned = self.labels.reindex(out.obs_names.astype(str))
        for col in LABEL_COLUMNS:
            out.obs[col] = pd.Categorical(aligned[col].to_numpy())
        return out

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "model_name": self.model_name,
            "n_cells": int(len(self.labels)),
            "n_labels": {
                col: int(self.labels[col].nunique()) for col in LABEL_COLUMNS
                if col in self.labels.columns
            },
            "hierarchy_violations": self.n_violations,
        }


class AnnotationEngine:
    """Hierarchical cell-type annotation.

    Parameters
    ----------
    predictor : CellTypePredictor
        Predictor implementation
    config : AnnotationConfig, optional
        Annotation configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> engine = AnnotationEngine(CellTypistPredictor(refs, cache))
    >>> result = engine.annotate(merged, "bonemarrowref")
    >>> labelled = result.apply(integrated)
    """

    def __init__(
        self,
        predictor: CellTypePredictor,
        config: Optional[AnnotationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.predictor = predictor
        self.config = config or AnnotationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_table(self, merged: Any) -> Any:
        """Library-size normalized, log1p expression table from raw counts."""
        import anndata as ad
        import scanpy as sc

        table = ad.AnnData(
            X=merged.X.copy(),
            obs=pd.DataFrame(index=merged.obs_names.astype(str)),
            var=pd.DataFrame(index=merged.var_names.astype(str)),
        )
        sc.pp.normalize_total(table, target_sum=self.config.target_sum)
        sc.pp.log1p(table)
        return table

    def annotate(self, merged: Any, model_name: Optional[str] = None) -> AnnotationResult:
        """Predict three-level labels for every merged cell.

        Parameters
        ----------
        merged : AnnData
            Quality-filtered merged raw counts
        model_name : str, optional
            Reference name (default: config.model_name)

        Returns
        -------
        AnnotationResult
            Labels for every cell

        Raises
        ------
        ModelUnavailableError
            Unknown reference, failed fetch or prediction, or missing labels
        """
        model_name = model_name or self.config.model_name
        if model_name not in self.predictor.catalog():
            raise ModelUnavailableError(
                f"Unknown reference '{model_name}' "
                f"(available: {self.predictor.catalog() or 'none configured'})"
            )

        model_path = self.predictor.fetch(model_name)
        table = self.build_table(merged)
        predicted = self.predictor.predict(table, model_path)

        missing_cols = [c for c in LEVEL_COLUMNS if c not in predicted.columns]
        if missing_cols:
            raise ModelUnavailableError(
                f"Predictor for '{model_name}' returned no {missing_cols} labels"
            )
        predicted = predicted.reindex(table.obs_names)
        n_missing = int(predicted[LEVEL_COLUMNS].isna().any(axis=1).sum())
        if n_missing:
            raise ModelUnavailableError(
                f"Predictor for '{model_name}' left {n_missing} cells without a label"
            )

        labels = predicted[LEVEL_COLUMNS].astype(str).set_axis(LABEL_COLUMNS, axis=1)
        result = AnnotationResult(model_name=model_name, labels=labels)

        if self.config.hierarchy_path:
            hierarchy = load_hierarchy(self.config.hierarchy_path)
            result.n_violations = int(len(hierarchy_violations(labels, hierarchy)))
            if result.n_violations:
                self.logger.warning(
                    "%d cells have labels inconsistent with the hierarchy",
                    result.n_violations,
                )

        self.logger.info(
            "Annotated %d cells with '%s' (%s)",
            len(labels),
            model_name,
            ", ".join(f"{c}: {labels[c].nunique()} types" for c in LABEL_COLUMNS),
        )
        return result
