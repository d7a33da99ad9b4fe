"""Cell-type predictor interface and the CellTypist implementation.

A predictor exposes three operations:
- catalog(): names of the references it can serve
- fetch(name): local directory holding the reference's level models
- predict(table, model_path): level_1/level_2/level_3 labels per cell
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ...errors import ModelUnavailableError
from .cache import ModelCache
from .config import N_LEVELS, ReferenceSpec

LEVEL_COLUMNS = [f"level_{i}" for i in range(1, N_LEVELS + 1)]


class CellTypePredictor(ABC):
    """Interface to a pre-trained hierarchical cell-type classifier."""

    @abstractmethod
    def catalog(self) -> List[str]:
        """Names of the available references."""

    @abstractmethod
    def fetch(self, name: str) -> Path:
        """Make a reference available locally and return its directory.

        Raises
        ------
        ModelUnavailableError
            Unknown name or failed download
        """

    @abstractmethod
    def predict(self, table: Any, model_path: Path) -> pd.DataFrame:
        """Predict labels for every cell of a log-normalized table.

        Parameters
        ----------
        table : AnnData
            Cells x genes, library-size normalized and log1p transformed
        model_path : Path
            Directory returned by fetch

        Returns
        -------
        pd.DataFrame
            Columns level_1, level_2, level_3 indexed by cell id
        """


class CellTypistPredictor(CellTypePredictor):
    """CellTypist-backed predictor with one model per level.

    Parameters
    ----------
    references : Dict[str, ReferenceSpec]
        Available references keyed by name
    cache : ModelCache
        Local model cache
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> predictor = CellTypistPredictor(config.references, ModelCache(config.cache_path))
    >>> path = predictor.fetch("bonemarrowref")
    >>> labels = predictor.predict(table, path)
    """

    def __init__(
        self,
        references: Dict[str, ReferenceSpec],
        cache: ModelCache,
        logger: Optional[logging.Logger] = None,
    ):
        self.references = dict(references)
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    def catalog(self) -> List[str]:
        return sorted(self.references)

    def fetch(self, name: str) -> Path:
        if name not in self.references:
            raise ModelUnavailableError(
                f"Unknown reference '{name}' (available: {self.catalog() or 'none configured'})"
            )
        if self.cache.is_cached(name):
            self.logger.info("Using cached reference '%s'", name)
            return self.cache.path(name)

        spec = self.references[name]
        try:
            from celltypist import models

            sources = []
            for model_file in spec.models:
                self.logger.info("Downloading CellTypist model %s", model_file)
                models.download_models(model=[model_file], force_update=False)
                sources.append(Path(models.get_model_path(model_file)))
            return self.cache.store(name, sources, {"models": list(spec.models)})
        except Exception as e:
            raise ModelUnavailableError(f"Could not fetch reference '{name}': {e}") from e

    def predict(self, table: Any, model_path: Path) -> pd.DataFrame:
        try:
            import celltypist
            from celltypist import models

            labels = pd.DataFrame(index=table.obs_names.copy())
            for level, column in enumerate(LEVEL_COLUMNS, start=1):
                model = models.Model.load(str(Path(model_path) / f"level_{level}.pkl"))
                predictions = celltypist.annotate(table, model=model, majority_voting=False)
                labels[column] = (
                    predictions.predicted_labels["predicted_labels"]
                    .reindex(table.obs_names)
                    .to_numpy()
                )
        except Exception as e:
            raise ModelUnavailableError(
                f"Prediction with models in {model_path} failed: {e}"
            ) from e
        return labels
