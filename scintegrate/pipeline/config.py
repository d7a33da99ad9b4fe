"""Master configuration for an integration run.

Every section is optional in YAML; missing sections and keys take the
defaults of the corresponding config dataclass::

    loader: {min_cells: 3, min_genes: 200}
    doublets: {random_seed: 1234}
    qc: {max_mito_fraction: 0.25}
    normalization: {n_hvg: 3000}
    features: {n_features: 3000}
    anchors: {k_anchor: 5, nn_method: auto}
    integration: {k_weight: 100}
    embedding: {n_pcs: 30}
    annotation:
      model_name: bonemarrowref
      references:
        bonemarrowref: [level1.pkl, level2.pkl, level3.pkl]
    n_jobs: 4
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..core.annotation import AnnotationConfig
from ..core.embedding import EmbeddingConfig
from ..core.integration import AnchorConfig, IntegrationConfig
from ..core.preprocessing import (
    DoubletConfig,
    FeatureSelectionConfig,
    LoaderConfig,
    NormalizationConfig,
    QCConfig,
)

SECTIONS = {
    "loader": LoaderConfig,
    "doublets": DoubletConfig,
    "qc": QCConfig,
    "normalization": NormalizationConfig,
    "features": FeatureSelectionConfig,
    "anchors": AnchorConfig,
    "integration": IntegrationConfig,
    "embedding": EmbeddingConfig,
}


@dataclass
class PipelineConfig:
    """Configuration of every pipeline stage.

    Attributes
    ----------
    loader, doublets, qc, normalization, features : dataclass
        Preprocessing stage configurations
    anchors, integration : dataclass
        Integration stage configurations
    embedding : EmbeddingConfig
        PCA/UMAP configuration
    annotation : AnnotationConfig
        Cell-type prediction configuration
    n_jobs : int
        Parallel workers for per-sample and per-pair tasks
    log_dir : str, optional
        Log directory (default: <out>/logs)
    log_level : str
        Logging level for the run log
    """

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    doublets: DoubletConfig = field(default_factory=DoubletConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    anchors: AnchorConfig = field(default_factory=AnchorConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    n_jobs: int = 1
    log_dir: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build from a (possibly partial) nested dictionary.

        Raises
        ------
        ValueError
            On unknown sections or keys
        """
        data = dict(data or {})
        known = set(SECTIONS) | {"annotation", "n_jobs", "log_dir", "log_level"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration sections: {unknown}")

        kwargs: Dict[str, Any] = {}
        for name, config_cls in SECTIONS.items():
            try:
                kwargs[name] = config_cls(**(data.get(name) or {}))
            except TypeError as e:
                raise ValueError(f"Invalid '{name}' configuration: {e}") from e
        if "mito_pattern" not in (data.get("normalization") or {}):
            kwargs["normalization"].mito_pattern = kwargs["qc"].mito_pattern
        try:
            kwargs["annotation"] = AnnotationConfig.from_dict(data.get("annotation") or {})
        except TypeError as e:
            raise ValueError(f"Invalid 'annotation' configuration: {e}") from e

        for key in ("n_jobs", "log_dir", "log_level"):
            if key in data:
                kwargs[key] = data[key]
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the file doesn't exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "PipelineConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a nested dictionary (round-trips through from_dict)."""
        out: Dict[str, Any] = {name: asdict(getattr(self, name)) for name in SECTIONS}
        out["anchors"]["score_quantiles"] = list(self.anchors.score_quantiles)
        out["annotation"] = self.annotation.to_dict()
        out["n_jobs"] = self.n_jobs
        out["log_dir"] = self.log_dir
        out["log_level"] = self.log_level
        return out
