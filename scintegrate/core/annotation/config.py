"""Configuration classes for cell-type annotation."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

N_LEVELS = 3


@dataclass
class ReferenceSpec:
    """A named three-level cell-type reference.

    Attributes
    ----------
    name : str
        Reference name used to select it (e.g. 'bonemarrowref')
    models : List[str]
        One CellTypist model file per level, coarsest first
    description : str
        Free-text description
    """

    name: str
    models: List[str]
    description: str = ""

    def __post_init__(self):
        self.models = [str(m) for m in self.models]
        if len(self.models) != N_LEVELS:
            raise ValueError(
                f"Reference '{self.name}' must list {N_LEVELS} models "
                f"(one per level), got {len(self.models)}"
            )

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "ReferenceSpec":
        """Build from a config entry (a list of models or a mapping)."""
        if isinstance(data, dict):
            return cls(
                name=name,
                models=list(data.get("models", [])),
                description=str(data.get("description", "")),
            )
        return cls(name=name, models=list(data))

    def to_dict(self) -> Dict[str, Any]:
        return {"models": list(self.models), "description": self.description}


@dataclass
class AnnotationConfig:
    """Configuration for cell-type prediction.

    Attributes
    ----------
    model_name : str
        Reference used when none is given explicitly
    cache_dir : str
        Local model cache directory
    references : Dict[str, ReferenceSpec]
        Available references keyed by name
    hierarchy_path : str, optional
        YAML mapping child labels to parent labels, for consistency logging
    target_sum : float
        Library size for the prediction table
    """

    model_name: str = "bonemarrowref"
    cache_dir: str = "~/.cache/scintegrate/models"
    references: Dict[str, ReferenceSpec] = field(default_factory=dict)
    hierarchy_path: Optional[str] = None
    target_sum: float = 1e4

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnnotationConfig":
        data = dict(data or {})
        refs = data.pop("references", None) or {}
        config = cls(**data)
        config.references = {
            name: spec if isinstance(spec, ReferenceSpec) else ReferenceSpec.from_dict(name, spec)
            for name, spec in refs.items()
        }
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "cache_dir": self.cache_dir,
            "references": {n: r.to_dict() for n, r in self.references.items()},
            "hierarchy_path": self.hierarchy_path,
            "target_sum": self.target_sum,
        }

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser()
