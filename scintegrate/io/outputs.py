"""Result files of a pipeline run."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import pandas as pd

PathLike = Union[str, Path]


@dataclass
class OutputPaths:
    """Locations of the files written for one run."""

    out_dir: Path
    h5ad: Path
    anchors: Path
    manifest: Path
    events: Path

    @classmethod
    def for_dir(cls, out_dir: PathLike, prefix: str = "integrated") -> "OutputPaths":
        out_dir = Path(out_dir)
        return cls(
            out_dir=out_dir,
            h5ad=out_dir / f"{prefix}.h5ad",
            anchors=out_dir / "anchors.csv",
            manifest=out_dir / "manifest.yaml",
            events=out_dir / "logs" / "events.jsonl",
        )


def _h5ad_safe_obs(obs: pd.DataFrame) -> pd.DataFrame:
    """Object columns become categoricals of strings for h5ad writing."""
    obs = obs.copy()
    for col in obs.columns:
        if obs[col].dtype == object:
            obs[col] = pd.Categorical(obs[col].astype(str))
    return obs


def write_outputs(paths: OutputPaths, adata: Any, anchors: pd.DataFrame) -> OutputPaths:
    """Write the integrated AnnData and the anchor table.

    Parameters
    ----------
    paths : OutputPaths
        Destination paths
    adata : AnnData
        Integrated, embedded and labelled dataset
    anchors : pd.DataFrame
        Anchor table

    Returns
    -------
    OutputPaths
        The paths written
    """
    paths.out_dir.mkdir(parents=True, exist_ok=True)
    adata = adata.copy()
    adata.obs = _h5ad_safe_obs(adata.obs)
    adata.write_h5ad(paths.h5ad)
    anchors.to_csv(paths.anchors, index=False)
    return paths
