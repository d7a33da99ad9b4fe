"""Run manifest and structured event logs (YAML, JSON lines)."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Union

import numpy as np
import yaml

PathLike = Union[str, Path]


def timestamped_path(path: PathLike) -> Path:
    """Insert a timestamp before the suffix.

    Example: manifest.yaml -> manifest_20251209_080530.yaml
    """
    path = Path(path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return path.parent / f"{path.stem}_{timestamp}{path.suffix or '.log'}"


def to_builtin(value: Any) -> Any:
    """Recursively convert numpy/pandas/Path values to YAML-safe builtins."""
    if isinstance(value, dict):
        return {str(k): to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_builtin(v) for v in value]
    if isinstance(value, np.ndarray):
        return [to_builtin(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def _prepare(path: PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def append_jsonl(path: PathLike, record: dict[str, Any]) -> None:
    """Append one JSON line to path."""
    path = _prepare(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(to_builtin(record), default=str))
        handle.write("\n")


def write_manifest(path: PathLike, record: dict[str, Any]) -> Path:
    """Write the run manifest as a YAML document.

    Returns
    -------
    Path
        The manifest path
    """
    path = _prepare(path)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(to_builtin(record), handle, sort_keys=False)
    return path
