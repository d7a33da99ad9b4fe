"""Input/output helpers: run manifests, event logs and result files."""

from .manifest import append_jsonl, timestamped_path, to_builtin, write_manifest
from .outputs import OutputPaths, write_outputs

__all__ = [
    "append_jsonl",
    "timestamped_path",
    "to_builtin",
    "write_manifest",
    "OutputPaths",
    "write_outputs",
]
