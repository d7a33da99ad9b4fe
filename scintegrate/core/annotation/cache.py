"""Local cache of fetched cell-type models, keyed by reference name.

Layout::

    cache_dir/
    └── {name}/
        ├── level_1.pkl
        ├── level_2.pkl
        ├── level_3.pkl
        └── manifest.json
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import N_LEVELS

MANIFEST = "manifest.json"


class ModelCache:
    """Directory cache for reference models.

    Parameters
    ----------
    cache_dir : Path
        Root cache directory (created on first store)
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        logger: Optional[logging.Logger] = None,
    ):
        self.cache_dir = Path(cache_dir).expanduser()
        self.logger = logger or logging.getLogger(__name__)

    def path(self, name: str) -> Path:
        return self.cache_dir / name

    def level_path(self, name: str, level: int) -> Path:
        return self.path(name) / f"level_{level}.pkl"

    def is_cached(self, name: str) -> bool:
        """True if every level model and the manifest are present."""
        paths = [self.level_path(name, i) for i in range(1, N_LEVELS + 1)]
        return (self.path(name) / MANIFEST).is_file() and all(p.is_file() for p in paths)

    def store(
        self,
        name: str,
        sources: Sequence[Path],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Copy level models into the cache and write the manifest.

        Returns
        -------
        Path
            Cache directory of the reference
        """
        target = self.path(name)
        target.mkdir(parents=True, exist_ok=True)
        for level, src in enumerate(sources, start=1):
            shutil.copy2(src, self.level_path(name, level))

        manifest = {
            "name": name,
            "sources": [str(s) for s in sources],
            "fetched_at": datetime.now().isoformat(),
            **(metadata or {}),
        }
        with open(target / MANIFEST, "w") as f:
            json.dump(manifest, f, indent=2)
        self.logger.info("Cached reference '%s' in %s", name, target)
        return target

    def manifest(self, name: str) -> Dict[str, Any]:
        with open(self.path(name) / MANIFEST) as f:
            return json.load(f)

    def cached_names(self) -> List[str]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(p.name for p in self.cache_dir.iterdir() if p.is_dir() and self.is_cached(p.name))
