"""Synthetic count data generators for testing.

Provides negative binomial count matrices with per-type marker programs,
per-sample batch effects, injected doublets and low-quality cells, all
with ground truth in obs, plus a 10x-style matrix writer and an offline
cell-type predictor.
"""

import gzip
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import io as sio
from scipy import sparse

from scintegrate.core.annotation import CellTypePredictor

N_MITO = 10
GENE_SEED = 20240601


def gene_names(n_types: int = 4, n_markers: int = 30, n_background: int = 400) -> List[str]:
    """Marker genes (M{type}_{i}), background genes (BG_{i}), then MT- genes."""
    names = [f"M{t}_{i:03d}" for t in range(n_types) for i in range(n_markers)]
    names += [f"BG_{i:03d}" for i in range(n_background)]
    names += [f"MT-{i:02d}" for i in range(N_MITO)]
    return names


def _nb(rng: np.random.Generator, mu: np.ndarray, theta: float) -> np.ndarray:
    """Gamma-Poisson draws with mean mu and dispersion theta."""
    return rng.poisson(rng.gamma(theta, mu / theta)).astype(np.int64)


def create_counts(
    sample_id: str,
    n_cells: int = 300,
    n_types: int = 4,
    n_markers: int = 30,
    n_background: int = 400,
    marker_fold: float = 6.0,
    base_mean: float = 1.0,
    base_sd: float = 0.7,
    mito_mean: float = 0.5,
    depth: float = 1.0,
    gene_batch_sd: float = 0.0,
    marker_types: Optional[List[int]] = None,
    doublet_rate: float = 0.0,
    n_high_mito: int = 0,
    theta: float = 10.0,
    seed: int = 0,
) -> "AnnData":
    """Create a synthetic raw count sample.

    Parameters
    ----------
    sample_id : str
        Sample identifier (stored in uns)
    n_cells : int
        Number of cells before doublets are injected
    n_types : int
        Number of cell types (each expresses its own marker block)
    n_markers : int
        Marker genes per type
    n_background : int
        Genes expressed at their baseline by every cell
    marker_fold : float
        Fold change of a marker in its own type over its baseline
    base_mean : float
        Median baseline mean of non-mitochondrial genes
    base_sd : float
        Log-scale SD of gene baselines
    mito_mean : float
        Mean count of each MT- gene
    depth : float
        Sample-wide sequencing depth factor
    gene_batch_sd : float
        SD of a per-gene log-scale batch multiplier
    marker_types : List[int], optional
        Marker blocks used by this sample's types (default: range(n_types))
    doublet_rate : float
        Fraction of extra cells built by summing two cells of different types
    n_high_mito : int
        Cells whose expected mitochondrial fraction is 0.5, twice the
        default QC threshold at any gene count
    theta : float
        Negative binomial dispersion
    seed : int
        Random seed

    Returns
    -------
    AnnData
        Cells x genes integer counts; obs holds cell_type, is_doublet and
        high_mito ground truth
    """
    import anndata as ad

    rng = np.random.default_rng(seed)
    genes = gene_names(n_types, n_markers, n_background)
    n_genes = len(genes)
    blocks = list(range(n_types)) if marker_types is None else list(marker_types)
    n_kinds = len(blocks)

    cell_type = np.arange(n_cells) % n_kinds
    rng.shuffle(cell_type)

    # Gene baselines are shared by every sample
    base = base_mean * np.random.default_rng(GENE_SEED).lognormal(0.0, base_sd, size=n_genes)
    means = np.tile(base, (n_kinds, 1))
    for kind, block in enumerate(blocks):
        means[kind, block * n_markers:(block + 1) * n_markers] *= marker_fold
    means[:, -N_MITO:] = mito_mean
    if gene_batch_sd > 0:
        means *= rng.lognormal(0.0, gene_batch_sd, size=n_genes)[None, :]

    size = rng.lognormal(0.0, 0.2, size=n_cells) * depth
    mu = means[cell_type] * size[:, None]
    high_mito = np.zeros(n_cells, dtype=bool)
    if n_high_mito:
        inflated = rng.choice(n_cells, size=n_high_mito, replace=False)
        high_mito[inflated] = True
        # Half of each damaged cell's expected library moves to the MT- genes
        nuclear = mu[inflated, :-N_MITO].sum(axis=1)
        mu[inflated, :-N_MITO] *= 0.5
        mu[inflated, -N_MITO:] = (0.5 * nuclear / N_MITO)[:, None]
    counts = _nb(rng, mu, theta)

    labels = [f"type_{blocks[k]}" for k in cell_type]
    is_doublet = np.zeros(n_cells, dtype=bool)

    n_doublets = int(round(doublet_rate * n_cells))
    if n_doublets:
        clean = np.where(~high_mito)[0]
        extra, extra_labels = [], []
        for _ in range(n_doublets):
            a = rng.choice(clean)
            b = rng.choice(clean[cell_type[clean] != cell_type[a]])
            extra.append(counts[a] + counts[b])
            extra_labels.append(f"{labels[a]}+{labels[b]}")
        counts = np.vstack([counts, np.asarray(extra)])
        labels += extra_labels
        is_doublet = np.concatenate([is_doublet, np.ones(n_doublets, dtype=bool)])
        high_mito = np.concatenate([high_mito, np.zeros(n_doublets, dtype=bool)])

    order = rng.permutation(len(labels))
    barcodes = [f"{''.join(rng.choice(list('ACGT'), 14))}-{i}" for i in range(len(labels))]
    obs = pd.DataFrame(
        {
            "cell_type": np.asarray(labels, dtype=object)[order],
            "is_doublet": is_doublet[order],
            "high_mito": high_mito[order],
        },
        index=pd.Index(barcodes),
    )
    adata = ad.AnnData(
        X=sparse.csr_matrix(counts[order].astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=pd.Index(genes)),
    )
    adata.uns["sample_id"] = sample_id
    return adata


def create_samples(
    n_samples: int = 3,
    n_cells: int = 300,
    seed: int = 0,
    **kwargs,
) -> Dict[str, "AnnData"]:
    """Create several samples sharing cell types, each with its own batch effect."""
    samples = {}
    for i in range(n_samples):
        sample_id = f"S{i + 1}"
        samples[sample_id] = create_counts(
            sample_id,
            n_cells=n_cells + 20 * i,
            depth=1.0 + 0.4 * i,
            gene_batch_sd=0.2,
            seed=seed + 101 * i,
            **kwargs,
        )
    return samples


def write_10x(adata: "AnnData", path: Path, legacy: bool = False) -> Path:
    """Write counts as a 10x matrix directory (features x barcodes)."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    matrix = sparse.coo_matrix(sparse.csr_matrix(adata.X).T.astype(np.int64))
    genes = [str(g) for g in adata.var_names]
    barcodes = [str(b) for b in adata.obs_names]

    if legacy:
        sio.mmwrite(str(path / "matrix.mtx"), matrix, field="integer")
        pd.DataFrame({"id": [f"ENSG{i:08d}" for i in range(len(genes))], "name": genes}).to_csv(
            path / "genes.tsv", sep="\t", header=False, index=False
        )
        pd.Series(barcodes).to_csv(path / "barcodes.tsv", sep="\t", header=False, index=False)
        return path

    sio.mmwrite(str(path / "matrix.mtx"), matrix, field="integer")
    with open(path / "matrix.mtx", "rb") as src, gzip.open(path / "matrix.mtx.gz", "wb") as dst:
        dst.write(src.read())
    (path / "matrix.mtx").unlink()

    features = pd.DataFrame(
        {
            "id": [f"ENSG{i:08d}" for i in range(len(genes))],
            "name": genes,
            "type": "Gene Expression",
        }
    )
    with gzip.open(path / "features.tsv.gz", "wt") as f:
        features.to_csv(f, sep="\t", header=False, index=False)
    with gzip.open(path / "barcodes.tsv.gz", "wt") as f:
        f.write("\n".join(barcodes) + "\n")
    return path


def write_sample_sheet(samples: Dict[str, "AnnData"], root: Path) -> Path:
    """Write each sample as a 10x directory and a sample sheet listing them."""
    root = Path(root)
    rows = []
    for sample_id, adata in samples.items():
        write_10x(adata, root / sample_id / "outs" / "filtered_feature_bc_matrix")
        rows.append({"sample_id": sample_id, "matrix_dir": sample_id})
    sheet = root / "samples.csv"
    pd.DataFrame(rows).to_csv(sheet, index=False)
    return sheet


class FakePredictor(CellTypePredictor):
    """Offline predictor labelling cells by their strongest marker block.

    level_1 is 'type_{t}', level_2 'type_{t}/a' and level_3 'type_{t}/a/i',
    so the labels are consistent with hierarchy().
    """

    def __init__(self, root: Path, names: Optional[List[str]] = None):
        self.root = Path(root)
        self.names = list(names or ["toyref"])
        self.fetched: List[str] = []
        self.tables: List["AnnData"] = []

    def catalog(self) -> List[str]:
        return list(self.names)

    def fetch(self, name: str) -> Path:
        self.fetched.append(name)
        path = self.root / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def predict(self, table, model_path: Path) -> pd.DataFrame:
        self.tables.append(table)
        X = table.X.toarray() if sparse.issparse(table.X) else np.asarray(table.X)
        names = pd.Index(table.var_names.astype(str))
        types = sorted({g.split("_")[0] for g in names if g.startswith("M") and "_" in g})
        scores = np.column_stack(
            [X[:, np.asarray(names.str.startswith(f"{t}_"))].mean(axis=1) for t in types]
        )
        level_1 = [f"type_{types[i][1:]}" for i in scores.argmax(axis=1)]
        return pd.DataFrame(
            {
                "level_1": level_1,
                "level_2": [f"{l}/a" for l in level_1],
                "level_3": [f"{l}/a/i" for l in level_1],
            },
            index=table.obs_names.copy(),
        )

    @staticmethod
    def hierarchy(n_types: int = 4) -> Dict[str, Dict[str, str]]:
        level_1 = [f"type_{t}" for t in range(n_types)]
        return {
            "level_2": {f"{l}/a": l for l in level_1},
            "level_3": {f"{l}/a/i": f"{l}/a" for l in level_1},
        }
