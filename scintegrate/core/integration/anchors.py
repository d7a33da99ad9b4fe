"""Pairwise integration anchors (IntegrationAnchorFinder).

For every unordered pair of samples, anchors are mutual nearest neighbors in
a shared canonical correlation space. Only canonical dimensions that rise
clearly above the level expected for two samples without shared structure
are used, so a pair with no common cell states yields no anchors. Anchors
are then filtered by their agreement in a denoised joint PCA space of both
samples and scored by neighborhood consistency.

Each pair is an independent task: tasks receive plain numpy arrays, run in
parallel with joblib, and their anchors are concatenated once all pairs are
done. A pair that yields no anchors is not an error for the run; it is
logged and contributes nothing.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...errors import DegenerateAnchorError
from ..parallel import run_tasks
from .config import AnchorConfig

ANCHOR_COLUMNS = [
    "cell_a",
    "cell_b",
    "sample_a",
    "sample_b",
    "index_a",
    "index_b",
    "similarity",
    "overlap",
    "score",
]


def _empty_anchors() -> pd.DataFrame:
    dtypes = {"index_a": int, "index_b": int, "similarity": float, "overlap": float, "score": float}
    return pd.DataFrame(
        {c: pd.Series(dtype=dtypes.get(c, object)) for c in ANCHOR_COLUMNS}
    )


@dataclass
class AnchorSet:
    """Anchors for all sample pairs.

    Attributes
    ----------
    anchors : pd.DataFrame
        One row per anchor (see ANCHOR_COLUMNS); sample_a precedes sample_b
        in sample order
    sample_ids : List[str]
        Samples the anchors were computed for
    pair_counts : Dict[Tuple[str, str], int]
        Anchors per pair (zero for pass-through pairs)
    degenerate : Dict[Tuple[str, str], str]
        Pairs that yielded no anchors, with the reason
    """

    anchors: pd.DataFrame = field(default_factory=_empty_anchors)
    sample_ids: List[str] = field(default_factory=list)
    pair_counts: Dict[Tuple[str, str], int] = field(default_factory=dict)
    degenerate: Dict[Tuple[str, str], str] = field(default_factory=dict)

    @property
    def n_anchors(self) -> int:
        return int(len(self.anchors))

    def for_pair(self, sample_a: str, sample_b: str) -> pd.DataFrame:
        """Anchors between two samples, in either orientation."""
        df = self.anchors
        mask = ((df["sample_a"] == sample_a) & (df["sample_b"] == sample_b)) | (
            (df["sample_a"] == sample_b) & (df["sample_b"] == sample_a)
        )
        return df[mask].reset_index(drop=True)

    def oriented(self, query: str, references: Sequence[str]) -> pd.DataFrame:
        """Anchors between a query sample and a set of reference samples.

        Returns
        -------
        pd.DataFrame
            Columns query_cell, query_index, ref_sample, ref_cell, ref_index,
            similarity, overlap, score
        """
        refs = set(references)
        df = self.anchors
        fwd = df[(df["sample_a"] == query) & df["sample_b"].isin(refs)]
        rev = df[(df["sample_b"] == query) & df["sample_a"].isin(refs)]
        shared = ["similarity", "overlap", "score"]
        fwd = pd.DataFrame(
            {
                "query_cell": fwd["cell_a"].to_numpy(),
                "query_index": fwd["index_a"].to_numpy(dtype=int),
                "ref_sample": fwd["sample_b"].to_numpy(),
                "ref_cell": fwd["cell_b"].to_numpy(),
                "ref_index": fwd["index_b"].to_numpy(dtype=int),
                **{c: fwd[c].to_numpy(dtype=float) for c in shared},
            }
        )
        rev = pd.DataFrame(
            {
                "query_cell": rev["cell_b"].to_numpy(),
                "query_index": rev["index_b"].to_numpy(dtype=int),
                "ref_sample": rev["sample_a"].to_numpy(),
                "ref_cell": rev["cell_a"].to_numpy(),
                "ref_index": rev["index_a"].to_numpy(dtype=int),
                **{c: rev[c].to_numpy(dtype=float) for c in shared},
            }
        )
        return pd.concat([fwd, rev], ignore_index=True)

    def total_score(self, query: str, references: Sequence[str]) -> float:
        """Sum of anchor scores between a query and a set of samples."""
        return float(self.oriented(query, references)["score"].sum())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_anchors": self.n_anchors,
            "pairs": {f"{a}|{b}": n for (a, b), n in self.pair_counts.items()},
            "degenerate_pairs": {f"{a}|{b}": r for (a, b), r in self.degenerate.items()},
        }


@dataclass
class PairTask:
    """Minimal data for one sample pair.

    data_a and data_b are cells x features residual matrices over the same
    features, in the same order.
    """

    sample_a: str
    sample_b: str
    data_a: np.ndarray
    data_b: np.ndarray
    cells_a: List[str]
    cells_b: List[str]
    config: AnchorConfig


@dataclass
class PairResult:
    """Anchors found for one pair, or why there are none."""

    sample_a: str
    sample_b: str
    anchors: pd.DataFrame
    error: Optional[str] = None


def _standardize(X: np.ndarray) -> np.ndarray:
    """Center and scale each feature within a sample."""
    mean = X.mean(axis=0)
    std = X.std(axis=0)
    std[std == 0] = 1.0
    return (X - mean) / std


def _l2_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def _knn(
    data: np.ndarray,
    query: np.ndarray,
    k: int,
    method: str,
    seed: int,
) -> np.ndarray:
    """Indices (into data) of the k nearest neighbors of each query row."""
    k = max(1, min(k, data.shape[0]))
    if method == "approximate":
        from pynndescent import NNDescent

        index = NNDescent(
            data,
            n_neighbors=max(2, min(30, data.shape[0] - 1)),
            metric="euclidean",
            random_state=seed,
        )
        idx, _ = index.query(query, k=k)
        return idx
    from sklearn.neighbors import NearestNeighbors

    nn = NearestNeighbors(n_neighbors=k).fit(data)
    _, idx = nn.kneighbors(query)
    return idx


def resolve_nn_method(config: AnchorConfig, n_cells: int) -> str:
    """Neighbor search method for a pair with n_cells cells in total."""
    if config.nn_method == "auto":
        return "approximate" if n_cells > config.approximate_threshold else "exact"
    return config.nn_method


def _top_singular_value(X: np.ndarray, seed: int) -> float:
    from scipy.sparse.linalg import svds

    v0 = np.random.default_rng(seed).standard_normal(min(X.shape))
    return float(svds(X, k=1, v0=v0, return_singular_vectors=False)[0])


def canonical_correlation(
    za: np.ndarray, zb: np.ndarray, n_dims: int, seed: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Canonical correlation embedding of two standardized samples.

    Computes the top singular vectors of Z_A Z_B^T through an implicit
    linear operator, so the cells x cells matrix is never materialized.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        (cells_a x n_dims, cells_b x n_dims, singular values), sorted by
        decreasing singular value
    """
    from scipy.sparse.linalg import LinearOperator, svds

    n_a, n_b = za.shape[0], zb.shape[0]
    op = LinearOperator(
        shape=(n_a, n_b),
        matvec=lambda v: za @ (zb.T @ np.ravel(v)),
        rmatvec=lambda u: zb @ (za.T @ np.ravel(u)),
        dtype=np.float64,
    )
    rng = np.random.default_rng(seed)
    v0 = rng.standard_normal(min(n_a, n_b))
    u, s, vt = svds(op, k=n_dims, v0=v0)
    order = np.argsort(-s)
    return u[:, order], vt[order].T, s[order]


def unshared_level(za: np.ndarray, zb: np.ndarray, seed: int) -> float:
    """Largest singular value of Z_A Z_B^T expected without shared structure.

    If the dominant direction of one sample carries no structure in the
    other, the product along it is the sample's top singular value times
    the other sample's average spread along a single gene direction. Pure
    noise in both samples is bounded by sqrt(p) (sqrt(n_A) + sqrt(n_B))
    per unit variance.
    """
    n_a, p = za.shape
    n_b = zb.shape[0]
    var_a = float(np.square(za).sum()) / (n_a * p)
    var_b = float(np.square(zb).sum()) / (n_b * p)
    top_a = _top_singular_value(za, seed)
    top_b = _top_singular_value(zb, seed)
    return max(
        top_a * np.sqrt(n_b * var_b),
        top_b * np.sqrt(n_a * var_a),
        np.sqrt(p * var_a * var_b) * (np.sqrt(n_a) + np.sqrt(n_b)),
    )


def joint_signal_space(
    za: np.ndarray, zb: np.ndarray, n_dims: int, seed: int
) -> Tuple[np.ndarray, np.ndarray]:
    """L2-normalized PCA of both samples together, above the noise edge.

    Each sample is standardized on its own, so per-gene batch shifts are
    already removed. Components whose variance does not exceed the
    Marchenko-Pastur edge of pure noise are dropped (at least two are kept).
    """
    from sklearn.decomposition import PCA

    joint = np.vstack([za, zb])
    n, p = joint.shape
    n_comp = max(1, min(n_dims, n - 1, p - 1))
    pca = PCA(n_components=n_comp, svd_solver="randomized", random_state=seed)
    embedding = pca.fit_transform(joint)

    edge = float(joint.var(axis=0, ddof=1).mean()) * (1.0 + np.sqrt(p / n)) ** 2
    n_keep = max(min(2, n_comp), int((pca.explained_variance_ > edge).sum()))
    embedding = _l2_normalize(embedding[:, :n_keep])
    return embedding[: za.shape[0]], embedding[za.shape[0]:]


def find_pair_anchors(task: PairTask) -> pd.DataFrame:
    """Find, filter and score anchors for one sample pair.

    Raises
    ------
    DegenerateAnchorError
        If the pair shares no correlation structure or no anchor survives
    """
    cfg = task.config
    n_a, n_b = task.data_a.shape[0], task.data_b.shape[0]
    n_features = task.data_a.shape[1]
    if min(n_a, n_b) < 3 or n_features < 2:
        raise DegenerateAnchorError(
            task.sample_a, task.sample_b, f"too small ({n_a} x {n_b} cells, {n_features} features)"
        )

    method = resolve_nn_method(cfg, n_a + n_b)
    za = _standardize(task.data_a)
    zb = _standardize(task.data_b)

    n_dims = max(1, min(cfg.n_dims, n_a - 1, n_b - 1, n_features - 1))
    cca_a, cca_b, values = canonical_correlation(za, zb, n_dims, cfg.random_seed)

    # Keep only canonical dimensions that exceed the unshared level
    level = unshared_level(za, zb, cfg.random_seed)
    n_shared = int((values >= cfg.min_canonical_ratio * level).sum())
    if n_shared == 0:
        raise DegenerateAnchorError(
            task.sample_a,
            task.sample_b,
            f"no shared correlation structure (top canonical value "
            f"{values[0] / level:.2f}x the unshared level, need {cfg.min_canonical_ratio:g}x)",
        )
    n_keep = max(n_shared, min(2, n_dims))
    cca_a = _l2_normalize(cca_a[:, :n_keep])
    cca_b = _l2_normalize(cca_b[:, :n_keep])

    # Mutual nearest neighbors in CCA space
    nn_ab = _knn(cca_b, cca_a, cfg.k_anchor, method, cfg.random_seed)
    nn_ba = _knn(cca_a, cca_b, cfg.k_anchor, method, cfg.random_seed)
    b_to_a = {(int(i), j) for j, row in enumerate(nn_ba) for i in row}
    pairs = sorted(
        (i, int(j)) for i, row in enumerate(nn_ab) for j in row if (i, int(j)) in b_to_a
    )
    if not pairs:
        raise DegenerateAnchorError(task.sample_a, task.sample_b, "no mutual neighbors")
    idx_a = np.array([p[0] for p in pairs], dtype=int)
    idx_b = np.array([p[1] for p in pairs], dtype=int)

    # Filter in the joint space of both samples
    ja, jb = joint_signal_space(za, zb, cfg.n_dims, cfg.random_seed)
    similarity = np.einsum("ij,ij->i", ja[idx_a], jb[idx_b])
    k_ab = min(cfg.k_filter, max(cfg.k_anchor, int(np.ceil(cfg.filter_fraction * n_b))), n_b)
    k_ba = min(cfg.k_filter, max(cfg.k_anchor, int(np.ceil(cfg.filter_fraction * n_a))), n_a)
    filt_ab = _knn(jb, ja[idx_a], k_ab, method, cfg.random_seed)
    filt_ba = _knn(ja, jb[idx_b], k_ba, method, cfg.random_seed)
    in_neighborhood = np.array(
        [
            (idx_b[n] in filt_ab[n]) or (idx_a[n] in filt_ba[n])
            for n in range(len(idx_a))
        ]
    )
    keep = in_neighborhood & (similarity >= cfg.min_similarity)
    idx_a, idx_b, similarity = idx_a[keep], idx_b[keep], similarity[keep]
    if len(idx_a) == 0:
        raise DegenerateAnchorError(
            task.sample_a, task.sample_b, "no anchors passed the joint-space filter"
        )

    # Neighborhood-consistency score; combined index: A cells then B cells
    from scipy import sparse

    k_score = max(1, min(cfg.k_score, n_a, n_b))
    hoods = [
        _knn(cca_a, cca_a, k_score, method, cfg.random_seed),
        _knn(cca_b, cca_a, k_score, method, cfg.random_seed) + n_a,
        _knn(cca_a, cca_b, k_score, method, cfg.random_seed),
        _knn(cca_b, cca_b, k_score, method, cfg.random_seed) + n_a,
    ]
    rows_a = np.hstack([hoods[0], hoods[1]])
    rows_b = np.hstack([hoods[2], hoods[3]])
    neighbors = np.vstack([rows_a, rows_b])
    n_total = n_a + n_b
    indicator = sparse.csr_matrix(
        (
            np.ones(neighbors.size),
            (np.repeat(np.arange(n_total), neighbors.shape[1]), neighbors.ravel()),
        ),
        shape=(n_total, n_total),
    )
    indicator.data[:] = 1.0
    shared = np.asarray(
        indicator[idx_a].multiply(indicator[idx_b + n_a]).sum(axis=1)
    ).ravel()
    overlap = shared / (2.0 * k_score)

    keep = overlap >= cfg.min_overlap
    idx_a, idx_b = idx_a[keep], idx_b[keep]
    similarity, overlap = similarity[keep], overlap[keep]
    if len(idx_a) == 0:
        raise DegenerateAnchorError(
            task.sample_a, task.sample_b, "no anchors with consistent neighborhoods"
        )

    lo, hi = np.quantile(overlap, cfg.score_quantiles)
    if hi > lo:
        score = np.clip((overlap - lo) / (hi - lo), 0.0, 1.0)
    else:
        score = np.ones_like(overlap)

    return pd.DataFrame(
        {
            "cell_a": [task.cells_a[i] for i in idx_a],
            "cell_b": [task.cells_b[j] for j in idx_b],
            "sample_a": task.sample_a,
            "sample_b": task.sample_b,
            "index_a": idx_a,
            "index_b": idx_b,
            "similarity": similarity,
            "overlap": overlap,
            "score": score,
        },
        columns=ANCHOR_COLUMNS,
    )


def run_pair_task(task: PairTask) -> PairResult:
    """Worker wrapper: degenerate pairs yield an empty anchor set."""
    try:
        anchors = find_pair_anchors(task)
    except DegenerateAnchorError as e:
        return PairResult(task.sample_a, task.sample_b, _empty_anchors(), error=str(e))
    return PairResult(task.sample_a, task.sample_b, anchors)


class IntegrationAnchorFinder:
    """Pairwise anchor finder.

    Parameters
    ----------
    config : AnchorConfig
        Anchor configuration
    n_jobs : int
        Parallel workers over sample pairs (1 = sequential)
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scintegrate.core.integration import IntegrationAnchorFinder, AnchorConfig
    >>> finder = IntegrationAnchorFinder(AnchorConfig(k_anchor=5), n_jobs=4)
    >>> anchor_set = finder.find_anchors(residuals, cell_ids)
    >>> anchor_set.anchors.head()
    """

    def __init__(
        self,
        config: Optional[AnchorConfig] = None,
        n_jobs: int = 1,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AnchorConfig()
        self.n_jobs = n_jobs
        self.logger = logger or logging.getLogger(__name__)

    def pair_tasks(
        self,
        data: Dict[str, np.ndarray],
        cell_ids: Dict[str, Sequence[str]],
    ) -> List[PairTask]:
        """One task per unordered pair, in sample order."""
        tasks = []
        for sample_a, sample_b in itertools.combinations(list(data.keys()), 2):
            if data[sample_a].shape[1] != data[sample_b].shape[1]:
                raise ValueError(
                    f"Samples {sample_a} and {sample_b} have different feature counts"
                )
            tasks.append(
                PairTask(
                    sample_a=sample_a,
                    sample_b=sample_b,
                    data_a=np.asarray(data[sample_a], dtype=np.float64),
                    data_b=np.asarray(data[sample_b], dtype=np.float64),
                    cells_a=[str(c) for c in cell_ids[sample_a]],
                    cells_b=[str(c) for c in cell_ids[sample_b]],
                    config=self.config,
                )
            )
        return tasks

    def find_anchors(
        self,
        data: Dict[str, np.ndarray],
        cell_ids: Dict[str, Sequence[str]],
    ) -> AnchorSet:
        """Find anchors for every sample pair.

        Parameters
        ----------
        data : Dict[str, np.ndarray]
            Per-sample cells x features residuals over the shared features
        cell_ids : Dict[str, Sequence[str]]
            Per-sample cell identifiers matching the rows of data

        Returns
        -------
        AnchorSet
            Concatenated anchors of all pairs
        """
        tasks = self.pair_tasks(data, cell_ids)
        results = run_tasks(
            run_pair_task, tasks, n_jobs=self.n_jobs, label="sample pairs", logger=self.logger
        )

        anchor_set = AnchorSet(sample_ids=list(data.keys()))
        frames = []
        for res in results:
            pair = (res.sample_a, res.sample_b)
            anchor_set.pair_counts[pair] = int(len(res.anchors))
            if res.error is not None:
                anchor_set.degenerate[pair] = res.error
                self.logger.warning("%s; pair passes through uncorrected", res.error)
            else:
                self.logger.info(
                    "Pair (%s, %s): %d anchors", res.sample_a, res.sample_b, len(res.anchors)
                )
                frames.append(res.anchors)

        if frames:
            anchor_set.anchors = pd.concat(frames, ignore_index=True)
        self.logger.info(
            "Found %d anchors across %d pairs (%d without anchors)",
            anchor_set.n_anchors,
            len(results),
            len(anchor_set.degenerate),
        )
        return anchor_set
