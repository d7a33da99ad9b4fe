"""Unit tests for doublet detection."""

import pytest
import numpy as np

from scintegrate.core.preprocessing import (
    DOUBLET,
    SINGLET,
    DoubletConfig,
    DoubletFilter,
)
from tests.fixtures import create_counts


class TestDoubletConfig:
    """Tests for DoubletConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = DoubletConfig()
        assert config.random_seed == 1234
        assert config.expected_rate is None
        assert config.min_cells == 50

    def test_expected_rate_scales_with_cells(self):
        """Test the default rate is 1% per 1000 cells."""
        doublets = DoubletFilter()
        assert doublets.expected_rate(1000) == pytest.approx(0.01)
        assert doublets.expected_rate(5000) == pytest.approx(0.05)
        assert DoubletFilter(DoubletConfig(expected_rate=0.08)).expected_rate(100) == 0.08


class TestDoubletFilter:
    """Tests for DoubletFilter class."""

    @pytest.fixture
    def doublets(self) -> DoubletFilter:
        return DoubletFilter(DoubletConfig(expected_rate=0.05, min_artificial=200))

    def test_simulate_pairs_distinct_cells(self, counts_adata):
        """Test artificial doublets are sums of two real profiles."""
        from scipy import sparse

        doublets = DoubletFilter(DoubletConfig(min_artificial=10, artificial_ratio=0.1))
        counts = sparse.csr_matrix(counts_adata.X)
        artificial = doublets.simulate_doublets(counts, np.random.default_rng(0))

        assert artificial.shape == (30, counts.shape[1])
        library = np.asarray(counts.sum(axis=1)).ravel()
        art_library = np.asarray(artificial.sum(axis=1)).ravel()
        assert art_library.min() >= 2 * library.min()

    def test_scores_every_cell(self, doublets, doublet_adata):
        """Test every cell gets a score and a class."""
        result = doublets.score_sample(doublet_adata, "S1")

        assert result.n_cells == doublet_adata.n_obs
        assert result.scores.between(0, 1).all()
        assert set(result.classes.unique()) <= {SINGLET, DOUBLET}
        assert list(result.scores.index) == list(doublet_adata.obs_names)
        assert not result.degraded

    def test_flags_injected_doublets(self, doublets, doublet_adata):
        """Test most injected doublets are called and the rate is near expected."""
        result = doublets.score_sample(doublet_adata, "S1")
        truth = doublet_adata.obs["is_doublet"].to_numpy()
        called = (result.classes == DOUBLET).to_numpy()

        recall = called[truth].mean()
        assert recall >= 0.5
        assert called.mean() <= 0.12

    def test_deterministic_for_seed(self, doublets, doublet_adata):
        """Test the same seed gives identical calls."""
        first = doublets.score_sample(doublet_adata, "S1")
        second = doublets.score_sample(doublet_adata, "S1")
        np.testing.assert_allclose(first.scores.to_numpy(), second.scores.to_numpy())
        assert (first.classes == second.classes).all()

    def test_filter_sample_keeps_singlets(self, doublets, doublet_adata):
        """Test filter_sample returns singlets annotated with scores."""
        singlets, result = doublets.filter_sample(doublet_adata, "S1")

        assert singlets.n_obs == doublet_adata.n_obs - result.n_doublets
        assert (singlets.obs["doublet_class"] == SINGLET).all()
        assert "doublet_score" in singlets.obs.columns
        assert "doublet_class" not in doublet_adata.obs.columns

    def test_small_sample_degrades_to_singlets(self, doublets):
        """Test a sample below min_cells is kept whole and flagged degraded."""
        small = create_counts("tiny", n_cells=20, seed=5)
        singlets, result = doublets.filter_sample(small, "tiny")

        assert result.degraded
        assert result.n_doublets == 0
        assert singlets.n_obs == 20
        assert "20 cells" in result.reason

    def test_filter_samples_independent(self, doublets):
        """Test each sample is filtered on its own."""
        samples = {
            "A": create_counts("A", n_cells=200, doublet_rate=0.05, seed=1),
            "B": create_counts("B", n_cells=30, seed=2),
        }
        filtered, results = doublets.filter_samples(samples)

        assert list(filtered) == ["A", "B"]
        assert results["B"].degraded
        assert not results["A"].degraded
        assert results["A"].to_dict()["n_cells"] == samples["A"].n_obs


class TestThreshold:
    """Tests for doublet-rate estimation and threshold selection."""

    @pytest.fixture
    def scores(self):
        """950 singlets and 50 doublets among real cells, plus artificial doublets."""
        rng = np.random.default_rng(0)
        real = np.concatenate([rng.uniform(0.0, 0.3, 950), rng.uniform(0.7, 1.0, 50)])
        truth = np.arange(1000) >= 950
        artificial = rng.uniform(0.5, 1.0, 600)
        return real, truth, artificial

    def test_estimate_rate(self, scores):
        """Test the real doublet fraction is recovered from separated scores."""
        real, _, artificial = scores
        rate = DoubletFilter().estimate_rate(real, artificial)
        assert rate == pytest.approx(0.05, abs=0.01)

    def test_estimate_rate_capped(self):
        """Test the estimate never exceeds max_rate."""
        rng = np.random.default_rng(1)
        real = rng.uniform(0.0, 1.0, 500)
        artificial = rng.uniform(0.0, 1.0, 500)
        assert DoubletFilter(DoubletConfig(max_rate=0.25)).estimate_rate(real, artificial) == 0.25

    def test_threshold_follows_separation_not_prior(self, scores):
        """Test separated doublets are all called even when far above the expected rate."""
        real, truth, artificial = scores
        doublets = DoubletFilter()
        threshold = doublets.choose_threshold(real, artificial, doublets.expected_rate(1000))
        np.testing.assert_array_equal(real >= threshold, truth)

    def test_threshold_without_doublets(self):
        """Test a sample without doublets calls about the expected rate."""
        rng = np.random.default_rng(2)
        real = rng.uniform(0.0, 0.3, 1000)
        artificial = rng.uniform(0.5, 1.0, 600)
        threshold = DoubletFilter().choose_threshold(real, artificial, 0.01)
        assert np.mean(real >= threshold) <= 0.02
