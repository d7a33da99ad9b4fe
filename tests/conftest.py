"""Pytest configuration and shared fixtures for scintegrate tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scintegrate.pipeline import PipelineConfig
from tests.fixtures import FakePredictor, create_counts, create_samples


# ============================================================================
# Count Data Fixtures
# ============================================================================


@pytest.fixture
def counts_adata():
    """Single clean sample: 300 cells, 4 types."""
    return create_counts("S1", n_cells=300, seed=7)


@pytest.fixture
def doublet_adata():
    """Single sample with 5% injected doublets."""
    return create_counts("S1", n_cells=400, doublet_rate=0.05, seed=11)


@pytest.fixture
def qc_adata():
    """Single sample with 12 high-mitochondrial cells."""
    return create_counts("S1", n_cells=200, n_high_mito=12, seed=13)


@pytest.fixture
def samples():
    """Three samples sharing four cell types, with depth and gene batch effects."""
    return create_samples(n_samples=3, n_cells=240, seed=3)


@pytest.fixture
def disjoint_samples():
    """Two samples with no cell type in common."""
    return {
        "A": create_counts("A", n_cells=300, marker_types=[0, 1], seed=21),
        "B": create_counts("B", n_cells=300, marker_types=[2, 3], seed=22),
    }


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config() -> PipelineConfig:
    """Pipeline configuration sized for the synthetic samples."""
    return PipelineConfig.from_dict(
        {
            "loader": {"min_genes": 50, "min_cells": 3},
            "doublets": {"expected_rate": 0.05, "min_artificial": 200},
            "qc": {"min_genes": 50, "max_genes": 5000, "max_counts": 50000},
            "normalization": {"n_hvg": 200},
            "features": {"n_features": 150},
            "anchors": {"n_dims": 20, "k_score": 20, "k_filter": 100},
            "integration": {"k_weight": 50, "n_pcs_weight": 20},
            "embedding": {"n_pcs": 15, "n_neighbors": 15},
            "annotation": {"model_name": "toyref"},
        }
    )


@pytest.fixture
def fake_predictor(tmp_path) -> FakePredictor:
    """Offline predictor serving the 'toyref' reference."""
    return FakePredictor(tmp_path / "models")


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
