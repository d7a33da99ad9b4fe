"""Unit tests for pipeline orchestration module."""

import json
import logging

import numpy as np
import pytest
import yaml

from scintegrate.errors import InsufficientDataError, StageError
from scintegrate.pipeline import (
    InMemoryExecutor,
    IntegrationPipeline,
    PipelineConfig,
    PipelineLogger,
)
from tests.fixtures import create_counts, create_samples, write_sample_sheet


class TestPipelineConfig:
    """Tests for PipelineConfig class."""

    def test_defaults(self):
        """Test every section takes its dataclass defaults."""
        config = PipelineConfig.default()
        assert config.normalization.n_hvg == 3000
        assert config.anchors.k_anchor == 5
        assert config.annotation.model_name == "bonemarrowref"
        assert config.n_jobs == 1

    def test_from_dict_partial(self):
        """Test partial sections keep defaults for missing keys."""
        config = PipelineConfig.from_dict({"qc": {"max_mito_fraction": 0.1}, "n_jobs": 4})
        assert config.qc.max_mito_fraction == 0.1
        assert config.qc.min_genes == 200
        assert config.n_jobs == 4

    def test_mito_pattern_shared_with_normalization(self):
        """Test normalization uses the QC mitochondrial pattern unless given its own."""
        config = PipelineConfig.from_dict({"qc": {"mito_pattern": "^mt-"}})
        assert config.normalization.mito_pattern == "^mt-"

        config = PipelineConfig.from_dict(
            {"qc": {"mito_pattern": "^mt-"}, "normalization": {"mito_pattern": "^MTRNR"}}
        )
        assert config.normalization.mito_pattern == "^MTRNR"

    def test_unknown_section_raises(self):
        """Test misspelled sections are rejected."""
        with pytest.raises(ValueError, match="normalisation"):
            PipelineConfig.from_dict({"normalisation": {"n_hvg": 100}})

    def test_unknown_key_raises(self):
        """Test unknown keys inside a section are rejected."""
        with pytest.raises(ValueError, match="'qc'"):
            PipelineConfig.from_dict({"qc": {"max_mito": 0.1}})

    def test_yaml_round_trip(self, tmp_path, test_config):
        """Test to_dict output loads back to the same configuration."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(test_config.to_dict()))

        loaded = PipelineConfig.from_yaml(path)
        assert loaded.to_dict() == test_config.to_dict()
        assert loaded.anchors.score_quantiles == (0.01, 0.90)

    def test_yaml_references(self, tmp_path):
        """Test references are parsed from YAML."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "annotation:\n"
            "  model_name: pbmc\n"
            "  references:\n"
            "    pbmc: [l1.pkl, l2.pkl, l3.pkl]\n"
        )
        config = PipelineConfig.from_yaml(path)
        assert config.annotation.references["pbmc"].models[2] == "l3.pkl"

    def test_missing_file(self, tmp_path):
        """Test a missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            PipelineConfig.from_yaml(tmp_path / "nope.yaml")


class TestPipelineLogger:
    """Tests for PipelineLogger class."""

    def test_init(self, tmp_path):
        """Test logger initialization."""
        logger = PipelineLogger(str(tmp_path / "logs"))
        assert logger.log_dir.exists()

    def test_setup_and_close(self, tmp_path):
        """Test handlers are attached and removed again."""
        plog = PipelineLogger(str(tmp_path / "logs"), log_name="scintegrate.test_setup")
        n_before = len(plog.logger.handlers)
        plog.setup()
        assert len(plog.logger.handlers) == n_before + 2
        assert plog.logger.propagate is False

        plog.close()
        assert len(plog.logger.handlers) == n_before
        assert plog.logger.propagate is True

    def test_module_records_reach_file(self, tmp_path):
        """Test records of child loggers are written to the run log."""
        plog = PipelineLogger(str(tmp_path / "logs"), log_name="scintegrate.test_file")
        plog.setup(console=False)
        logging.getLogger("scintegrate.test_file.child").info("hello from a module")
        plog.close()
        assert "hello from a module" in plog.log_file.read_text()

    def test_format_duration_seconds(self):
        """Test duration formatting for seconds."""
        assert PipelineLogger.format_duration(45.2) == "45.2s"

    def test_format_duration_minutes(self):
        """Test duration formatting for minutes."""
        assert PipelineLogger.format_duration(125) == "2m 5s"

    def test_format_duration_hours(self):
        """Test duration formatting for hours."""
        assert PipelineLogger.format_duration(7300) == "2h 1m"


class TestInMemoryExecutor:
    """Tests for InMemoryExecutor class."""

    def test_register_stage(self):
        """Test registering stages."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: "result_a")
        assert "A" in executor.stages

    def test_register_twice_raises(self):
        """Test a stage id can only be registered once."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None)
        with pytest.raises(ValueError, match="already registered"):
            executor.register_stage("A", lambda **k: None)

    def test_run_simple(self):
        """Test running simple pipeline."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: "a_result")
        executor.register_stage(
            "B", lambda stage_results, **k: stage_results["A"] + "_b", depends_on=["A"]
        )

        results = executor.run()
        assert results["A"] == "a_result"
        assert results["B"] == "a_result_b"

    def test_execution_order(self):
        """Test execution order with dependencies."""
        executor = InMemoryExecutor()
        order = []

        executor.register_stage("C", lambda **k: order.append("C"), depends_on=["B"])
        executor.register_stage("B", lambda **k: order.append("B"), depends_on=["A"])
        executor.register_stage("A", lambda **k: order.append("A"))

        executor.run()
        assert order == ["A", "B", "C"]
        assert executor.completed_stages == ["A", "B", "C"]

    def test_barrier_waits_for_all_dependencies(self):
        """Test a stage runs only after every dependency."""
        executor = InMemoryExecutor()
        order = []
        executor.register_stage("join", lambda **k: order.append("join"), depends_on=["x", "y"])
        executor.register_stage("x", lambda **k: order.append("x"))
        executor.register_stage("y", lambda **k: order.append("y"), depends_on=["x"])

        executor.run()
        assert order == ["x", "y", "join"]

    def test_unknown_dependency(self):
        """Test depending on an unregistered stage raises ValueError."""
        executor = InMemoryExecutor()
        executor.register_stage("B", lambda **k: None, depends_on=["A"])
        with pytest.raises(ValueError, match="unknown stages"):
            executor.run()

    def test_cycle(self):
        """Test circular dependencies raise ValueError."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None, depends_on=["B"])
        executor.register_stage("B", lambda **k: None, depends_on=["A"])
        with pytest.raises(ValueError, match="Circular"):
            executor.run()

    def test_summaries_and_durations(self):
        """Test summaries and durations are recorded per stage."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: [1, 2, 3], summarize=lambda r: {"n": len(r)})
        executor.run()
        assert executor.summaries["A"] == {"n": 3}
        assert executor.durations["A"] >= 0

    def test_failure_wrapped_with_context(self):
        """Test a failing stage raises StageError with stage, sample and params."""

        def fail(**kwargs):
            raise InsufficientDataError("12 cells (< 20) for normalization", sample_id="S2")

        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None)
        executor.register_stage(
            "normalize", fail, depends_on=["A"], params={"n_hvg": 3000}
        )
        executor.register_stage("after", lambda **k: None, depends_on=["normalize"])

        with pytest.raises(StageError) as exc:
            executor.run()

        error = exc.value
        assert error.stage_id == "normalize"
        assert error.sample_id == "S2"
        assert error.params == {"n_hvg": 3000}
        assert isinstance(error.__cause__, InsufficientDataError)
        assert "n_hvg=3000" in str(error)
        assert str(error).startswith("[sample=S2]")
        assert executor.completed_stages == ["A"]


class TestIntegrationPipeline:
    """End-to-end tests on synthetic samples."""

    @pytest.fixture
    def dirty_samples(self):
        """Three samples with 5% injected doublets and 10% high-mitochondrial cells."""
        return create_samples(n_samples=3, n_cells=240, seed=3, doublet_rate=0.05, n_high_mito=24)

    def test_run_in_memory(self, test_config, fake_predictor, dirty_samples, tmp_output_dir):
        """Test a full run produces labelled, embedded, integrated cells and outputs."""
        import anndata as ad

        samples = dirty_samples
        pipeline = IntegrationPipeline(test_config, predictor=fake_predictor)
        result = pipeline.run(samples, tmp_output_dir)
        adata = result.adata
        merged = result.stage_results["reassert"][0]
        summaries = result.summaries

        # Cells: called singlets without damage survive, nothing else does
        doublet_calls = result.stage_results["doublets"][1]
        expected, n_doublets, n_caught = set(), 0, 0
        for sample_id, sample in samples.items():
            called = doublet_calls[sample_id].classes.reindex(sample.obs_names)
            is_doublet = sample.obs["is_doublet"].to_numpy()
            n_doublets += int(is_doublet.sum())
            n_caught += int((called.to_numpy()[is_doublet] == "doublet").sum())
            keep = (called == "singlet").to_numpy() & ~sample.obs["high_mito"].to_numpy()
            expected.update(f"{sample_id}_{bc}" for bc in sample.obs_names[keep])
        assert set(adata.obs_names) == expected
        assert n_caught >= 0.7 * n_doublets
        assert not adata.obs["high_mito"].any()
        assert summaries["reassert"]["n_removed"] == 0
        assert list(adata.obs_names) == list(merged.obs_names)
        assert adata.n_vars == 150
        assert set(adata.obs["sample_id"].astype(str)) == {"S1", "S2", "S3"}
        assert adata.obs_names.is_unique

        # Embeddings and labels
        assert adata.obsm["X_pca"].shape == (adata.n_obs, 15)
        assert adata.obsm["X_umap"].shape == (adata.n_obs, 2)
        for col in ("predicted_celltype_l1", "predicted_celltype_l2", "predicted_celltype_l3"):
            assert adata.obs[col].notna().all()
        truth = adata.obs["cell_type"].astype(str).to_numpy()
        assert (adata.obs["predicted_celltype_l1"].astype(str).to_numpy() == truth).mean() > 0.9

        # Anchors
        assert result.anchor_set.n_anchors > 0
        assert not result.anchor_set.degenerate

        # Files
        paths = result.paths
        assert paths.h5ad.exists()
        assert paths.anchors.exists()
        written = ad.read_h5ad(paths.h5ad)
        assert written.n_obs == adata.n_obs
        assert "predicted_celltype_l3" in written.obs.columns
        assert "X_umap" in written.obsm

        manifest = yaml.safe_load(paths.manifest.read_text())
        assert manifest["model_name"] == "toyref"
        assert manifest["samples"] == ["S1", "S2", "S3"]
        assert set(manifest["stages"]) == set(result.summaries)
        assert manifest["config"]["features"]["n_features"] == 150

        events = [json.loads(line) for line in paths.events.read_text().splitlines()]
        assert [e["stage"] for e in events][0] == "load"
        assert [e["stage"] for e in events][-1] == "assemble"
        assert len(events) == 12
        assert list((tmp_output_dir / "logs").glob("run_*.log"))

        # Inputs untouched
        assert "doublet_score" not in samples["S1"].obs.columns

    def test_default_thresholds_on_four_samples(self, fake_predictor):
        """Test default settings on four 500-cell samples of 2000 genes with shared types."""
        samples = {
            f"S{i + 1}": create_counts(
                f"S{i + 1}",
                n_cells=475,
                n_background=1870,
                doublet_rate=25 / 475,
                n_high_mito=50,
                depth=1.0 + 0.4 * i,
                gene_batch_sd=0.2,
                seed=11 + 101 * i,
            )
            for i in range(4)
        }
        config = PipelineConfig.from_dict({"annotation": {"model_name": "toyref"}})
        result = IntegrationPipeline(config, predictor=fake_predictor).run(samples)
        adata = result.adata

        survivors = set(adata.obs_names)
        n_doublets = n_doublets_kept = n_clean = n_clean_removed = 0
        for sample_id, sample in samples.items():
            names = np.asarray([f"{sample_id}_{bc}" for bc in sample.obs_names])
            kept = np.isin(names, list(survivors))
            is_doublet = sample.obs["is_doublet"].to_numpy()
            high_mito = sample.obs["high_mito"].to_numpy()
            clean = ~is_doublet & ~high_mito

            assert not kept[high_mito].any()
            n_doublets += int(is_doublet.sum())
            n_doublets_kept += int(kept[is_doublet].sum())
            n_clean += int(clean.sum())
            n_clean_removed += int((~kept[clean]).sum())

        assert n_doublets == 100
        assert n_doublets_kept <= 0.2 * n_doublets
        assert n_clean_removed <= 0.05 * n_clean
        assert not adata.obs["high_mito"].any()

        assert result.anchor_set.n_anchors > 0
        assert not result.anchor_set.degenerate
        for col in ("predicted_celltype_l1", "predicted_celltype_l2", "predicted_celltype_l3"):
            assert adata.obs[col].notna().all()

    def test_run_from_sample_sheet(self, tmp_path, test_config, fake_predictor, samples):
        """Test a run reading 10x matrices listed in a sample sheet."""
        sheet = write_sample_sheet(samples, tmp_path / "data")
        result = IntegrationPipeline(test_config, predictor=fake_predictor).run(sheet)

        assert result.paths is None
        assert result.stage_results["load"]["S2"].n_obs == samples["S2"].n_obs
        assert result.adata.obs["predicted_celltype_l1"].notna().all()
        assert result.n_cells == result.stage_results["reassert"][0].n_obs

    def test_failing_stage_reports_sample(self, tmp_output_dir, test_config, fake_predictor):
        """Test a sample too small to normalize fails the run with context."""
        samples = {
            "S1": create_counts("S1", n_cells=200, seed=1),
            "tiny": create_counts("tiny", n_cells=10, seed=2),
        }
        pipeline = IntegrationPipeline(test_config, predictor=fake_predictor)
        with pytest.raises(StageError) as exc:
            pipeline.run(samples, tmp_output_dir)

        assert exc.value.stage_id == "normalize"
        assert exc.value.sample_id == "tiny"

        events = tmp_output_dir / "logs" / "events.jsonl"
        stages = [json.loads(line)["stage"] for line in events.read_text().splitlines()]
        assert "normalize" not in stages
        assert "reassert" in stages
        assert not (tmp_output_dir / "manifest.yaml").exists()
