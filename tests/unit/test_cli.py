"""Unit tests for the command-line interface."""

import subprocess
from types import SimpleNamespace

import pytest
import yaml
from click.testing import CliRunner

from scintegrate import __version__
from scintegrate.cli import cli
from scintegrate.core.annotation import ModelCache
from tests.fixtures import FakePredictor, write_sample_sheet


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, test_config):
    """Test configuration with a local cache and one configured reference."""
    data = test_config.to_dict()
    data["annotation"]["cache_dir"] = str(tmp_path / "cache")
    data["annotation"]["references"] = {"toyref": ["a.pkl", "b.pkl", "c.pkl"]}
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestCli:
    """Tests for the top-level group."""

    def test_help(self, runner):
        """Test the help lists every command."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "quantify", "models"):
            assert command in result.output

    def test_version(self, runner):
        """Test --version prints the package version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestRunCommand:
    """Tests for 'scintegrate run'."""

    def test_run(self, runner, tmp_path, samples, config_file, monkeypatch):
        """Test a run on a sample sheet writes the outputs."""
        import scintegrate.pipeline

        real = scintegrate.pipeline.IntegrationPipeline
        monkeypatch.setattr(
            scintegrate.pipeline,
            "IntegrationPipeline",
            lambda cfg: real(cfg, predictor=FakePredictor(tmp_path / "models")),
        )
        sheet = write_sample_sheet(samples, tmp_path / "data")
        out = tmp_path / "results"

        result = runner.invoke(
            cli,
            ["run", "-s", str(sheet), "-o", str(out), "-c", str(config_file), "-m", "toyref"],
        )

        assert result.exit_code == 0, result.output
        assert "from 3 samples" in result.output
        assert (out / "integrated.h5ad").exists()
        assert (out / "manifest.yaml").exists()

    def test_run_reports_pipeline_errors(self, runner, tmp_path, samples, config_file):
        """Test an unknown reference ends with exit code 1 and the stage."""
        sheet = write_sample_sheet(samples, tmp_path / "data")
        result = runner.invoke(
            cli,
            ["run", "-s", str(sheet), "-o", str(tmp_path / "out"), "-c", str(config_file),
             "-m", "nosuchref"],
        )
        assert result.exit_code == 1
        assert "annotate" in result.output
        assert "nosuchref" in result.output

    def test_run_invalid_config(self, runner, tmp_path, samples):
        """Test an invalid configuration is reported before running."""
        sheet = write_sample_sheet(samples, tmp_path / "data")
        bad = tmp_path / "bad.yaml"
        bad.write_text("clustering: {resolution: 1.0}\n")
        result = runner.invoke(
            cli, ["run", "-s", str(sheet), "-o", str(tmp_path / "out"), "-c", str(bad)]
        )
        assert result.exit_code == 1
        assert "clustering" in result.output


class TestQuantifyCommand:
    """Tests for 'scintegrate quantify'."""

    def test_quantify(self, runner, tmp_path, monkeypatch):
        """Test quantify runs the external tool with the given options."""
        fastqs = tmp_path / "fastq"
        fastqs.mkdir()
        (fastqs / "x_R1_001.fastq.gz").write_text("")
        (fastqs / "x_R2_001.fastq.gz").write_text("")
        reference = tmp_path / "ref"
        reference.mkdir()

        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            return SimpleNamespace(returncode=0, stdout="", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = runner.invoke(
            cli,
            ["quantify", "--sample-id", "S1", "-f", str(fastqs), "-t", str(reference),
             "-o", str(tmp_path / "runs"), "--localcores", "8", "--create-bam"],
        )

        assert result.exit_code == 0, result.output
        assert "filtered_feature_bc_matrix" in result.output
        assert "--localcores=8" in calls[0]
        assert "--create-bam=true" in calls[0]

    def test_quantify_batch(self, runner, tmp_path, monkeypatch):
        """Test --samples quantifies every listed sample and writes a sample sheet."""
        reference = tmp_path / "ref"
        reference.mkdir()
        lines = []
        for sample_id in ("D0", "D7"):
            fastqs = tmp_path / "fastq" / sample_id
            fastqs.mkdir(parents=True)
            (fastqs / f"{sample_id}_R1_001.fastq.gz").write_text("")
            (fastqs / f"{sample_id}_R2_001.fastq.gz").write_text("")
            lines.append(f"{sample_id} {fastqs}")
        sample_list = tmp_path / "samples.txt"
        sample_list.write_text("\n".join(lines) + "\n")

        calls = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            return SimpleNamespace(returncode=0, stdout="", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        runs = tmp_path / "runs"
        result = runner.invoke(
            cli,
            ["quantify", "--samples", str(sample_list), "-t", str(reference), "-o", str(runs),
             "--force-cells", "9000", "--chemistry", "SC5P-R2"],
        )

        assert result.exit_code == 0, result.output
        assert [c[2] for c in calls] == ["--id=D0", "--id=D7"]
        assert all("--force-cells=9000" in c and "--chemistry=SC5P-R2" in c for c in calls)
        sheet = runs / "samples.csv"
        assert str(sheet) in result.output
        rows = sheet.read_text().splitlines()
        assert rows[0] == "sample_id,matrix_dir"
        assert rows[1] == "D0,D0/outs/filtered_feature_bc_matrix"

    def test_quantify_requires_one_mode(self, runner, tmp_path):
        """Test single-sample and batch options are mutually exclusive."""
        reference = tmp_path / "ref"
        reference.mkdir()
        sample_list = tmp_path / "samples.txt"
        sample_list.write_text("S1 /data/S1\n")

        result = runner.invoke(cli, ["quantify", "-t", str(reference), "-o", str(tmp_path)])
        assert result.exit_code == 2
        assert "--samples" in result.output

        result = runner.invoke(
            cli,
            ["quantify", "--samples", str(sample_list), "--sample-id", "S1",
             "-t", str(reference), "-o", str(tmp_path)],
        )
        assert result.exit_code == 2
        assert "cannot be combined" in result.output

    def test_quantify_failure(self, runner, tmp_path, monkeypatch):
        """Test a failing quantifier exits with code 1."""
        fastqs = tmp_path / "fastq"
        fastqs.mkdir()
        (fastqs / "x_R1_001.fastq.gz").write_text("")
        reference = tmp_path / "ref"
        reference.mkdir()
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda cmd, **kwargs: SimpleNamespace(returncode=3, stdout="", stderr="out of memory"),
        )
        result = runner.invoke(
            cli,
            ["quantify", "--sample-id", "S1", "-f", str(fastqs), "-t", str(reference),
             "-o", str(tmp_path / "runs")],
        )
        assert result.exit_code == 1
        assert "out of memory" in result.output


class TestModelsCommand:
    """Tests for 'scintegrate models'."""

    def test_list(self, runner, tmp_path, config_file):
        """Test configured and cached references are listed with their status."""
        cache = ModelCache(tmp_path / "cache")
        sources = []
        for name in ("l1.pkl", "l2.pkl", "l3.pkl"):
            path = tmp_path / name
            path.write_bytes(b"model")
            sources.append(path)
        cache.store("extra", sources)

        result = runner.invoke(cli, ["models", "list", "-c", str(config_file)])

        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert "extra\tcached (not configured)" in lines
        assert "toyref\tnot cached" in lines

    def test_list_empty(self, runner, tmp_path):
        """Test the message when nothing is configured or cached."""
        config = tmp_path / "config.yaml"
        config.write_text(yaml.safe_dump({"annotation": {"cache_dir": str(tmp_path / "c")}}))
        result = runner.invoke(cli, ["models", "list", "-c", str(config)])
        assert result.exit_code == 0
        assert "No references configured" in result.output

    def test_fetch_unknown(self, runner, config_file):
        """Test fetching an unconfigured reference fails."""
        result = runner.invoke(cli, ["models", "fetch", "other", "-c", str(config_file)])
        assert result.exit_code == 1
        assert "Unknown reference" in result.output

    def test_fetch(self, runner, tmp_path, config_file, monkeypatch):
        """Test fetch stores the reference in the configured cache."""
        from celltypist import models

        files = {}
        for name in ("a.pkl", "b.pkl", "c.pkl"):
            path = tmp_path / "dl" / name
            path.parent.mkdir(exist_ok=True)
            path.write_bytes(b"model")
            files[name] = path
        monkeypatch.setattr(models, "download_models", lambda model, force_update: None)
        monkeypatch.setattr(models, "get_model_path", lambda name: str(files[name]))

        result = runner.invoke(cli, ["models", "fetch", "toyref", "-c", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "cached in" in result.output
        assert ModelCache(tmp_path / "cache").is_cached("toyref")
