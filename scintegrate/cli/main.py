"""Command-line interface for scintegrate.

Provides commands for read quantification, the integration pipeline and
reference model management.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from .. import __version__
from ..errors import ScIntegrateError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("scintegrate")


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _load_config(config: Optional[str]):
    from scintegrate.pipeline import PipelineConfig

    if config:
        return PipelineConfig.from_yaml(Path(config))
    return PipelineConfig.default()


@click.group()
@click.version_option(version=__version__, prog_name="scintegrate")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """scintegrate: multi-sample single-cell RNA integration.

    Quantifies reads, removes doublets and low-quality cells, normalizes
    each sample, integrates samples through cross-sample anchors and
    predicts hierarchical cell-type labels.

    Examples:

        # Quantify one sample with Cell Ranger
        scintegrate quantify --sample-id S1 --fastqs fastq/S1 --transcriptome ref/ --out runs/

        # Quantify every sample of a list file into runs/samples.csv
        scintegrate quantify --samples samples.txt --transcriptome ref/ --out runs/

        # Integrate all samples listed in a sample sheet
        scintegrate run --samples samples.csv --out results/ --model bonemarrowref

        # Show cached and configured references
        scintegrate models list --config config.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--samples", "-s", "samples_csv", required=True, type=click.Path(exists=True),
              help="Sample sheet CSV (sample_id, matrix_dir)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.option("--model", "-m", "model_name", help="Reference for cell-type prediction")
@click.option("--n-jobs", "-j", type=int, help="Parallel workers (overrides config)")
@click.pass_context
def run(
    ctx: click.Context,
    samples_csv: str,
    output_path: str,
    config: Optional[str],
    model_name: Optional[str],
    n_jobs: Optional[int],
) -> None:
    """Run the integration pipeline on every sample of a sample sheet.

    Writes integrated.h5ad, anchors.csv, manifest.yaml and logs/ into
    the output directory.
    """
    logger = ctx.obj["logger"]

    from scintegrate.pipeline import IntegrationPipeline

    try:
        cfg = _load_config(config)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)
    if n_jobs is not None:
        cfg.n_jobs = n_jobs
    if ctx.obj["debug"]:
        cfg.log_level = "DEBUG"

    logger.info(f"Samples: {samples_csv}")
    logger.info(f"Output: {output_path}")

    pipeline = IntegrationPipeline(cfg)
    try:
        result = pipeline.run(samples_csv, output_path, model_name=model_name)
    except ScIntegrateError as e:
        _fail(e)

    click.echo(
        f"Integrated {result.n_cells} cells from "
        f"{len(result.anchor_set.sample_ids)} samples "
        f"({result.anchor_set.n_anchors} anchors)"
    )
    click.echo(f"Output saved to: {result.paths.h5ad}")


@cli.command()
@click.option("--sample-id", help="Sample identifier (single-sample mode)")
@click.option("--fastqs", "-f", multiple=True, type=click.Path(exists=True),
              help="Directory holding the sample's FASTQ files (repeatable)")
@click.option("--samples", "-s", "sample_list", type=click.Path(exists=True),
              help="Batch mode: file of 'SAMPLE_ID FASTQ_PATH' lines")
@click.option("--sheet", type=click.Path(),
              help="Sample sheet written in batch mode (default: <out>/samples.csv)")
@click.option("--transcriptome", "-t", required=True, type=click.Path(exists=True),
              help="Cell Ranger reference transcriptome")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Directory the Cell Ranger runs are created in")
@click.option("--localcores", type=int, default=60, help="Cores given to Cell Ranger")
@click.option("--localmem", type=int, default=200, help="Memory (GB) given to Cell Ranger")
@click.option("--pattern", "patterns", multiple=True, default=("*.fastq.gz",),
              help="FASTQ glob pattern (repeatable)")
@click.option("--create-bam", is_flag=True, help="Write the aligned BAM")
@click.option("--force-cells", type=click.IntRange(min=1),
              help="Force this number of cells per sample")
@click.option("--chemistry", help="Assay chemistry, e.g. SC5P-R2 (default: auto-detect)")
@click.option("--executable", default="cellranger", help="Cell Ranger executable")
@click.pass_context
def quantify(
    ctx: click.Context,
    sample_id: Optional[str],
    fastqs: Tuple[str, ...],
    sample_list: Optional[str],
    sheet: Optional[str],
    transcriptome: str,
    output_path: str,
    localcores: int,
    localmem: int,
    patterns: Tuple[str, ...],
    create_bam: bool,
    force_cells: Optional[int],
    chemistry: Optional[str],
    executable: str,
) -> None:
    """Quantify reads into filtered count matrices.

    Either one sample (--sample-id with --fastqs) or every sample of a
    list file (--samples). Batch mode also writes a sample sheet that
    'scintegrate run' accepts.
    """
    logger = ctx.obj["logger"]

    from scintegrate.core.quantification import (
        CellRangerQuantifier,
        QuantifierParams,
        quantify_samples,
        read_sample_list,
    )

    if sample_list and (sample_id or fastqs):
        raise click.UsageError("--samples cannot be combined with --sample-id/--fastqs")
    if not sample_list and not (sample_id and fastqs):
        raise click.UsageError("Give --sample-id and --fastqs, or --samples")

    common = dict(
        transcriptome=transcriptome,
        output_dir=output_path,
        localcores=localcores,
        localmem=localmem,
        fastq_patterns=list(patterns),
        create_bam=create_bam,
        force_cells=force_cells,
        chemistry=chemistry,
    )
    quantifier = CellRangerQuantifier(executable, logger=logger)

    if sample_list:
        try:
            entries = read_sample_list(sample_list)
        except (ScIntegrateError, ValueError) as e:
            _fail(e)
        logger.info(f"Quantifying {len(entries)} samples from {sample_list}")
        params = [
            QuantifierParams(sample_id=sid, fastq_dirs=dirs, **common) for sid, dirs in entries
        ]
        sheet_path = Path(sheet) if sheet else Path(output_path) / "samples.csv"
        try:
            written = quantify_samples(quantifier, params, sheet_path, logger=logger)
        except ScIntegrateError as e:
            _fail(e)
        click.echo(f"Sample sheet: {written}")
        return

    logger.info(f"Quantifying sample {sample_id}")
    params = QuantifierParams(sample_id=sample_id, fastq_dirs=list(fastqs), **common)
    try:
        matrix_dir = quantifier.run(params)
    except ScIntegrateError as e:
        _fail(e)

    click.echo(f"Matrix directory: {matrix_dir}")


@cli.group()
def models() -> None:
    """Manage cell-type reference models."""


@models.command("list")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
def list_models(config: Optional[str]) -> None:
    """List configured references and whether they are cached."""
    from scintegrate.core.annotation import ModelCache

    try:
        cfg = _load_config(config)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)
    cache = ModelCache(cfg.annotation.cache_path)
    names = sorted(set(cfg.annotation.references) | set(cache.cached_names()))
    if not names:
        click.echo("No references configured")
        return
    for name in names:
        status = "cached" if cache.is_cached(name) else "not cached"
        configured = "" if name in cfg.annotation.references else " (not configured)"
        click.echo(f"{name}\t{status}{configured}")


@models.command("fetch")
@click.argument("name")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
def fetch_model(name: str, config: Optional[str]) -> None:
    """Download a reference's models into the local cache."""
    from scintegrate.core.annotation import CellTypistPredictor, ModelCache

    try:
        cfg = _load_config(config)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)
    predictor = CellTypistPredictor(
        cfg.annotation.references, ModelCache(cfg.annotation.cache_path)
    )
    try:
        path = predictor.fetch(name)
    except ScIntegrateError as e:
        _fail(e)
    click.echo(f"Reference '{name}' cached in {path}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
