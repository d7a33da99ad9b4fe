"""Read quantification through Cell Ranger count.

FASTQ files are staged into a temporary directory under the Illumina naming
convention that Cell Ranger expects, then quantified into a 10x-style
filtered matrix directory that MatrixLoader reads. Batches listed in a
sample file are quantified one sample at a time into a sample sheet.
"""

import logging
import re
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from ...errors import MissingDataError, QuantificationError

PathLike = Union[str, Path]

READ_PATTERN = re.compile(r"(?:^|[_.\-])R([12])(?:[_.\-]|$)")


@dataclass
class QuantifierParams:
    """Parameters for quantifying one sample.

    Attributes
    ----------
    sample_id : str
        Sample identifier (also the Cell Ranger run id)
    fastq_dirs : List[str]
        Directories holding the sample's FASTQ files
    transcriptome : str
        Reference transcriptome directory
    output_dir : str
        Directory the run directory is created in
    localcores : int
        Cores given to the quantifier
    localmem : int
        Memory in GB given to the quantifier
    fastq_patterns : List[str]
        Glob patterns selecting FASTQ files
    create_bam : bool
        Write the aligned BAM
    force_cells : int, optional
        Force this number of cells
    chemistry : str, optional
        Assay chemistry (None = auto-detect)
    """

    sample_id: str
    fastq_dirs: List[str]
    transcriptome: str
    output_dir: str
    localcores: int = 60
    localmem: int = 200
    fastq_patterns: List[str] = field(default_factory=lambda: ["*.fastq.gz"])
    create_bam: bool = False
    force_cells: Optional[int] = None
    chemistry: Optional[str] = None


class Quantifier(ABC):
    """Interface to an external read quantifier."""

    @abstractmethod
    def run(self, params: QuantifierParams) -> Path:
        """Quantify one sample and return its matrix directory.

        Raises
        ------
        QuantificationError
            If the external tool fails
        """


def collect_fastqs(params: QuantifierParams) -> List[Path]:
    """FASTQ files of a sample, sorted and de-duplicated.

    Raises
    ------
    MissingDataError
        If no file matches
    """
    found: Dict[Path, None] = {}
    for directory in params.fastq_dirs:
        base = Path(directory)
        if not base.is_dir():
            raise MissingDataError(
                f"FASTQ directory not found: {base}", sample_id=params.sample_id
            )
        for pattern in params.fastq_patterns:
            for path in sorted(base.glob(pattern)):
                if path.is_file():
                    found[path.resolve()] = None
    if not found:
        raise MissingDataError(
            f"No FASTQ files matching {params.fastq_patterns} in {params.fastq_dirs}",
            sample_id=params.sample_id,
        )
    return list(found)


def illumina_names(
    sample_id: str,
    fastqs: List[Path],
    logger: Optional[logging.Logger] = None,
) -> Dict[Path, str]:
    """Map FASTQ files to '{sample}_S1_L00{n}_{R1|R2}_001.fastq.gz'.

    Files whose name carries no R1/R2 marker are skipped with a warning.
    Repeated reads get increasing lane numbers.
    """
    _logger = logger or logging.getLogger(__name__)
    lanes = {"1": 0, "2": 0}
    names: Dict[Path, str] = {}
    for path in fastqs:
        match = READ_PATTERN.search(path.name)
        if match is None:
            _logger.warning("Skipping %s: no R1/R2 read marker in file name", path.name)
            continue
        read = match.group(1)
        lanes[read] += 1
        names[path] = f"{sample_id}_S1_L{lanes[read]:03d}_R{read}_001.fastq.gz"
    return names


class CellRangerQuantifier(Quantifier):
    """Cell Ranger count wrapper.

    Parameters
    ----------
    executable : str
        Cell Ranger executable name or path
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> quantifier = CellRangerQuantifier()
    >>> matrix_dir = quantifier.run(QuantifierParams(
    ...     sample_id="S1", fastq_dirs=["fastq/S1"],
    ...     transcriptome="refdata-gex-GRCh38-2020-A", output_dir="runs"))
    """

    def __init__(
        self,
        executable: str = "cellranger",
        logger: Optional[logging.Logger] = None,
    ):
        self.executable = executable
        self.logger = logger or logging.getLogger(__name__)

    def build_command(self, params: QuantifierParams, fastq_dir: Path) -> List[str]:
        cmd = [
            self.executable,
            "count",
            f"--id={params.sample_id}",
            f"--localcores={params.localcores}",
            f"--localmem={params.localmem}",
            f"--create-bam={'true' if params.create_bam else 'false'}",
            f"--transcriptome={params.transcriptome}",
            f"--fastqs={fastq_dir}",
            f"--sample={params.sample_id}",
        ]
        if params.force_cells:
            cmd.append(f"--force-cells={params.force_cells}")
        if params.chemistry:
            cmd.append(f"--chemistry={params.chemistry}")
        return cmd

    def stage(self, params: QuantifierParams, staging_dir: Path) -> int:
        """Link renamed FASTQs into staging_dir; returns the number staged."""
        names = illumina_names(params.sample_id, collect_fastqs(params), self.logger)
        if not names:
            raise MissingDataError(
                "No FASTQ file carries an R1/R2 read marker", sample_id=params.sample_id
            )
        for src, name in names.items():
            (staging_dir / name).symlink_to(src)
            self.logger.debug("Staged %s as %s", src.name, name)
        return len(names)

    def run(self, params: QuantifierParams) -> Path:
        output_dir = Path(params.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        staging_dir = Path(tempfile.mkdtemp(prefix=f"{params.sample_id}_fastq_"))
        try:
            n_staged = self.stage(params, staging_dir)
            cmd = self.build_command(params, staging_dir)
            self.logger.info(
                "Quantifying %s (%d FASTQs): %s", params.sample_id, n_staged, " ".join(cmd)
            )
            result = subprocess.run(
                cmd,
                cwd=str(output_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
            if result.returncode != 0:
                tail = "\n".join((result.stderr or "").strip().splitlines()[-20:])
                raise QuantificationError(
                    f"cellranger count exited with {result.returncode}: {tail}",
                    sample_id=params.sample_id,
                )
        except FileNotFoundError as e:
            raise QuantificationError(
                f"Cannot run {self.executable}: {e}", sample_id=params.sample_id
            ) from e
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        matrix_dir = output_dir / params.sample_id / "outs" / "filtered_feature_bc_matrix"
        self.logger.info("Quantified %s -> %s", params.sample_id, matrix_dir)
        return matrix_dir


def read_sample_list(path: PathLike) -> List[Tuple[str, List[str]]]:
    """Read a whitespace-separated list of 'SAMPLE_ID FASTQ_PATH [FASTQ_PATH ...]'.

    Blank lines and lines starting with '#' are skipped.

    Raises
    ------
    MissingDataError
        If the file doesn't exist
    ValueError
        If a line names no FASTQ path or a sample is listed twice
    """
    path = Path(path)
    if not path.is_file():
        raise MissingDataError(f"Sample list not found: {path}")

    entries: Dict[str, List[str]] = {}
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            fields = line.split()
            if not fields or fields[0].startswith("#"):
                continue
            if len(fields) < 2:
                raise ValueError(
                    f"{path}:{lineno}: expected 'SAMPLE_ID FASTQ_PATH', got {line.strip()!r}"
                )
            sample_id, fastq_dirs = fields[0], fields[1:]
            if sample_id in entries:
                raise ValueError(f"{path}:{lineno}: duplicate sample identifier {sample_id!r}")
            entries[sample_id] = fastq_dirs
    if not entries:
        raise ValueError(f"No samples listed in {path}")
    return list(entries.items())


def quantify_samples(
    quantifier: Quantifier,
    params: List[QuantifierParams],
    sheet_path: PathLike,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Quantify several samples and write a sample sheet listing their matrices.

    Samples without matching FASTQ files are skipped with a warning; a
    failing quantifier run stops the batch.

    Parameters
    ----------
    quantifier : Quantifier
        Quantifier run once per sample
    params : List[QuantifierParams]
        Per-sample parameters
    sheet_path : PathLike
        Sample sheet CSV (sample_id, matrix_dir) read by MatrixLoader

    Returns
    -------
    Path
        The written sample sheet

    Raises
    ------
    MissingDataError
        If no sample could be quantified
    QuantificationError
        If the quantifier fails on a sample
    """
    _logger = logger or logging.getLogger(__name__)
    sheet_path = Path(sheet_path)

    rows = []
    for sample in params:
        try:
            matrix_dir = Path(quantifier.run(sample))
        except MissingDataError as e:
            _logger.warning("Skipping sample %s: %s", sample.sample_id, e.message)
            continue
        try:
            matrix_dir = matrix_dir.resolve().relative_to(sheet_path.parent.resolve())
        except ValueError:
            matrix_dir = matrix_dir.resolve()
        rows.append({"sample_id": sample.sample_id, "matrix_dir": str(matrix_dir)})

    if not rows:
        raise MissingDataError(f"None of {len(params)} samples could be quantified")

    sheet_path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(sheet_path, index=False)
    _logger.info("Quantified %d/%d samples; sample sheet: %s", len(rows), len(params), sheet_path)
    return sheet_path
