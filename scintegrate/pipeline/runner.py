"""End-to-end integration run.

Stages and their dependencies::

    load → doublets → qc → merge → reassert → normalize → features
         → anchors → integrate → embed ┐
                       reassert → annotate ┴→ assemble

Each stage is a registered InMemoryExecutor function; a stage only starts
once its dependencies have completed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union


from .. import __version__
from ..core.annotation import (
    AnnotationEngine,
    CellTypePredictor,
    CellTypistPredictor,
    ModelCache,
)
from ..core.embedding import DimReducer
from ..core.integration import IntegrationAnchorFinder, Integrator
from ..core.preprocessing import (
    DoubletFilter,
    FeatureSelector,
    MatrixLoader,
    Normalizer,
    QualityFilter,
    SampleMerger,
    config_to_dict,
)
from ..io import OutputPaths, append_jsonl, write_manifest, write_outputs
from .config import PipelineConfig
from .executor import InMemoryExecutor
from .logger import PipelineLogger

PathLike = Union[str, Path]


@dataclass
class RunResult:
    """Outputs of a pipeline run.

    Attributes
    ----------
    adata : AnnData
        Integrated values with embeddings and predicted labels
    anchor_set : AnchorSet
        Anchors of all sample pairs
    stage_results : Dict[str, Any]
        Raw results per stage
    summaries : Dict[str, Dict[str, Any]]
        Summary per stage (as written to the manifest)
    paths : OutputPaths, optional
        Files written, when an output directory was given
    """

    adata: Any = None
    anchor_set: Any = None
    stage_results: Dict[str, Any] = field(default_factory=dict)
    summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    paths: Optional[OutputPaths] = None

    @property
    def n_cells(self) -> int:
        return 0 if self.adata is None else int(self.adata.n_obs)


def _n_cells(samples: Dict[str, Any]) -> int:
    return int(sum(a.n_obs for a in samples.values()))


class IntegrationPipeline:
    """Multi-sample integration and annotation pipeline.

    Parameters
    ----------
    config : PipelineConfig, optional
        Run configuration
    predictor : CellTypePredictor, optional
        Cell-type predictor (default: CellTypist with the configured
        references and model cache)
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> pipeline = IntegrationPipeline(PipelineConfig.from_yaml("config.yaml"))
    >>> result = pipeline.run("samples.csv", "results/")
    >>> result.adata.obs["predicted_celltype_l1"].value_counts()
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        predictor: Optional[CellTypePredictor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PipelineConfig.default()
        self.logger = logger or logging.getLogger(__name__)
        if predictor is None:
            ann = self.config.annotation
            predictor = CellTypistPredictor(ann.references, ModelCache(ann.cache_path))
        self.predictor = predictor

    def build_executor(
        self,
        samples_source: Any,
        model_name: Optional[str] = None,
        plog: Optional[PipelineLogger] = None,
    ) -> InMemoryExecutor:
        """Register every stage.

        Parameters
        ----------
        samples_source : PathLike or Dict[str, AnnData]
            Sample sheet path, or already loaded per-sample counts
        model_name : str, optional
            Reference for cell-type prediction
        plog : PipelineLogger, optional
            Run logger
        """
        cfg = self.config
        n_jobs = cfg.n_jobs
        loader = MatrixLoader(cfg.loader)
        doublets = DoubletFilter(cfg.doublets)
        qc = QualityFilter(cfg.qc)
        merger = SampleMerger()
        normalizer = Normalizer(cfg.normalization, n_jobs=n_jobs)
        selector = FeatureSelector(cfg.features)
        finder = IntegrationAnchorFinder(cfg.anchors, n_jobs=n_jobs)
        integrator = Integrator(cfg.integration)
        reducer = DimReducer(cfg.embedding)
        annotator = AnnotationEngine(self.predictor, cfg.annotation)
        model_name = model_name or cfg.annotation.model_name

        ex = InMemoryExecutor(logger=plog)

        def load(stage_results):
            if isinstance(samples_source, dict):
                return dict(samples_source)
            registry = loader.load_registry(samples_source)
            return loader.load_samples(registry)

        def remove_doublets(stage_results):
            return doublets.filter_samples(stage_results["load"])

        def quality_filter(stage_results):
            return qc.filter_samples(stage_results["doublets"][0])

        def merge(stage_results):
            return merger.merge(stage_results["qc"][0])

        def reassert(stage_results):
            return qc.reassert_merged(stage_results["merge"].adata)

        def normalize(stage_results):
            merged = stage_results["reassert"][0]
            return normalizer.normalize_samples(merger.split(merged))

        def select_features(stage_results):
            return selector.select(stage_results["normalize"])

        def find_anchors(stage_results):
            results = stage_results["normalize"]
            features = stage_results["features"].features
            data = selector.restrict(results, features)
            cell_ids = {sid: r.model.cell_ids for sid, r in results.items()}
            return finder.find_anchors(data, cell_ids), data, cell_ids

        def integrate(stage_results):
            anchor_set, data, cell_ids = stage_results["anchors"]
            return integrator.integrate(
                data,
                cell_ids,
                anchor_set,
                stage_results["features"].features,
                stage_results["reassert"][0],
            )

        def embed(stage_results):
            return reducer.reduce(stage_results["integrate"].adata)

        def annotate(stage_results):
            return annotator.annotate(stage_results["reassert"][0], model_name)

        def assemble(stage_results):
            labelled = stage_results["annotate"].apply(stage_results["embed"].adata)
            return labelled

        per_sample = lambda samples: {
            "n_samples": len(samples),
            "n_cells": _n_cells(samples),
        }
        ex.register_stage(
            "load", load, name="Load count matrices",
            params=config_to_dict(cfg.loader), summarize=per_sample,
        )
        ex.register_stage(
            "doublets", remove_doublets, depends_on=["load"], name="Remove doublets",
            params=config_to_dict(cfg.doublets),
            summarize=lambda r: {
                "n_cells": _n_cells(r[0]),
                "n_doublets": sum(d.n_doublets for d in r[1].values()),
                "degraded": [s for s, d in r[1].items() if d.degraded],
            },
        )
        ex.register_stage(
            "qc", quality_filter, depends_on=["doublets"], name="Quality filter",
            params=config_to_dict(cfg.qc),
            summarize=lambda r: {
                "n_cells": _n_cells(r[0]),
                "n_removed": sum(q.cells_removed for q in r[1].values()),
            },
        )
        ex.register_stage(
            "merge", merge, depends_on=["qc"], name="Merge samples",
            summarize=lambda r: r.to_dict(),
        )
        ex.register_stage(
            "reassert", reassert, depends_on=["merge"], name="Re-assert singlets and QC",
            params=config_to_dict(cfg.qc),
            summarize=lambda r: {"n_cells": int(r[0].n_obs), "n_removed": r[1].cells_removed},
        )
        ex.register_stage(
            "normalize", normalize, depends_on=["reassert"], name="Per-sample normalization",
            params={**config_to_dict(cfg.normalization), "n_jobs": n_jobs},
            summarize=lambda r: {sid: res.to_dict() for sid, res in r.items()},
        )
        ex.register_stage(
            "features", select_features, depends_on=["normalize"], name="Select shared features",
            params=config_to_dict(cfg.features), summarize=lambda r: r.to_dict(),
        )
        ex.register_stage(
            "anchors", find_anchors, depends_on=["normalize", "features"],
            name="Find integration anchors",
            params={**config_to_dict(cfg.anchors), "n_jobs": n_jobs},
            summarize=lambda r: r[0].to_dict(),
        )
        ex.register_stage(
            "integrate", integrate, depends_on=["anchors", "features", "reassert"],
            name="Integrate samples", params=config_to_dict(cfg.integration),
            summarize=lambda r: r.to_dict(),
        )
        ex.register_stage(
            "embed", embed, depends_on=["integrate"], name="PCA and UMAP",
            params=config_to_dict(cfg.embedding), summarize=lambda r: r.to_dict(),
        )
        ex.register_stage(
            "annotate", annotate, depends_on=["reassert"], name="Predict cell types",
            params={"model_name": model_name, "cache_dir": cfg.annotation.cache_dir},
            summarize=lambda r: r.to_dict(),
        )
        ex.register_stage(
            "assemble", assemble, depends_on=["embed", "annotate"], name="Assemble outputs",
            summarize=lambda r: {"n_cells": int(r.n_obs), "n_features": int(r.n_vars)},
        )
        return ex

    def run(
        self,
        samples: Any,
        out_dir: Optional[PathLike] = None,
        model_name: Optional[str] = None,
    ) -> RunResult:
        """Run the pipeline.

        Parameters
        ----------
        samples : PathLike or Dict[str, AnnData]
            Sample sheet CSV, or per-sample raw counts keyed by sample_id
        out_dir : PathLike, optional
            Output directory; nothing is written when None
        model_name : str, optional
            Reference for cell-type prediction (default: config)

        Returns
        -------
        RunResult
            Final dataset, anchors and per-stage summaries

        Raises
        ------
        StageError
            If any stage fails
        """
        paths = OutputPaths.for_dir(out_dir) if out_dir is not None else None
        plog = None
        if paths is not None:
            log_dir = Path(self.config.log_dir) if self.config.log_dir else paths.out_dir / "logs"
            plog = PipelineLogger(log_dir, log_level=self.config.log_level)
            plog.setup(console=False)

        started = datetime.now()
        executor = self.build_executor(samples, model_name=model_name, plog=plog)
        try:
            stage_results = executor.run()
        finally:
            if paths is not None:
                for stage_id in executor.completed_stages:
                    append_jsonl(
                        paths.events,
                        {
                            "stage": stage_id,
                            "duration_s": round(executor.durations[stage_id], 3),
                            "summary": executor.summaries[stage_id],
                        },
                    )
            if plog is not None:
                plog.close()

        result = RunResult(
            adata=stage_results["assemble"],
            anchor_set=stage_results["anchors"][0],
            stage_results=stage_results,
            summaries=dict(executor.summaries),
        )

        if paths is not None:
            result.paths = write_outputs(paths, result.adata, result.anchor_set.anchors)
            write_manifest(
                paths.manifest,
                {
                    "scintegrate_version": __version__,
                    "started": started.isoformat(timespec="seconds"),
                    "finished": datetime.now().isoformat(timespec="seconds"),
                    "samples": samples if not isinstance(samples, dict) else sorted(samples),
                    "model_name": model_name or self.config.annotation.model_name,
                    "config": self.config.to_dict(),
                    "stages": {
                        sid: {
                            "duration_s": round(executor.durations[sid], 3),
                            **executor.summaries[sid],
                        }
                        for sid in executor.completed_stages
                    },
                    "outputs": {
                        "h5ad": paths.h5ad,
                        "anchors": paths.anchors,
                    },
                },
            )

        self.logger.info(
            "Run complete: %d cells, %d features, %d anchors",
            result.n_cells,
            int(result.adata.n_vars),
            result.anchor_set.n_anchors,
        )
        return result
