"""In-memory stage execution with dependency barriers."""

import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from ..errors import StageError
from .logger import PipelineLogger


class InMemoryExecutor:
    """Runs registered Python stage functions in dependency order.

    A stage starts only once every stage it depends on has produced its
    result. A failing stage is re-raised as StageError carrying the stage id,
    the sample involved (when known) and the stage's parameters, chained to
    the original exception.

    Parameters
    ----------
    logger : PipelineLogger, optional
        Logger instance

    Example
    -------
    >>> executor = InMemoryExecutor()
    >>> executor.register_stage("load", load_func, params={"min_genes": 200})
    >>> executor.register_stage("merge", merge_func, depends_on=["load"])
    >>> results = executor.run()
    """

    def __init__(self, logger: Optional[PipelineLogger] = None):
        self.logger = logger
        self.stages: Dict[str, Dict[str, Any]] = {}
        self.completed_stages: List[str] = []
        self.durations: Dict[str, float] = {}
        self.summaries: Dict[str, Dict[str, Any]] = {}

    def register_stage(
        self,
        stage_id: str,
        func: Callable,
        depends_on: Optional[List[str]] = None,
        name: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        summarize: Optional[Callable[[Any], Dict[str, Any]]] = None,
    ) -> None:
        """Register a stage function.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        func : Callable
            Called as func(**kwargs, stage_results=results)
        depends_on : List[str], optional
            Stage IDs whose results this stage needs
        name : str, optional
            Human-readable stage name
        params : Dict[str, Any], optional
            Parameters in effect, reported on failure
        summarize : Callable, optional
            Maps the stage result to a summary dict for logs and manifest
        """
        if stage_id in self.stages:
            raise ValueError(f"Stage '{stage_id}' is already registered")
        self.stages[stage_id] = {
            "func": func,
            "depends_on": list(depends_on or []),
            "name": name or stage_id,
            "params": dict(params or {}),
            "summarize": summarize,
        }

    def _get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort."""
        for stage_id, stage in self.stages.items():
            unknown = [d for d in stage["depends_on"] if d not in self.stages]
            if unknown:
                raise ValueError(f"Stage '{stage_id}' depends on unknown stages {unknown}")

        in_degree = {sid: len(stage["depends_on"]) for sid, stage in self.stages.items()}
        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)
            for other_id, other_stage in self.stages.items():
                if stage_id in other_stage["depends_on"]:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ValueError("Circular dependency detected")
        return order

    def run(self, **kwargs) -> Dict[str, Any]:
        """Execute all registered stages in order.

        Parameters
        ----------
        **kwargs
            Arguments passed to each stage function

        Returns
        -------
        Dict[str, Any]
            Map of stage_id to stage result

        Raises
        ------
        StageError
            If any stage fails
        """
        order = self._get_execution_order()
        results: Dict[str, Any] = {}

        for stage_id in order:
            stage = self.stages[stage_id]
            missing = [d for d in stage["depends_on"] if d not in results]
            if missing:
                raise RuntimeError(f"Stage '{stage_id}' started before {missing} completed")

            if self.logger:
                self.logger.log_stage_start(stage_id, stage["name"])

            start_time = time.time()
            try:
                result = stage["func"](**kwargs, stage_results=results)
            except Exception as e:
                error = StageError(stage_id, e, params=stage["params"])
                if self.logger:
                    self.logger.log_stage_error(stage_id, error)
                raise error from e

            results[stage_id] = result
            self.completed_stages.append(stage_id)
            self.durations[stage_id] = time.time() - start_time
            summary = stage["summarize"](result) if stage["summarize"] else {}
            self.summaries[stage_id] = summary
            if self.logger:
                self.logger.log_stage_complete(stage_id, self.durations[stage_id], summary)

        return results
