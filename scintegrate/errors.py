"""Exception taxonomy for the integration pipeline.

Every error carries the sample it concerns (when one is known) so that the
executor can report the failing stage, sample, and parameters together.
"""

from typing import Optional


class ScIntegrateError(Exception):
    """Base class for all pipeline errors.

    Parameters
    ----------
    message : str
        Human-readable description
    sample_id : str, optional
        Sample the error concerns
    """

    def __init__(self, message: str, sample_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sample_id = sample_id

    def __str__(self) -> str:
        if self.sample_id is not None:
            return f"[sample={self.sample_id}] {self.message}"
        return self.message


class MissingDataError(ScIntegrateError):
    """Raised when expected input files are absent or malformed."""

    pass


class IdentifierCollisionError(ScIntegrateError):
    """Raised when cell identifiers are not unique after merging."""

    pass


class InsufficientDataError(ScIntegrateError):
    """Raised when a stage has too few cells or genes to fit its model."""

    pass


class ModelUnavailableError(ScIntegrateError):
    """Raised when a cell-type model is missing or incompatible."""

    pass


class DegenerateAnchorError(ScIntegrateError):
    """Raised when a sample pair yields no integration anchors.

    Recovered locally by the anchor finder (pass-through for the pair).
    """

    def __init__(self, sample_a: str, sample_b: str, reason: str = "no anchors"):
        super().__init__(f"pair ({sample_a}, {sample_b}): {reason}")
        self.sample_a = sample_a
        self.sample_b = sample_b


class QuantificationError(ScIntegrateError):
    """Raised when the external quantification tool fails."""

    pass


class StageError(ScIntegrateError):
    """Raised by the executor when a pipeline stage fails.

    Attributes
    ----------
    stage_id : str
        Failing stage
    params : dict
        Stage parameters in effect
    """

    def __init__(
        self,
        stage_id: str,
        cause: BaseException,
        params: Optional[dict] = None,
        sample_id: Optional[str] = None,
    ):
        self.stage_id = stage_id
        self.cause = cause
        self.params = dict(params or {})
        if sample_id is None:
            sample_id = getattr(cause, "sample_id", None)
        param_text = ", ".join(f"{k}={v}" for k, v in sorted(self.params.items()))
        message = f"stage '{stage_id}' failed: {type(cause).__name__}: {cause}"
        if param_text:
            message += f" (params: {param_text})"
        super().__init__(message, sample_id=sample_id)
