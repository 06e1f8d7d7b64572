"""Error taxonomy shared by normalizers, summarizers and test engines."""

from typing import Optional


class IsofluxError(Exception):
    """Base class for isoflux errors."""


class ValidationError(IsofluxError, ValueError):
    """Malformed input table (missing columns, duplicated PSMs, bad values)."""


class DesignError(IsofluxError, ValueError):
    """Sample absent from the Design, or unusable reference condition."""


class ScaleMismatchError(IsofluxError, ValueError):
    """Additive/multiplicative operator applied to data on the wrong unit scale."""


class ConvergenceError(IsofluxError, RuntimeError):
    """An iterative fit did not converge. `unit` names the offending Run/Protein."""

    def __init__(self, message: str, unit: Optional[str] = None):
        super().__init__(message if unit is None else f"{message} [{unit}]")
        self.unit = unit


class NumericalDegeneracyWarning(RuntimeWarning):
    """A statistic was left undefined because its denominator is ~0."""
