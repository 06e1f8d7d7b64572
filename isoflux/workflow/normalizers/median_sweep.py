import warnings
from typing import Optional

import numpy as np

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.utils.unit_scale import UnitScale
from isoflux.utils.utils import log_warning
from isoflux.workflow.normalizers.base import NormalizationStrategy, check_operator

VALID_AXES = ("rows", "columns", "both")


def _sweep(K: np.ndarray, axis: int, operator: str) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        med = np.nanmedian(K, axis=axis, keepdims=True)
    if operator == "subtract":
        return K - med
    with np.errstate(divide="ignore", invalid="ignore"):
        return K / med


def median_sweep(
    mat: np.ndarray,
    operator: str = "subtract",
    axis: str = "both",
    max_iter: int = 20,
    tol: float = 1e-8,
) -> tuple:
    """
    Double median centering of a (features × samples) matrix.

    "rows" and "columns" are single exact sweeps. "both" alternates row and
    column sweeps (median polish) until every row and column median is at the
    neutral element (0 or 1) within `tol`.

    Returns:
        (swept matrix, iterations, converged)
    """
    if axis not in VALID_AXES:
        raise ValueError(f"Invalid axis={axis!r}. Use one of {VALID_AXES}.")

    K = np.array(mat, dtype=np.float64, copy=True)
    if axis == "rows":
        return _sweep(K, 1, operator), 1, True
    if axis == "columns":
        return _sweep(K, 0, operator), 1, True

    neutral = 0.0 if operator == "subtract" else 1.0
    for it in range(1, max_iter + 1):
        K = _sweep(K, 1, operator)
        K = _sweep(K, 0, operator)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            r = np.nanmedian(K, axis=1)
            c = np.nanmedian(K, axis=0)
        dev = np.nanmax(np.abs(np.concatenate([r, c]) - neutral)) if np.isfinite(K).any() else 0.0
        if dev < tol:
            return K, it, True
    return K, max_iter, False


class MedianSweepNormalizer(NormalizationStrategy):
    """
    Subtract (log2) or divide (raw / ratio) row and/or column medians.

    The operator defaults to the one implied by the data scale; an explicit
    operator that contradicts the scale is rejected.
    """

    name = "median_sweep"

    def __init__(
        self,
        operator: Optional[str] = None,
        axis: str = "rows",
        scope: str = "run",
        max_iter: int = 20,
        tol: float = 1e-8,
        n_jobs: int = 1,
    ):
        super().__init__(scope=scope, n_jobs=n_jobs)
        if axis not in VALID_AXES:
            raise ValueError(f"Invalid axis={axis!r}. Use one of {VALID_AXES}.")
        self.operator = operator
        self.axis = axis
        self.max_iter = max_iter
        self.tol = tol

    def check_scale(self, scale: UnitScale) -> None:
        super().check_scale(scale)
        if self.operator is not None:
            check_operator(self.operator, scale)

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        self.check_scale(matrix.scale)
        operator = self.operator or matrix.scale.operator
        K, n_iter, converged = median_sweep(
            matrix.values, operator=operator, axis=self.axis, max_iter=self.max_iter, tol=self.tol
        )
        if not converged:
            log_warning(f"Median sweep on {matrix.label} not converged after {n_iter} iterations.")
        return matrix.with_values(K, sweep_iterations=n_iter)

    def __repr__(self) -> str:
        return f"MedianSweepNormalizer(operator={self.operator!r}, axis={self.axis!r}, scope={self.scope!r})"
