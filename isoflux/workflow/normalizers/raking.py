"""Iterative proportional fitting ("raking", CONSTANd) of raw reporter intensities."""

import warnings
from typing import Tuple

import numpy as np

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.utils.errors import ConvergenceError, ValidationError
from isoflux.utils.unit_scale import UnitScale
from isoflux.workflow.normalizers.base import NormalizationStrategy


def _margin_deviation(K: np.ndarray, row_ok: np.ndarray, col_ok: np.ndarray) -> float:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        row_means = np.nanmean(K, axis=1)
        col_means = np.nanmean(K, axis=0)
    dev_r = np.max(np.abs(row_means[row_ok] - 1.0)) if row_ok.any() else 0.0
    dev_c = np.max(np.abs(col_means[col_ok] - 1.0)) if col_ok.any() else 0.0
    return float(max(dev_r, dev_c))


def rake(
    mat: np.ndarray,
    tol: float = 1e-5,
    max_iter: int = 50,
    label: str = "",
) -> Tuple[np.ndarray, int, float]:
    """
    Alternately rescale rows then columns to unit mean.

    Parameters:
        mat: (features × samples) strictly positive matrix, NaN = missing.
        tol: convergence threshold on max |margin mean - 1|.
        max_iter: maximum number of row+column sweeps.
        label: Run identifier used in the error message.

    Returns:
        (normalized matrix, iterations used, final deviation)

    Raises:
        ConvergenceError if the margins are not within `tol` after `max_iter` sweeps.
    """
    K = np.array(mat, dtype=np.float64, copy=True)
    observed = np.isfinite(K)
    if np.any(K[observed] <= 0):
        raise ValidationError(f"Raking requires strictly positive values [{label}].")

    row_ok = observed.any(axis=1)
    col_ok = observed.any(axis=0)

    deviation = _margin_deviation(K, row_ok, col_ok)
    if deviation < tol:
        return K, 0, deviation

    for it in range(1, max_iter + 1):
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            row_means = np.nanmean(K, axis=1)
            K[row_ok] = K[row_ok] / row_means[row_ok, None]
            col_means = np.nanmean(K, axis=0)
            K[:, col_ok] = K[:, col_ok] / col_means[None, col_ok]

        deviation = _margin_deviation(K, row_ok, col_ok)
        if deviation < tol:
            return K, it, deviation

    raise ConvergenceError(
        f"Raking did not converge after {max_iter} iterations (max deviation {deviation:.3g} > tol {tol:g})",
        unit=label or None,
    )


class RakingNormalizer(NormalizationStrategy):
    """Row/column means driven to 1 per Run; raw intensities or ratios only."""

    name = "raking"
    accepted_scales = (UnitScale.INTENSITY, UnitScale.RATIO)

    def __init__(self, tol: float = 1e-5, max_iter: int = 50, n_jobs: int = 1):
        super().__init__(scope="run", n_jobs=n_jobs)
        self.tol = tol
        self.max_iter = max_iter

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        self.check_scale(matrix.scale)
        K, n_iter, deviation = rake(matrix.values, tol=self.tol, max_iter=self.max_iter, label=matrix.label)
        return matrix.with_values(K, raking_iterations=n_iter, raking_deviation=deviation)
