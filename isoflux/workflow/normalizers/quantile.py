from typing import Optional, Union

import numpy as np

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.semantics import SIGNAL
from isoflux.utils.utils import log_info
from isoflux.workflow.normalizers.base import NormalizationStrategy


def _reference_distribution(mat: np.ndarray, n_ref: int) -> np.ndarray:
    """Mean across columns of each column's quantile function on a common grid."""
    grid = np.linspace(0.0, 1.0, n_ref)
    curves = []
    for j in range(mat.shape[1]):
        obs = np.sort(mat[np.isfinite(mat[:, j]), j])
        if obs.size == 0:
            continue
        if obs.size == 1:
            curves.append(np.full(n_ref, obs[0]))
        else:
            curves.append(np.interp(grid, np.linspace(0.0, 1.0, obs.size), obs))
    return np.mean(curves, axis=0)


def quantile_normalize(mat: np.ndarray) -> np.ndarray:
    """
    Quantile-normalize the columns of a (features × samples) matrix.

    Each observed value is replaced by the across-column average quantile of
    the same rank. Tied values all receive the mean of the quantiles their
    ranks span. Missing values stay missing; columns with fewer observations
    are mapped onto the reference by relative rank.
    """
    X = np.asarray(mat, dtype=np.float64)
    out = np.full_like(X, np.nan)
    n_obs = np.isfinite(X).sum(axis=0)
    if n_obs.max(initial=0) == 0:
        return out

    n_ref = int(n_obs.max())
    ref = _reference_distribution(X, n_ref)
    grid = np.linspace(0.0, 1.0, n_ref)

    for j in range(X.shape[1]):
        mask = np.isfinite(X[:, j])
        n = int(mask.sum())
        if n == 0:
            continue
        vals = X[mask, j]
        order = np.argsort(vals, kind="stable")
        pos = np.linspace(0.0, 1.0, n) if n > 1 else np.array([0.5])
        mapped = np.interp(pos, grid, ref)

        # tie groups in sorted order share the mean of their quantiles
        sorted_vals = vals[order]
        group = np.concatenate([[0], np.cumsum(np.diff(sorted_vals) != 0)])
        group_mean = np.bincount(group, weights=mapped) / np.bincount(group)

        col = np.empty(n)
        col[order] = group_mean[group]
        out[mask, j] = col
    return out


class QuantileNormalizer(NormalizationStrategy):
    """
    Quantile normalization within each Run (scope="run") or across the whole
    protein-level matrix (scope="global").

    `grand_average` rescales each block so that the mean of all its entries
    equals the given value; "auto" uses the grand mean of the input table.
    Rescaling is additive for log2 data and multiplicative otherwise.
    """

    name = "quantile"

    def __init__(
        self,
        scope: str = "run",
        grand_average: Optional[Union[float, str]] = None,
        n_jobs: int = 1,
    ):
        super().__init__(scope=scope, n_jobs=n_jobs)
        if isinstance(grand_average, str) and grand_average != "auto":
            raise ValueError(f"grand_average must be a number, 'auto' or None; got {grand_average!r}")
        self.grand_average = grand_average

    def _resolve_target(self, table: Optional[QuantTable]) -> Optional[float]:
        if self.grand_average is None:
            return None
        if self.grand_average != "auto":
            return float(self.grand_average)
        if table is None:
            return None
        signal = table.df.get_column(SIGNAL).drop_nulls().to_numpy()
        return float(np.mean(signal)) if signal.size else None

    def _normalize_block(self, matrix: NormalizedMatrix, target: Optional[float]) -> NormalizedMatrix:
        K = quantile_normalize(matrix.values)
        if target is not None and np.isfinite(K).any():
            current = float(np.nanmean(K))
            if matrix.scale.is_additive:
                K = K + (target - current)
            else:
                K = K * (target / current)
        return matrix.with_values(K, grand_average=target)

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        return self._normalize_block(matrix, self._resolve_target(None))

    def apply(self, table: QuantTable) -> QuantTable:
        self.check_scale(table.scale)
        target = self._resolve_target(table)
        if target is not None:
            log_info(f"quantile: grand average rescale target={target:.4g}")
        blocks = self._blocks(table)
        out = [self._normalize_block(b, target) for b in blocks]
        return table.replace_from_matrices(out)

    def __repr__(self) -> str:
        return f"QuantileNormalizer(scope={self.scope!r}, grand_average={self.grand_average!r})"
