from __future__ import annotations

import warnings

import numpy as np
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests

from isoflux.utils.errors import NumericalDegeneracyWarning
from isoflux.utils.utils import log_warning


def raw_stats_from_fit(
    *,
    coefs: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Ordinary (unmoderated) statistics:
      se = stdu * sigma[:, None]
      t  = coefs / se
      p  = 2 * t.sf(|t|, df=df_res[:, None])
    Entries with zero/undefined SE or zero residual df are NaN.
    """
    se = stdu * sigma[:, None]
    with np.errstate(divide="ignore", invalid="ignore"):
        t = coefs / se
    t[~np.isfinite(se) | (se == 0)] = np.nan
    df = np.asarray(df_res, dtype=float)[:, None]
    t[np.broadcast_to(df <= 0, t.shape)] = np.nan
    with np.errstate(invalid="ignore"):
        p = 2 * t_dist.sf(np.abs(t), df=np.where(df > 0, df, np.nan))
    return se, t, p


def bh_adjust(p: np.ndarray) -> np.ndarray:
    """
    Benjamini–Hochberg q-values over one vector of p-values.
    Missing p-values stay missing and are not counted in the number of tests.
    """
    p = np.asarray(p, dtype=float)
    q = np.full_like(p, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        q[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return q


def bh_qvalues(p: np.ndarray) -> np.ndarray:
    """Benjamini–Hochberg q-values, applied per contrast/column."""
    if p.ndim != 2:
        raise ValueError(f"Expected 2D p-value array (n_features x n_contrasts), got shape {p.shape}")
    return np.column_stack([bh_adjust(p[:, j]) for j in range(p.shape[1])]) if p.shape[1] else p.copy()


def ratio_logfc(
    reference_mean: np.ndarray,
    contrast_coef: np.ndarray,
    min_reference: float = 1e-8,
    feature_ids=None,
    label: str = "",
) -> tuple[np.ndarray, np.ndarray]:
    """
    log2 fold change from a raw-scale (intensity or ratio) fit:
        logFC = log2((m + r_c) / m)
    with m the reference-level fitted mean and r_c the contrast coefficient.

    Returns (logFC, unstable). Where m <= min_reference or m + r_c <= 0 the
    logFC is undefined: it is set to NaN and flagged, never returned as a number.
    """
    m = np.asarray(reference_mean, dtype=float)
    r = np.asarray(contrast_coef, dtype=float)
    if r.ndim == 2 and m.ndim == 1:
        m = m[:, None]
    m, r = np.broadcast_arrays(m, r)

    finite = np.isfinite(m) & np.isfinite(r)
    with np.errstate(invalid="ignore"):
        unstable = finite & ((m <= min_reference) | ((m + r) <= 0))
    logfc = np.full(m.shape, np.nan)
    ok = finite & ~unstable
    logfc[ok] = np.log2((m[ok] + r[ok]) / m[ok])

    if unstable.any():
        rows = np.unique(np.nonzero(unstable)[0])
        ids = [feature_ids[i] for i in rows] if feature_ids is not None else rows.tolist()
        msg = (f"{label}: logFC undefined for {len(rows)} feature(s) with reference mean <= "
               f"{min_reference:g} or non-positive contrast mean: {ids[:10]}")
        log_warning(msg)
        warnings.warn(msg, NumericalDegeneracyWarning, stacklevel=2)
    return logfc, unstable
