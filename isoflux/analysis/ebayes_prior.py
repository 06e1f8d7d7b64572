import numpy as np
from scipy.special import polygamma, digamma


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    # If df is scalar, broadcast it to shape of s2
    s2 = np.asarray(s2, dtype=float)
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df)
    df = np.asarray(df, dtype=float)

    mask = np.isfinite(s2) & (s2 >= 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask]


def trigamma_inverse(y, tol=1e-8):
    # Initial guess
    if y > 1e7:
        x = 1.0 / np.sqrt(y)
    elif y < 1e-6:
        x = 1.0 / y
    else:
        x = 0.5 + 1.0 / y

    # Newton-Raphson on 1/trigamma, as in limma
    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if -delta / x < tol:
            return float(x)
    return float(x)


def fit_fdist(s2: np.ndarray, df1) -> tuple[float, float]:
    """
    Moment estimates of the scaled-F prior on residual variances.

    Returns (s20, d0): prior variance and prior degrees of freedom.
    d0 = inf when the observed spread of log-variances is fully explained
    by sampling error (no protein-specific variance).
    """
    x, d = squeeze_var_input_filter(s2, df1)
    if x.size < 2:
        return np.nan, np.nan

    # Avoid zeros like limma does
    m = np.median(x)
    if m == 0:
        m = 1.0
    x = np.maximum(x, 1e-5 * m)
    z = np.log(x)

    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1)

    evar_adj = evar - np.mean(polygamma(1, d / 2.0))

    if evar_adj > 0:
        d0 = 2 * trigamma_inverse(evar_adj)
        s20 = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    else:
        d0 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(d0)
