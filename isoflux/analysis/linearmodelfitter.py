import numpy as np
from isoflux.utils.utils import log_time, log_info


class LinearModelFitter:
    def __init__(self, expression: np.ndarray, design_matrix: np.ndarray):
        """
        Parameters:
        - expression: (n_samples x n_proteins) matrix (adata.X), NaN = missing
        - design_matrix: (n_samples x n_covariates) matrix from DesignMatrixBuilder
        """
        self.Y = np.asarray(expression, dtype=np.float64)
        self.X = np.asarray(design_matrix, dtype=np.float64)
        n_proteins, n_coef = self.Y.shape[1], self.X.shape[1]
        self.coefficients = np.full((n_proteins, n_coef), np.nan)
        self.residual_variance = np.full(n_proteins, np.nan)
        self.df_residual = np.zeros(n_proteins)
        self.xtx_inv = np.full((n_proteins, n_coef, n_coef), np.nan)  # per-protein (X^T X)^(-1)

    def _fit_pattern(self, rows: np.ndarray, cols: np.ndarray) -> None:
        X = self.X[rows]
        p = X.shape[1]
        if np.linalg.matrix_rank(X) < p:
            # a level lost all its samples: coefficients not estimable
            return

        xtx_inv = np.linalg.inv(X.T @ X)
        Y = self.Y[np.ix_(rows, cols)]
        betas = xtx_inv @ X.T @ Y                 # (n_covariates x n_cols)
        resid = Y - X @ betas
        df = X.shape[0] - p

        self.coefficients[cols] = betas.T
        self.xtx_inv[cols] = xtx_inv
        self.df_residual[cols] = df
        if df > 0:
            self.residual_variance[cols] = np.sum(resid**2, axis=0) / df

    @log_time("Linear Regressions")
    def fit(self):
        """
        OLS for all proteins. Proteins sharing the same pattern of observed
        samples are fitted together (vectorized); complete proteins form one block.
        """
        observed = np.isfinite(self.Y)                     # (n_samples x n_proteins)
        patterns, inverse = np.unique(observed.T, axis=0, return_inverse=True)
        inverse = np.asarray(inverse).ravel()
        for k, pattern in enumerate(patterns):
            self._fit_pattern(np.flatnonzero(pattern), np.flatnonzero(inverse == k))

        n_missing = int((~np.isfinite(self.coefficients[:, 0])).sum())
        if len(patterns) > 1:
            log_info(f"{len(patterns)} missingness patterns; {n_missing} proteins not estimable")
        return self

    def contrasts_fit(self, contrast_matrix: np.ndarray):
        """
        Project the fit onto contrasts (p x m).

        Returns:
        - coefficients: (n_proteins x n_contrasts)
        - stdev_unscaled: sqrt(c^T (X'X)^-1 c) per protein and contrast
        """
        C = np.asarray(contrast_matrix, dtype=np.float64)
        coefs = self.coefficients @ C
        with np.errstate(invalid="ignore"):
            stdu = np.sqrt(np.einsum("pj,ipq,qj->ij", C, self.xtx_inv, C))
        return coefs, stdu
