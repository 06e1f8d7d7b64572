import numpy as np
from scipy.stats import t as t_dist
from isoflux.utils.utils import log_info, log_time
from isoflux.analysis.ebayes_prior import fit_fdist, squeeze_var_input_filter
from isoflux.analysis.stats_ops import bh_qvalues


class EbayesModerator:
    def __init__(self, sigma2, df_residual, method="limma"):
        """
        Parameters:
        - sigma2: (n_proteins,) vector of residual variances (NaN where df = 0)
        - df_residual: scalar or array of degrees of freedom (per protein)
        """
        self.sigma2 = np.asarray(sigma2, dtype=float)
        df = np.asarray(df_residual, dtype=float)
        self.df_residual = np.broadcast_to(df, self.sigma2.shape).copy()
        # proteins without a variance estimate carry no information
        self.df_residual[~np.isfinite(self.sigma2)] = 0.0
        self.d0 = None
        self.s20 = None
        self.method = method

    def fit(self):
        if self.method == "limma":
            return self._fit_limma_like()
        elif self.method == "moments":
            return self._fit_moments()
        else:
            raise ValueError(f"Unknown method: {self.method}")

    def _fit_limma_like(self):
        s20, d0 = fit_fdist(self.sigma2, self.df_residual)
        self.s20 = s20
        self.d0 = d0
        log_info(f"eBayes prior: s0²={s20:.4g}, d0={d0:.4g}")
        return d0, s20

    def _fit_moments(self):
        """
        Cruder prior: log-variance mean and spread, ignoring the
        sampling variance of each protein's estimate.
        """
        s2, _ = squeeze_var_input_filter(self.sigma2, self.df_residual)
        if s2.size < 2:
            self.d0, self.s20 = np.nan, np.nan
            return self.d0, self.s20

        lns2 = np.log(np.clip(s2, 1e-8, None))
        mean_ln = np.mean(lns2)
        var_ln = max(np.var(lns2, ddof=1), 1e-6)

        d0 = max(2 * ((1 / var_ln) - 1), 1.0)
        s20 = np.exp(mean_ln - np.log(d0 / max(d0 - 2, 1e-6)))

        self.d0 = d0
        self.s20 = s20
        return d0, s20

    def moderate(self):
        """
        Returns:
        - moderated variances
        - total degrees of freedom (d + d0), capped at the pooled residual df
        """
        if self.d0 is None:
            self.fit()
        d = self.df_residual
        s2 = np.where(np.isfinite(self.sigma2), self.sigma2, 0.0)
        df_pooled = float(np.sum(d))

        if not np.isfinite(self.s20):
            # no prior could be estimated: ordinary variances
            s2_moderated = self.sigma2.copy()
            df_total = d.copy()
        elif np.isinf(self.d0):
            s2_moderated = np.full_like(s2, self.s20)
            df_total = np.full_like(d, df_pooled)
        else:
            s2_moderated = (self.d0 * self.s20 + d * s2) / (self.d0 + d)
            df_total = np.minimum(self.d0 + d, df_pooled)

        self.df_total = df_total
        return s2_moderated, df_total

    @log_time("EBayes Computation")
    def apply_to_contrasts(self, log2fc, stdev_unscaled):
        """
        Recalculate t, p, q using moderated variances

        Parameters:
        - log2fc: (n_proteins x n_contrasts) contrast coefficients
        - stdev_unscaled: (n_proteins x n_contrasts) sqrt(c^T (X'X)^-1 c)

        Returns:
        - dict: t, p, q (each of shape n_proteins x n_contrasts)
        """
        s2_moderated, df_total = self.moderate()
        se = stdev_unscaled * np.sqrt(s2_moderated)[:, None]

        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = log2fc / se
        t_stat[~np.isfinite(se) | (se == 0)] = np.nan

        df = np.where(df_total > 0, df_total, np.nan)[:, None]
        with np.errstate(invalid="ignore"):
            p_val = 2 * t_dist.sf(np.abs(t_stat), df=df)

        return {
            "s2_post": s2_moderated,
            "df_total": df_total,
            "t_ebayes": t_stat,
            "p_ebayes": p_val,
            "q_ebayes": bh_qvalues(p_val),
        }
