"""Model-based normalization: subject-specific residuals of a linear mixed model."""

import warnings

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.errors import ConvergenceError
from isoflux.utils.semantics import CHANNEL, PEPTIDE, PROTEIN, RUN, SAMPLE, SIGNAL
from isoflux.utils.unit_scale import UnitScale
from isoflux.utils.utils import log_info, log_time
from isoflux.workflow.normalizers.base import NormalizationStrategy

FIXED_FORMULA = f"{SIGNAL} ~ C({RUN}) + C({RUN}):C({CHANNEL})"


class MixedModelResidualNormalizer(NormalizationStrategy):
    """
    Fit, by REML on the whole PSM-level long table,

        grouping="protein":  SIGNAL ~ Run + Run:Channel + (1|Protein) + (1|Run:Peptide)
        grouping="peptide":  SIGNAL ~ Run + Run:Channel + (1|Peptide) + (1|Run:Peptide)

    and return observed - fixed prediction - random-effect BLUPs.
    A non-converged fit raises ConvergenceError; it is never replaced by zeros.

    The model pools every Run, so this strategy only works on the long table
    through `apply()`. It has no per-block `transform()`: a single Run matrix
    cannot identify the Run fixed effect.
    """

    name = "mixed_model"
    accepted_scales = (UnitScale.LOG2,)

    def __init__(self, grouping: str = "protein", method: str = "lbfgs", max_iter: int = 200):
        super().__init__(scope="global", n_jobs=1)
        if grouping not in ("protein", "peptide"):
            raise ValueError(f"Invalid grouping={grouping!r}. Use 'protein' or 'peptide'.")
        self.grouping = grouping
        self.method = method
        self.max_iter = max_iter

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        raise TypeError("MixedModelResidualNormalizer fits the pooled long table; call apply(table).")

    def _model_frame(self, table: QuantTable) -> pd.DataFrame:
        df = table.df.drop_nulls(SIGNAL).to_pandas()
        df["RUN_PEPTIDE"] = df[RUN].astype(str) + "|" + df[PEPTIDE].astype(str)
        return df.reset_index(drop=True)

    def fit(self, table: QuantTable):
        """REML fit on the observed rows. Returns (model frame, statsmodels result)."""
        self.check_scale(table.scale)
        df = self._model_frame(table)
        group_col = PROTEIN if self.grouping == "protein" else PEPTIDE
        log_info(f"REML fit: {FIXED_FORMULA}, groups={group_col}, rows={len(df)}")

        model = smf.mixedlm(
            FIXED_FORMULA,
            df,
            groups=df[group_col],
            re_formula="1",
            vc_formula={"run_peptide": "0 + C(RUN_PEPTIDE)"},
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            warnings.simplefilter("ignore", RuntimeWarning)
            try:
                result = model.fit(reml=True, method=self.method, maxiter=self.max_iter)
            except (np.linalg.LinAlgError, ValueError) as exc:
                raise ConvergenceError(f"Mixed model fit failed: {exc}", unit=f"grouping={self.grouping}") from exc

        if not result.converged:
            raise ConvergenceError("Mixed model REML fit did not converge", unit=f"grouping={self.grouping}")
        return df, result

    @log_time("Mixed-model residual normalization")
    def apply(self, table: QuantTable) -> QuantTable:
        df, result = self.fit(table)

        # fittedvalues include the predicted random effects
        residuals = df[SIGNAL].to_numpy(dtype=np.float64) - np.asarray(result.fittedvalues, dtype=np.float64)
        log_info(f"Mixed model converged; residual sd={np.std(residuals):.3g}")

        key = table.feature_key
        resid_frame = pd.DataFrame({key: df[key].astype(str), SAMPLE: df[SAMPLE].astype(str), "RESID": residuals})
        mats = []
        for run_matrix in table.run_matrices():
            sub = resid_frame[resid_frame[SAMPLE].isin(run_matrix.samples)]
            wide = sub.pivot(index=key, columns=SAMPLE, values="RESID")
            wide = wide.reindex(index=run_matrix.features, columns=run_matrix.samples)
            mats.append(run_matrix.with_values(wide.to_numpy(dtype=np.float64)))
        return table.replace_from_matrices(mats)

    def __repr__(self) -> str:
        return f"MixedModelResidualNormalizer(grouping={self.grouping!r})"
