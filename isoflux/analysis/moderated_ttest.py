import numpy as np
import pandas as pd

from isoflux.analysis.ebayes_moderator import EbayesModerator
from isoflux.analysis.engine import DifferentialTestEngine
from isoflux.analysis.linearmodelfitter import LinearModelFitter
from isoflux.analysis.stats_ops import raw_stats_from_fit, ratio_logfc
from isoflux.analysis.testresult import TestResult
from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.design.contrastbuilder import ContrastBuilder
from isoflux.design.designmatrixbuilder import DesignMatrixBuilder
from isoflux.utils.errors import DesignError
from isoflux.utils.semantics import CONDITION
from isoflux.utils.utils import log_info, log_time


class ModeratedTTest(DifferentialTestEngine):
    """
    limma-style moderated t-test on a reference-coded linear model.

    - `p_value`: ordinary t-test p from each protein's own residual variance
    - `p_moderated`: p from the eBayes-shrunk variance
    - `q_value`: BH within each contrast of `p_moderated`

    On log2 data logFC is the contrast coefficient. On raw scales (intensity,
    ratio) it is log2((m + r_c) / m), m being the reference-level mean; proteins
    where this is undefined are flagged `unstable` with a NaN logFC.
    """

    name = "moderated_t"

    def __init__(self, ebayes_method: str = "limma", min_reference: float = 1e-8):
        self.ebayes_method = ebayes_method
        self.min_reference = min_reference

    @log_time("Moderated t-test")
    def test(self, table: QuantTable, design: Design) -> TestResult:
        Y, proteins, conditions = self._protein_matrix(table, design)

        meta = pd.DataFrame({CONDITION: conditions})
        X, design_info = DesignMatrixBuilder(meta, design.levels).build()
        C, contrast_names = ContrastBuilder(design_info, baseline=design.reference).make_reference_contrasts()

        fitter = LinearModelFitter(Y, X).fit()
        if not np.any(fitter.df_residual > 0):
            raise DesignError(
                f"No residual degrees of freedom: {X.shape[0]} samples for {X.shape[1]} coefficients."
            )
        coefs, stdu = fitter.contrasts_fit(C)

        sigma = np.sqrt(fitter.residual_variance)
        _, _, p_raw = raw_stats_from_fit(coefs=coefs, stdu=stdu, sigma=sigma, df_res=fitter.df_residual)

        moderator = EbayesModerator(fitter.residual_variance, fitter.df_residual, method=self.ebayes_method)
        moderator.fit()
        ebayes = moderator.apply_to_contrasts(coefs, stdu)

        if table.scale.is_additive:
            logfc = coefs
            unstable = np.zeros(coefs.shape, dtype=bool)
        else:
            # intercept = reference-level fitted mean
            logfc, unstable = ratio_logfc(
                fitter.coefficients[:, 0], coefs,
                min_reference=self.min_reference,
                feature_ids=proteins,
                label=f"moderated_t ({table.scale.value})",
            )

        log_info(f"{len(proteins)} proteins × {len(contrast_names)} contrasts; d0={moderator.d0:.3g}")
        return TestResult.from_matrices(
            proteins,
            contrast_names,
            logfc=logfc,
            statistic=ebayes["t_ebayes"],
            p_value=p_raw,
            p_moderated=ebayes["p_ebayes"],
            q_value=ebayes["q_ebayes"],
            unstable=unstable,
            method=self.name,
        )

    def __repr__(self) -> str:
        return f"ModeratedTTest(ebayes_method={self.ebayes_method!r})"
