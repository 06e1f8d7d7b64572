import warnings

import numpy as np

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.utils.unit_scale import UnitScale
from isoflux.workflow.normalizers.base import NormalizationStrategy


class MeanSweepNormalizer(NormalizationStrategy):
    """
    ANOVA-style sequential mean subtraction on log2 data, per Run:
      1) Run effect        (grand mean of the Run)
      2) Run:Channel effect (column means)
      3) feature effect    (row means; optional)
    """

    name = "mean_sweep"
    accepted_scales = (UnitScale.LOG2,)

    def __init__(self, remove_feature_effect: bool = False, n_jobs: int = 1):
        super().__init__(scope="run", n_jobs=n_jobs)
        self.remove_feature_effect = remove_feature_effect

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        self.check_scale(matrix.scale)
        K = np.array(matrix.values, dtype=np.float64, copy=True)
        if not np.isfinite(K).any():
            return matrix

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            run_effect = np.nanmean(K)
            K = K - run_effect
            channel_effect = np.nanmean(K, axis=0, keepdims=True)
            K = K - channel_effect
            if self.remove_feature_effect:
                K = K - np.nanmean(K, axis=1, keepdims=True)

        return matrix.with_values(K, run_effect=float(run_effect))

    def __repr__(self) -> str:
        return f"MeanSweepNormalizer(remove_feature_effect={self.remove_feature_effect})"
