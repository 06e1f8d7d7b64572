import pandas as pd
import numpy as np
import patsy
from typing import Optional, Dict, Any, List

from isoflux.utils.errors import DesignError
from isoflux.utils.semantics import CONDITION


class DesignMatrixBuilder:
    """Reference-coded patsy design (`1 + C(CONDITION)`) over the samples of a test."""

    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        levels: List[str],
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata.copy()
        self.levels = list(levels)
        self.config = config or {}
        self.formula: Optional[str] = None
        self.design_matrix: Optional[np.ndarray] = None
        self.design_info: Optional[patsy.DesignInfo] = None

    def build(self):
        mode = self.config.get("mode", "default")
        if mode == "default":
            self._build_default_design()
        else:
            raise ValueError(f"Unknown design mode: {mode}")

        return self.design_matrix, self.design_info

    def _categorical(self) -> str:
        group_col = self.config.get("group_column", CONDITION)
        if group_col not in self.meta.columns:
            raise DesignError(f"{group_col} not found in sample metadata.")
        unknown = set(self.meta[group_col].astype(str)) - set(self.levels)
        if unknown:
            raise DesignError(f"Conditions {sorted(unknown)} are not design levels {self.levels}.")
        # first level is the reference (patsy Treatment baseline)
        self.meta[group_col] = pd.Categorical(self.meta[group_col].astype(str), categories=self.levels)
        return group_col

    def _build_default_design(self):
        group_col = self._categorical()
        self.formula = f"1 + C({group_col})"
        self._dmatrix()

    def _dmatrix(self):
        self.design_df = patsy.dmatrix(self.formula, self.meta, return_type="dataframe")
        self.design_matrix = self.design_df.to_numpy()
        self.design_info = self.design_df.design_info
