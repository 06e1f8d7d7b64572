from typing import List, Tuple

import numpy as np

from isoflux.utils.semantics import CONDITION


class ContrastBuilder:
    def __init__(self, design_info, baseline=None, group_column: str = CONDITION):
        """
        Parameters:
        - design_info: patsy DesignInfo object from the reference-coded design matrix
        - baseline: reference level; defaults to the first categorical level
        """
        self.design_info = design_info
        self.column_names = design_info.column_names
        self.factor_infos = design_info.factor_infos
        self.group_column = group_column
        self.levels = self._extract_levels()
        self.baseline = baseline or self.levels[0]
        if self.baseline != self.levels[0]:
            raise ValueError(
                f"Baseline {self.baseline!r} must be the intercept-coded first level {self.levels[0]!r}."
            )

    def _extract_levels(self):
        # Support only one categorical factor for now
        for factor, info in self.factor_infos.items():
            if info.type == "categorical":
                return [str(c) for c in info.categories]
        raise ValueError("No categorical factor found in design matrix.")

    def _column(self, level: str) -> int:
        name = f"C({self.group_column})[T.{level}]"
        if name not in self.column_names:
            raise ValueError(f"Level {level!r} not found in design columns {self.column_names}")
        return self.column_names.index(name)

    def make_reference_contrasts(self) -> Tuple[np.ndarray, List[str]]:
        """
        One contrast per non-baseline level against the baseline. Under
        treatment coding each contrast selects that level's coefficient.

        Returns:
        - contrast_matrix: np.ndarray (p x m)
        - contrast_names: list of str (e.g., "B_vs_A")
        """
        others = [lvl for lvl in self.levels if lvl != self.baseline]
        if not others:
            raise ValueError(f"Need ≥2 conditions for contrasts; found {self.levels}")
        C = np.zeros((len(self.column_names), len(others)))
        for j, lvl in enumerate(others):
            C[self._column(lvl), j] = 1.0
        return C, [f"{lvl}_vs_{self.baseline}" for lvl in others]
