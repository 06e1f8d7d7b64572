"""
Typed differential-testing result: one row per protein × contrast.

Column names and the AnnData `.varm` keys written by `to_anndata_varm` are
declared here so no consumer has to pick statistics by substring matching.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl

# -----------------------
# result columns
# -----------------------
COL_PROTEIN = "protein"
COL_CONTRAST = "contrast"
COL_LOGFC = "logFC"
COL_STATISTIC = "statistic"
COL_P = "p_value"
COL_P_MOD = "p_moderated"
COL_Q = "q_value"
COL_UNSTABLE = "unstable"
COL_METHOD = "method"
COL_MODEL = "model"

SCHEMA: Dict[str, pl.DataType] = {
    COL_PROTEIN: pl.Utf8,
    COL_CONTRAST: pl.Utf8,
    COL_LOGFC: pl.Float64,
    COL_STATISTIC: pl.Float64,
    COL_P: pl.Float64,
    COL_P_MOD: pl.Float64,
    COL_Q: pl.Float64,
    COL_UNSTABLE: pl.Boolean,
    COL_METHOD: pl.Utf8,
    COL_MODEL: pl.Utf8,
}

# -----------------------
# .varm / .uns keys
# -----------------------
VARM_LOG2FC = "log2fc"
VARM_T = "t"
VARM_P = "p"
VARM_P_MOD = "p_mod"
VARM_Q = "q"
VARM_UNSTABLE = "unstable"
UNS_CONTRAST_NAMES = "contrast_names"
UNS_TEST_METHOD = "test_method"


class TestResult:
    """Immutable wrapper around a polars frame with the `SCHEMA` columns."""

    __test__ = False  # not a pytest class

    def __init__(self, frame: pl.DataFrame):
        missing = [c for c in SCHEMA if c not in frame.columns]
        if missing:
            raise ValueError(f"TestResult frame is missing columns: {missing}")
        self._frame = frame.select([pl.col(c).cast(t) for c, t in SCHEMA.items()])

    @classmethod
    def from_matrices(
        cls,
        proteins: Sequence[str],
        contrasts: Sequence[str],
        *,
        logfc: np.ndarray,
        statistic: np.ndarray,
        p_value: np.ndarray,
        q_value: np.ndarray,
        method: str,
        p_moderated: Optional[np.ndarray] = None,
        unstable: Optional[np.ndarray] = None,
        model: Optional[np.ndarray] = None,
    ) -> "TestResult":
        """Build from (n_proteins × n_contrasts) arrays, contrast-major rows."""
        n, m = len(proteins), len(contrasts)
        shape = (n, m)

        def flat(a, fill=np.nan, dtype=np.float64):
            if a is None:
                return np.full(n * m, fill, dtype=dtype)
            a = np.asarray(a, dtype=dtype)
            if a.ndim == 1:
                a = np.repeat(a[:, None], m, axis=1)
            if a.shape != shape:
                raise ValueError(f"Expected shape {shape}, got {a.shape}")
            return a.T.reshape(-1)

        frame = pl.DataFrame(
            {
                COL_PROTEIN: np.tile(np.asarray(proteins, dtype=str), m),
                COL_CONTRAST: np.repeat(np.asarray(contrasts, dtype=str), n),
                COL_LOGFC: flat(logfc),
                COL_STATISTIC: flat(statistic),
                COL_P: flat(p_value),
                COL_P_MOD: flat(p_moderated),
                COL_Q: flat(q_value),
                COL_UNSTABLE: flat(unstable, fill=False, dtype=bool),
                COL_METHOD: [method] * (n * m),
                COL_MODEL: flat(model, fill=method, dtype=object).astype(str),
            }
        )
        return cls(frame)

    @property
    def frame(self) -> pl.DataFrame:
        return self._frame.clone()

    @property
    def contrasts(self) -> List[str]:
        return self._frame.get_column(COL_CONTRAST).unique(maintain_order=True).to_list()

    @property
    def proteins(self) -> List[str]:
        return self._frame.get_column(COL_PROTEIN).unique(maintain_order=True).to_list()

    @property
    def method(self) -> str:
        return self._frame.get_column(COL_METHOD)[0] if self._frame.height else ""

    def for_contrast(self, name: str) -> pl.DataFrame:
        if name not in self.contrasts:
            raise KeyError(f"Unknown contrast {name!r}; available: {self.contrasts}")
        return self._frame.filter(pl.col(COL_CONTRAST) == name)

    def significant(self, threshold: float = 0.05) -> pl.DataFrame:
        """Rows with q < threshold (NaN q-values are never significant)."""
        return self._frame.filter(pl.col(COL_Q).is_not_nan() & (pl.col(COL_Q) < threshold))

    def matrix(self, column: str) -> np.ndarray:
        """(n_proteins × n_contrasts) array of one statistic."""
        wide = self._frame.pivot(on=COL_CONTRAST, index=COL_PROTEIN, values=column)
        return wide.select(self.contrasts).to_numpy()

    def to_anndata_varm(self, adata):
        """Write the statistics into `adata.varm`, aligned to `adata.var_names`."""
        out = adata.copy()
        order = {p: i for i, p in enumerate(self.proteins)}
        idx = np.array([order.get(str(v), -1) for v in out.var_names])
        if (idx < 0).any():
            raise ValueError(f"{int((idx < 0).sum())} proteins of the AnnData are not in the result")

        for key, column in (
            (VARM_LOG2FC, COL_LOGFC),
            (VARM_T, COL_STATISTIC),
            (VARM_P, COL_P),
            (VARM_P_MOD, COL_P_MOD),
            (VARM_Q, COL_Q),
        ):
            out.varm[key] = self.matrix(column).astype(np.float64)[idx]
        out.varm[VARM_UNSTABLE] = self.matrix(COL_UNSTABLE).astype(bool)[idx]
        out.uns[UNS_CONTRAST_NAMES] = self.contrasts
        out.uns[UNS_TEST_METHOD] = self.method
        return out

    def __len__(self) -> int:
        return self._frame.height

    def __repr__(self) -> str:
        return f"TestResult(method={self.method!r}, proteins={len(self.proteins)}, contrasts={self.contrasts})"
