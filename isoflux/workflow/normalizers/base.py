from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

from isoflux.dataset.matrices import NormalizedMatrix
from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.errors import ScaleMismatchError
from isoflux.utils.unit_scale import UnitScale
from isoflux.utils.utils import log_info

VALID_OPERATORS = ("subtract", "divide")


def check_operator(operator: str, scale: UnitScale) -> None:
    """Reject an additive/multiplicative operator that does not match the data scale."""
    if operator not in VALID_OPERATORS:
        raise ValueError(f"Unknown operator={operator!r}. Use one of {VALID_OPERATORS}.")
    if operator != scale.operator:
        raise ScaleMismatchError(
            f"operator={operator!r} cannot be applied to scale={scale.value!r} data "
            f"(expected {scale.operator!r})."
        )


class NormalizationStrategy:
    """
    Stateless matrix normalization.

    Subclasses implement `transform` on a single features × samples block.
    `apply` slices a QuantTable into blocks according to `scope`:
      - "run":    one block per Run (no cross-run information)
      - "global": one cross-run block (protein-level second passes)
    """

    name = "base"
    accepted_scales: Tuple[UnitScale, ...] = tuple(UnitScale)

    def __init__(self, scope: str = "run", n_jobs: int = 1):
        if scope not in ("run", "global"):
            raise ValueError(f"Invalid scope={scope!r}. Use 'run' or 'global'.")
        self.scope = scope
        self.n_jobs = max(int(n_jobs or 1), 1)

    def check_scale(self, scale: UnitScale) -> None:
        if scale not in self.accepted_scales:
            raise ScaleMismatchError(
                f"{type(self).__name__} does not accept scale={scale.value!r} "
                f"(accepted: {[s.value for s in self.accepted_scales]})."
            )

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        raise NotImplementedError

    def _blocks(self, table: QuantTable) -> List[NormalizedMatrix]:
        if self.scope == "global":
            return [table.wide_matrix()]
        return list(table.run_matrices())

    def apply(self, table: QuantTable) -> QuantTable:
        """Normalize every block of `table` and return a new table."""
        self.check_scale(table.scale)
        blocks = self._blocks(table)
        log_info(f"{self.name}: {len(blocks)} block(s), scope={self.scope}, level={table.level}")

        if self.n_jobs > 1 and len(blocks) > 1:
            with ThreadPoolExecutor(max_workers=min(self.n_jobs, len(blocks))) as executor:
                out = list(executor.map(self.transform, blocks))
        else:
            out = [self.transform(b) for b in blocks]

        scale = out[0].scale if out else table.scale
        return table.replace_from_matrices(out, scale=scale)

    __call__ = apply

    def __repr__(self) -> str:
        return f"{type(self).__name__}(scope={self.scope!r})"


class IdentityNormalizer(NormalizationStrategy):
    """No-op; keeps the variant grid homogeneous."""

    name = "none"

    def transform(self, matrix: NormalizedMatrix) -> NormalizedMatrix:
        return matrix

    def apply(self, table: QuantTable) -> QuantTable:
        return table
