from dataclasses import dataclass, field, replace
from typing import List, Optional

import numpy as np

from isoflux.utils.unit_scale import UnitScale


@dataclass(frozen=True)
class NormalizedMatrix:
    """Feature × sample block of a QuantTable (one Run, or all Runs when `run` is None)."""

    values: np.ndarray
    features: List[str]
    samples: List[str]
    scale: UnitScale
    run: Optional[str] = None
    notes: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.values.shape != (len(self.features), len(self.samples)):
            raise ValueError(
                f"Matrix shape {self.values.shape} does not match "
                f"{len(self.features)} features × {len(self.samples)} samples."
            )

    @property
    def label(self) -> str:
        return self.run if self.run is not None else "all runs"

    def with_values(self, values: np.ndarray, scale: Optional[UnitScale] = None, **notes) -> "NormalizedMatrix":
        """Copy with new values (same features/samples); notes are merged."""
        return replace(
            self,
            values=np.asarray(values, dtype=np.float64),
            scale=scale or self.scale,
            notes={**self.notes, **notes},
        )
