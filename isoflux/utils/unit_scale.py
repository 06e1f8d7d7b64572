from __future__ import annotations

import warnings
from enum import Enum
from typing import Optional, Union


class UnitScale(str, Enum):
    LOG2 = "log2"
    INTENSITY = "intensity"
    RATIO = "ratio"

    @property
    def is_additive(self) -> bool:
        """Log-scale data is corrected by subtraction, the others by division."""
        return self is UnitScale.LOG2

    @property
    def operator(self) -> str:
        return "subtract" if self.is_additive else "divide"


def normalize_unit_scale(raw: Optional[Union[str, UnitScale]]) -> UnitScale:
    """
    Normalize a unit-scale tag to the canonical UnitScale (strict, explicit).

    Canonical:
      - log2
      - intensity
      - ratio

    Accepted aliases:
      - log, log2intensity -> log2
      - raw, linear -> intensity
      - rawratio, ratio_to_reference -> ratio
    """
    if isinstance(raw, UnitScale):
        return raw
    if raw is None:
        return UnitScale.LOG2

    s = str(raw).strip()
    if not s:
        return UnitScale.LOG2

    key = s.lower()

    alias_map = {
        "log": "log2",
        "log2": "log2",
        "log2intensity": "log2",
        "raw": "intensity",
        "linear": "intensity",
        "intensity": "intensity",
        "rawratio": "ratio",
        "ratio_to_reference": "ratio",
        "ratio": "ratio",
    }

    if key in alias_map:
        out = alias_map[key]
        if out != key:
            warnings.warn(
                f"unit={s!r} is an alias; use {out!r}.",
                category=DeprecationWarning,
                stacklevel=2,
            )
        return UnitScale(out)

    raise ValueError(
        f"Unsupported unit scale={s!r}. "
        "Use one of: 'log2', 'intensity', 'ratio'."
    )
