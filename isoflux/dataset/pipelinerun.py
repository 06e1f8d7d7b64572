"""Explicit record of one pipeline variant: its choices and everything it produced."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from isoflux.analysis.testresult import TestResult
from isoflux.dataset.quanttable import QuantTable
from isoflux.utils.semantics import (
    CFG_PROTEIN_NORMALIZATION,
    CFG_PSM_NORMALIZATION,
    CFG_SUMMARIZATION,
    CFG_TEST,
    CFG_UNIT,
)
from isoflux.utils.unit_scale import UnitScale, normalize_unit_scale


def _as_steps(steps) -> List[Dict[str, Any]]:
    if steps is None:
        return []
    if isinstance(steps, (str, dict)):
        steps = [steps]
    return [{"method": s} if isinstance(s, str) else dict(s) for s in steps]


def _as_step(step, default: str) -> Dict[str, Any]:
    if step is None:
        return {"method": default}
    return {"method": step} if isinstance(step, str) else dict(step)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Strategy choices of one variant.

    `psm_normalization` runs per Run before summarization, `protein_normalization`
    on the summarized (cross-run) protein table. `test_unit`, when set, converts
    the summarized data (e.g. raked intensities to log2) before the protein
    pass. Each step is a dict with a `method` key plus the keyword options
    of the factory.
    """

    name: str
    unit: UnitScale = UnitScale.LOG2
    psm_normalization: List[Dict[str, Any]] = field(default_factory=list)
    summarization: Dict[str, Any] = field(default_factory=lambda: {"method": "median"})
    protein_normalization: List[Dict[str, Any]] = field(default_factory=list)
    test: Dict[str, Any] = field(default_factory=lambda: {"method": "moderated_t"})
    test_unit: Optional[UnitScale] = None

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "PipelineConfig":
        if "name" not in cfg:
            raise ValueError(f"Pipeline variant without a name: {cfg}")
        return cls(
            name=str(cfg["name"]),
            unit=normalize_unit_scale(cfg.get(CFG_UNIT)),
            psm_normalization=_as_steps(cfg.get(CFG_PSM_NORMALIZATION)),
            summarization=_as_step(cfg.get(CFG_SUMMARIZATION), "median"),
            protein_normalization=_as_steps(cfg.get(CFG_PROTEIN_NORMALIZATION)),
            test=_as_step(cfg.get(CFG_TEST), "moderated_t"),
            test_unit=normalize_unit_scale(cfg["test_unit"]) if cfg.get("test_unit") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            CFG_UNIT: self.unit.value,
            CFG_PSM_NORMALIZATION: [dict(s) for s in self.psm_normalization],
            CFG_SUMMARIZATION: dict(self.summarization),
            CFG_PROTEIN_NORMALIZATION: [dict(s) for s in self.protein_normalization],
            CFG_TEST: dict(self.test),
            "test_unit": self.test_unit.value if self.test_unit else None,
        }

    def describe(self) -> str:
        psm = "+".join(s["method"] for s in self.psm_normalization) or "none"
        prot = "+".join(s["method"] for s in self.protein_normalization) or "none"
        return (f"{self.name}: unit={self.unit.value}, psm_norm={psm}, "
                f"summary={self.summarization['method']}, protein_norm={prot}, test={self.test['method']}")


@dataclass
class PipelineRun:
    """Inputs, strategy choices and outputs of one executed variant."""

    config: PipelineConfig
    input: QuantTable
    normalized: Optional[QuantTable] = None
    proteins: Optional[QuantTable] = None
    result: Optional[TestResult] = None
    status: str = "ok"
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def ok(self) -> bool:
        return self.status == "ok" and self.result is not None

    def __repr__(self) -> str:
        extra = f", error={self.error!r}" if self.error else ""
        return f"PipelineRun({self.name!r}, status={self.status!r}{extra})"


RunLike = Union[PipelineRun, TestResult]
