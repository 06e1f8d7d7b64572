"""Shared fixtures: a small synthetic TMT experiment with known spike-ins."""

import numpy as np
import pandas as pd
import pytest

from isoflux.dataset.quanttable import Design, QuantTable
from isoflux.utils.unit_scale import UnitScale

RUNS = ("run1", "run2")
CHANNELS = ("126", "127", "128", "129")
CONDITIONS = {"126": "A", "127": "A", "128": "B", "129": "B"}
# loading bias balanced within each condition
CHANNEL_BIAS = {"126": 0.1, "127": -0.1, "128": 0.1, "129": -0.1}
RUN_EFFECT = {"run1": 0.0, "run2": 0.4}
AMINO_ACIDS = list("ACDEFGHIKLMNPQRSTVWY")


def make_psm_frame(
    seed: int = 7,
    n_proteins: int = 20,
    n_spike: int = 5,
    effect: float = 1.0,
    noise: float = 0.1,
    n_peptides: int = 3,
    missing_rate: float = 0.02,
) -> pd.DataFrame:
    """
    Long log2 PSM table: 2 Runs × 4 Channels, `n_proteins` proteins of which the
    first `n_spike` ("Pxx_UPS") are shifted by `effect` in condition B.

    Every peptide is seen at charge 2 and 3 in run1 but only at charge 2 in
    run2, so PSM counts per protein differ between runs. Spike-ins sit well
    above the background abundance.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for k in range(n_proteins):
        spike = k < n_spike
        protein = f"P{k + 1:02d}_UPS" if spike else f"P{k + 1:02d}_HUMAN"
        base = 24.0 + 0.3 * k if spike else 20.0 + rng.normal(0, 1.5)
        for j in range(n_peptides):
            peptide = "".join(rng.choice(AMINO_ACIDS, size=int(rng.integers(7, 16)))) + "K"
            pep_effect = rng.normal(0, 0.5)
            rt = float(rng.uniform(10, 90))
            for charge in (2, 3):
                psm_effect = rng.normal(0, 0.3)
                score = float(rng.uniform(20, 120))
                for run in RUNS:
                    if run == "run2" and charge == 3:
                        continue
                    for channel in CHANNELS:
                        condition = CONDITIONS[channel]
                        value = (
                            base + pep_effect + psm_effect + RUN_EFFECT[run] + CHANNEL_BIAS[channel]
                            + (effect if spike and condition == "B" else 0.0)
                            + rng.normal(0, noise)
                        )
                        if not spike and rng.random() < missing_rate:
                            value = np.nan
                        rows.append({
                            "RUN": run,
                            "CHANNEL": channel,
                            "CONDITION": condition,
                            "PROTEIN": protein,
                            "PEPTIDE": peptide,
                            "PSM": f"{peptide}/{charge}",
                            "CHARGE": charge,
                            "MODIFICATION": "TMT6plex",
                            "RETENTION_TIME": rt + (0.2 if run == "run2" else 0.0),
                            "PSM_SCORE": score,
                            "MASS_DEVIATION": float(rng.normal(0, 3)),
                            "SIGNAL": value,
                        })
    return pd.DataFrame(rows)


@pytest.fixture(scope="session")
def psm_frame():
    return make_psm_frame()


@pytest.fixture
def psm_table(psm_frame):
    return QuantTable(psm_frame, scale=UnitScale.LOG2, level="psm")


@pytest.fixture
def intensity_table(psm_frame):
    frame = psm_frame.assign(SIGNAL=np.exp2(psm_frame["SIGNAL"]))
    return QuantTable(frame, scale=UnitScale.INTENSITY, level="psm")


@pytest.fixture
def design(psm_table):
    return Design.from_table(psm_table, reference="A")


@pytest.fixture(scope="session")
def spike_ins(psm_frame):
    return frozenset(p for p in psm_frame["PROTEIN"].unique() if p.endswith("_UPS"))


@pytest.fixture
def protein_frame():
    """Small complete protein-level log2 table: 6 proteins, 2 Runs × 4 Channels."""
    rng = np.random.default_rng(3)
    rows = []
    for k in range(6):
        for run in RUNS:
            for channel in CHANNELS:
                rows.append({
                    "RUN": run,
                    "CHANNEL": channel,
                    "CONDITION": CONDITIONS[channel],
                    "PROTEIN": f"Q{k}",
                    "SIGNAL": 20.0 + k + rng.normal(0, 0.2),
                })
    return pd.DataFrame(rows)
