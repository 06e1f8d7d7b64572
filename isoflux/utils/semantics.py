"""
Canonical semantics for isoflux.

This module is intentionally small and declarative:
  - Canonical column names of the long QuantTable
  - Feature levels and their key columns
  - Canonical configuration keys

Implementation details live elsewhere (normalizers, summarizers, testers).
"""

# Long-table columns
RUN = "RUN"
CHANNEL = "CHANNEL"
SAMPLE = "SAMPLE"
CONDITION = "CONDITION"
PROTEIN = "PROTEIN"
PEPTIDE = "PEPTIDE"
PSM = "PSM"
CHARGE = "CHARGE"
MODIFICATION = "MODIFICATION"
RETENTION_TIME = "RETENTION_TIME"
SIGNAL = "SIGNAL"

# Optional per-PSM quality covariates (weighted aggregation)
PSM_SCORE = "PSM_SCORE"
MASS_DEVIATION = "MASS_DEVIATION"
ISOLATION_INTERFERENCE = "ISOLATION_INTERFERENCE"
SEQUENCE_LENGTH = "SEQUENCE_LENGTH"

REQUIRED_COLUMNS = (RUN, CHANNEL, PROTEIN, PEPTIDE, SIGNAL)
PSM_ID_ATTRIBUTES = (PEPTIDE, CHARGE, MODIFICATION, RETENTION_TIME)
QUALITY_COVARIATES = (CHARGE, SEQUENCE_LENGTH, PSM_SCORE, MASS_DEVIATION, RETENTION_TIME)

SAMPLE_SEPARATOR = ":"

# Feature levels
LEVELS_CANONICAL = ("psm", "peptide", "protein")
LEVEL_KEYS = {"psm": PSM, "peptide": PEPTIDE, "protein": PROTEIN}

# Canonical config keys
CFG_PSM_NORMALIZATION = "psm_normalization"
CFG_PROTEIN_NORMALIZATION = "protein_normalization"
CFG_SUMMARIZATION = "summarization"
CFG_TEST = "test"
CFG_UNIT = "unit"
