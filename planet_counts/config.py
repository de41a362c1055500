"""
config.py

Defaults for the planet-count pipeline. Adjust the constants below, export
PLANET_COUNTS_* environment variables, or pass flags to
`planet_counts.scripts.run_pipeline`; flags win over the environment, the
environment wins over the constants.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

# ─────────────────────────────────────────────────────────────────────────────
# 1) CONFIGURE YOUR DEFAULTS HERE
# ─────────────────────────────────────────────────────────────────────────────

# ── Catalog export ──
# Number of "#" metadata lines the archive prepends to its CSV export. This is a
# property of the particular download, not of the pipeline.
CATALOG_SKIP_ROWS = 322
CATALOG_DELIMITER = ","

# ── Modeling columns ──
RESPONSE_COLUMN = "sy_pnum"
PREDICTOR_COLUMNS: Tuple[str, ...] = (
    "sy_snum",
    "st_mass",
    "st_rad",
    "st_lum",
    "st_met",
    "pl_orbper",
    "pl_orbsmax",
    "pl_orbeccen",
    "st_age",
    "pl_insol",
    "st_logg",
    "st_dens",
)
HOST_COLUMN = "hostname"

# ── Cleaning ──
ORBPER_COLUMN = "pl_orbper"
ORBPER_LIMIT = 10_000.0         # days; rows at or above are outliers

# ── Missing data ──
KNN_NEIGHBORS = 10
KNN_WEIGHTS = "uniform"         # uniform | distance

# ── Model fitting ──
FAMILIES: Tuple[str, ...] = ("poisson", "negative_binomial")
MAX_ITER = 100
TOLERANCE = 1e-8

# ── Decisions ──
OVERDISPERSION_THRESHOLD = 1.5  # dispersion ratio above this → NegBin
MISSING_DATA_POLICY = "residual_pattern"
SELECTION_POLICY = "backward"
VIF_THRESHOLD = 10.0

# ── Execution ──
N_JOBS = 1

ENV_PREFIX = "PLANET_COUNTS_"


def _env(name: str, default, cast=str):
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    if cast is tuple:
        return tuple(p.strip() for p in raw.split(",") if p.strip())
    return cast(raw)


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable bundle of every knob a pipeline run reads."""
    skip_rows: int = CATALOG_SKIP_ROWS
    delimiter: str = CATALOG_DELIMITER
    response: str = RESPONSE_COLUMN
    predictors: Tuple[str, ...] = PREDICTOR_COLUMNS
    orbper_limit: float = ORBPER_LIMIT
    deduplicate_hosts: bool = False
    knn_neighbors: int = KNN_NEIGHBORS
    knn_weights: str = KNN_WEIGHTS
    families: Tuple[str, ...] = FAMILIES
    max_iter: int = MAX_ITER
    tol: float = TOLERANCE
    overdispersion_threshold: float = OVERDISPERSION_THRESHOLD
    missing_data_policy: str = MISSING_DATA_POLICY
    selection_policy: str = SELECTION_POLICY
    vif_threshold: float = VIF_THRESHOLD
    n_jobs: int = N_JOBS
    output_path: Optional[str] = field(default=None)

    @property
    def modeling_columns(self) -> Tuple[str, ...]:
        return (self.response,) + tuple(self.predictors)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            skip_rows=_env("SKIP_ROWS", CATALOG_SKIP_ROWS, int),
            delimiter=_env("DELIMITER", CATALOG_DELIMITER),
            response=_env("RESPONSE", RESPONSE_COLUMN),
            predictors=_env("PREDICTORS", PREDICTOR_COLUMNS, tuple),
            orbper_limit=_env("ORBPER_LIMIT", ORBPER_LIMIT, float),
            deduplicate_hosts=_env("DEDUPLICATE_HOSTS", "0").lower()
            in {"1", "true", "yes"},
            knn_neighbors=_env("KNN_NEIGHBORS", KNN_NEIGHBORS, int),
            knn_weights=_env("KNN_WEIGHTS", KNN_WEIGHTS),
            families=_env("FAMILIES", FAMILIES, tuple),
            max_iter=_env("MAX_ITER", MAX_ITER, int),
            tol=_env("TOL", TOLERANCE, float),
            overdispersion_threshold=_env(
                "OVERDISPERSION_THRESHOLD", OVERDISPERSION_THRESHOLD, float),
            missing_data_policy=_env("MISSING_DATA_POLICY", MISSING_DATA_POLICY),
            selection_policy=_env("SELECTION_POLICY", SELECTION_POLICY),
            vif_threshold=_env("VIF_THRESHOLD", VIF_THRESHOLD, float),
            n_jobs=_env("N_JOBS", N_JOBS, int),
            output_path=_env("OUTPUT", None),
        )

    def override(self, **changes) -> "PipelineConfig":
        """Return a copy with every non-None entry of `changes` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
