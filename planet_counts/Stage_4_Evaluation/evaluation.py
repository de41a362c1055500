"""
Stage 4: model diagnostics and the two modeling decisions built on them.

  dispersion_ratio         var(y) / mean(y), model-free
  goodness_of_fit_pvalue   upper χ² tail of the residual deviance
  residual_frame           fitted values and residuals, exported as a table
  residual_pattern         LOWESS curvature + spread trend of the residuals
  choose_family            Poisson unless the response is clearly overdispersed
  choose_missing_data_strategy
                           named, overridable policy picking a table variant
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Mapping, Union

import numpy as np
import pandas as pd
import scipy.stats as stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from planet_counts.config import MISSING_DATA_POLICY, OVERDISPERSION_THRESHOLD
from planet_counts.errors import DataFormatError
from planet_counts.Stage_2_Missing_Data.Missing_Imputer import IMPUTED, ROW_REMOVED
from planet_counts.Stage_3_Count_Models.count_models import (
    NEGATIVE_BINOMIAL, POISSON, FittedCountModel,
)

log = logging.getLogger("stage4")

LOWESS_FRAC = 2.0 / 3.0
PATTERN_TIE_TOLERANCE = 0.01


def dispersion_ratio(response) -> float:
    """Sample variance (ddof=1) over sample mean; ≈1 under a Poisson law."""
    y = np.asarray(response, dtype=float)
    y = y[~np.isnan(y)]
    if y.size < 2:
        raise DataFormatError("Dispersion ratio needs at least two observations")
    mean = y.mean()
    if mean <= 0:
        raise DataFormatError("Dispersion ratio needs a positive mean response")
    return float(y.var(ddof=1) / mean)


def goodness_of_fit_pvalue(model: FittedCountModel) -> float:
    """
    P(χ²_{df_resid} ≥ residual deviance). Values near 1 give no evidence
    against the model; this is a diagnostic, not an accept/reject gate.
    """
    if model.df_resid <= 0:
        raise DataFormatError(f"{model.label} has no residual degrees of freedom")
    p = stats.chi2.sf(model.deviance, model.df_resid)
    return float(min(max(p, 0.0), 1.0))


def residual_frame(model: FittedCountModel) -> pd.DataFrame:
    """Per-row fitted values and residuals, indexed like the fitted table."""
    return pd.DataFrame({
        "observed": model.response.astype(float),
        "fitted": model.fitted,
        "linear_predictor": model.linear_predictor,
        "resid_deviance": model.resid_deviance,
        "resid_pearson": model.resid_pearson,
    })


@dataclass(frozen=True)
class ResidualPattern:
    """
    Numbers that back the residual-vs-fitted reading.

    curvature     mean |LOWESS smooth| of deviance residuals over the linear
                  predictor; 0 when the residual cloud is centred everywhere.
    spread_trend  Spearman ρ between fitted values and |residual|; far from 0
                  when the spread fans out or collapses along the fit.
    """
    curvature: float
    spread_trend: float
    n: int

    @property
    def score(self) -> float:
        return self.curvature + abs(self.spread_trend)


def residual_pattern(model: FittedCountModel, frac: float = LOWESS_FRAC) -> ResidualPattern:
    x = model.linear_predictor.to_numpy()
    r = model.resid_deviance.to_numpy()
    if np.unique(np.round(x, 12)).size < 3:
        curvature = float(abs(r.mean()))
    else:
        smooth = lowess(r, x, frac=frac, it=3, return_sorted=True)
        curvature = float(np.nanmean(np.abs(smooth[:, 1])))

    if np.unique(model.fitted.to_numpy()).size < 2 or np.unique(np.abs(r)).size < 2:
        spread = 0.0
    else:
        spread = float(stats.spearmanr(model.fitted.to_numpy(), np.abs(r)).correlation)
    return ResidualPattern(curvature=curvature, spread_trend=spread, n=len(r))


@dataclass(frozen=True, eq=False)
class EvaluationRecord:
    model: FittedCountModel = field(repr=False)
    dispersion_ratio: float
    gof_pvalue: float
    pattern: ResidualPattern

    @property
    def label(self) -> str:
        return self.model.label

    @property
    def variant(self):
        return self.model.variant

    @property
    def family(self) -> str:
        return self.model.family

    def as_row(self) -> Dict[str, object]:
        row = self.model.summary()
        row.update({
            "dispersion_ratio": self.dispersion_ratio,
            "gof_pvalue": self.gof_pvalue,
            "residual_curvature": self.pattern.curvature,
            "residual_spread_trend": self.pattern.spread_trend,
            "residual_pattern_score": self.pattern.score,
        })
        return row


def evaluate_model(model: FittedCountModel) -> EvaluationRecord:
    record = EvaluationRecord(
        model=model,
        dispersion_ratio=dispersion_ratio(model.response),
        gof_pvalue=goodness_of_fit_pvalue(model),
        pattern=residual_pattern(model),
    )
    log.info(f"{record.label}: dispersion ratio={record.dispersion_ratio:.3f}, "
             f"GOF p={record.gof_pvalue:.4f}, residual score={record.pattern.score:.4f}")
    return record


def comparison_table(records: Iterable[EvaluationRecord]) -> pd.DataFrame:
    rows = [r.as_row() for r in records]
    if not rows:
        return pd.DataFrame()
    return pd.DataFrame(rows).set_index(["variant", "family"]).sort_index()


# ─────────────────────────────────────────────────────────────────────────────
# decision: distributional family
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FamilyDecision:
    family: str
    dispersion_ratio: float
    threshold: float
    lr_statistic: float
    lr_pvalue: float
    rationale: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "family": self.family,
            "dispersion_ratio": self.dispersion_ratio,
            "threshold": self.threshold,
            "lr_statistic": self.lr_statistic,
            "lr_pvalue": self.lr_pvalue,
            "rationale": self.rationale,
        }


def overdispersion_lr_test(poisson: FittedCountModel, negbin: FittedCountModel):
    """
    Likelihood-ratio test of NegBin against Poisson. alpha = 0 sits on the
    boundary, so the null distribution is ½χ²₀ + ½χ²₁.
    """
    stat = max(2.0 * (negbin.llf - poisson.llf), 0.0)
    p = 0.5 * stats.chi2.sf(stat, 1) if stat > 0 else 1.0
    return float(stat), float(p)


def choose_family(poisson_record: EvaluationRecord,
                  nb_record: EvaluationRecord,
                  threshold: float = OVERDISPERSION_THRESHOLD) -> FamilyDecision:
    """
    Dispersion ratio at or below `threshold` keeps Poisson for parsimony, even
    when NegBin fits as well; above it NegBin wins. Under-dispersion also
    keeps Poisson, which NegBin cannot improve on.
    """
    if poisson_record.family != POISSON or nb_record.family != NEGATIVE_BINOMIAL:
        raise ValueError("choose_family expects a Poisson and a NegBin record")
    if poisson_record.variant != nb_record.variant:
        raise ValueError("Both records must come from the same table variant")

    ratio = poisson_record.dispersion_ratio
    stat, p = overdispersion_lr_test(poisson_record.model, nb_record.model)
    if ratio <= threshold:
        family = POISSON
        why = (f"dispersion ratio {ratio:.3f} ≤ {threshold:g}: mean ≈ variance, "
               f"Poisson kept for parsimony (LR test of NegBin p={p:.3g})")
    else:
        family = NEGATIVE_BINOMIAL
        why = (f"dispersion ratio {ratio:.3f} > {threshold:g}: overdispersed "
               f"response, NegBin preferred (LR test p={p:.3g})")
    log.info(f"Family decision → {family}: {why}")
    return FamilyDecision(family, ratio, float(threshold), stat, p, why)


# ─────────────────────────────────────────────────────────────────────────────
# decision: missing-data strategy
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MissingDataDecision:
    variant: str
    policy: str
    scores: Dict[str, float]
    rationale: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "variant": self.variant,
            "policy": self.policy,
            "scores": dict(self.scores),
            "rationale": self.rationale,
        }


def _by_residual_pattern(records: Mapping[str, EvaluationRecord]) -> str:
    scores = {v: r.pattern.score for v, r in records.items()}
    if set(scores) == {ROW_REMOVED, IMPUTED}:
        if abs(scores[ROW_REMOVED] - scores[IMPUTED]) <= PATTERN_TIE_TOLERANCE:
            return IMPUTED
    return min(sorted(scores), key=lambda v: scores[v])


MISSING_DATA_POLICIES: Dict[str, Callable[[Mapping[str, EvaluationRecord]], str]] = {
    "residual_pattern": _by_residual_pattern,
    ROW_REMOVED: lambda records: ROW_REMOVED,
    IMPUTED: lambda records: IMPUTED,
}


def choose_missing_data_strategy(
        records: Mapping[str, EvaluationRecord],
        policy: Union[str, Callable[[Mapping[str, EvaluationRecord]], str]] = MISSING_DATA_POLICY,
) -> MissingDataDecision:
    """
    Pick the table variant to carry forward.

    The default `residual_pattern` policy ranks variants by
    ResidualPattern.score and, when the scores are within
    PATTERN_TIE_TOLERANCE, keeps the imputed table because it retains every
    row. Pass "row_removed"/"imputed" to force a variant, or a callable that
    receives {variant: EvaluationRecord} and returns a variant name.
    """
    if not records:
        raise ValueError("No evaluation records to choose from")
    families = {r.family for r in records.values()}
    if len(families) != 1:
        raise ValueError(f"Compare variants within one family, got {sorted(families)}")

    if callable(policy):
        name = getattr(policy, "__name__", "custom")
        chooser = policy
    elif policy in MISSING_DATA_POLICIES:
        name = policy
        chooser = MISSING_DATA_POLICIES[policy]
    else:
        raise ValueError(f"Unknown missing-data policy {policy!r}; "
                         f"expected one of {sorted(MISSING_DATA_POLICIES)} or a callable")

    variant = chooser(records)
    if variant not in records:
        raise ValueError(f"Policy {name!r} chose {variant!r}, "
                         f"not one of {sorted(records)}")

    scores = {v: float(r.pattern.score) for v, r in records.items()}
    score_txt = ", ".join(f"{v}={s:.4f}" for v, s in sorted(scores.items()))
    why = f"policy '{name}' selected {variant} (residual pattern scores: {score_txt})"
    log.info(f"Missing-data decision → {variant}: {why}")
    return MissingDataDecision(variant, name, scores, why)
