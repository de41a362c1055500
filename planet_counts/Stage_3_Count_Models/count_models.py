#!/usr/bin/env python3
"""
Stage 3: Poisson and Negative-Binomial count regressions

  • Poisson      – statsmodels GLM, log link, IRLS.
  • NegBin (NB2) – variance mu + alpha·mu². alpha is estimated by maximum
                   likelihood, alternating a GLM fit at fixed alpha with a
                   bounded 1-D search for alpha given the fitted means, until
                   alpha or the profile log-likelihood settles (the glm.nb
                   scheme). Counts with no extra-Poisson variance put
                   alpha on the floor ALPHA_MIN, reproducing the Poisson fit.

fit_count_model is a pure function of (table, family, formula); every call
builds its own statsmodels objects.
"""
from __future__ import annotations
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize_scalar
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from planet_counts.config import MAX_ITER, TOLERANCE
from planet_counts.errors import ConvergenceError, DataFormatError
from planet_counts.utils.monitor import monitor
from planet_counts.utils.perfkit import ParallelMixin

log = logging.getLogger("stage3")

POISSON = "poisson"
NEGATIVE_BINOMIAL = "negative_binomial"
FAMILIES = (POISSON, NEGATIVE_BINOMIAL)
INTERCEPT = "Intercept"

# alpha search range; the lower end stands in for "no overdispersion"
ALPHA_MIN = 1e-8
ALPHA_MAX = 1e4
ALPHA_LOG_TOL = 1e-5
# below this, or when the profile gain over ALPHA_MIN is within LLF_TOL,
# alpha is on the zero boundary and is snapped to ALPHA_MIN
ALPHA_BOUNDARY = 1e-6
LLF_TOL = 1e-10


@dataclass(frozen=True)
class CountFormula:
    """Response plus an ordered tuple of predictors; the intercept is implicit."""
    response: str
    predictors: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "predictors", tuple(self.predictors))
        if len(set(self.predictors)) != len(self.predictors):
            raise DataFormatError("Duplicate predictors in formula",
                                  columns=self.predictors)
        if self.response in self.predictors:
            raise DataFormatError("Response also listed as predictor",
                                  columns=[self.response])

    @classmethod
    def parse(cls, text: str) -> "CountFormula":
        """`"sy_pnum ~ st_mass + st_rad"` or `"sy_pnum ~ 1"`."""
        if text.count("~") != 1:
            raise DataFormatError(f"Formula needs exactly one '~': {text!r}")
        lhs, rhs = (part.strip() for part in text.split("~"))
        if not lhs:
            raise DataFormatError(f"Formula has no response: {text!r}")
        terms = [t.strip() for t in re.split(r"\+", rhs) if t.strip()]
        terms = [t for t in terms if t != "1"]
        return cls(lhs, tuple(terms))

    def __str__(self):
        rhs = " + ".join(self.predictors) if self.predictors else "1"
        return f"{self.response} ~ {rhs}"

    @property
    def columns(self) -> Tuple[str, ...]:
        return (self.response,) + self.predictors

    def without(self, predictor: str) -> "CountFormula":
        return CountFormula(self.response,
                            tuple(p for p in self.predictors if p != predictor))

    def with_predictor(self, predictor: str, order: Sequence[str] = ()) -> "CountFormula":
        """Add `predictor`, keeping the relative order given by `order` when known."""
        preds = list(self.predictors) + [predictor]
        if order:
            rank = {p: i for i, p in enumerate(order)}
            preds.sort(key=lambda p: rank.get(p, len(rank)))
        return CountFormula(self.response, tuple(preds))


@dataclass(frozen=True, eq=False)
class FittedCountModel:
    """
    Everything downstream stages need from one fit. Built once, never mutated.

    `alpha` is the NB2 overdispersion (0 for Poisson); `theta = 1/alpha` is
    the "size" parameter. `dispersion` is the family's dispersion as a GLM
    reports it: fixed at 1 for Poisson, the estimated size θ for NegBin.
    """
    family: str
    formula: CountFormula
    coefficients: pd.DataFrame
    alpha: float
    deviance: float
    null_deviance: float
    df_resid: float
    df_null: float
    llf: float
    aic: float
    n_obs: int
    iterations: int
    fitted: pd.Series = field(repr=False)
    linear_predictor: pd.Series = field(repr=False)
    resid_deviance: pd.Series = field(repr=False)
    resid_pearson: pd.Series = field(repr=False)
    data: pd.DataFrame = field(repr=False)
    variant: Optional[str] = None

    @property
    def theta(self) -> float:
        return np.inf if self.alpha <= 0 else 1.0 / self.alpha

    @property
    def dispersion(self) -> float:
        return 1.0 if self.family == POISSON else self.theta

    @property
    def predictors(self) -> Tuple[str, ...]:
        return self.formula.predictors

    @property
    def response(self) -> pd.Series:
        return self.data[self.formula.response]

    @property
    def label(self) -> str:
        return f"{self.variant or 'table'}/{self.family}"

    def coefficient_mapping(self) -> Dict[str, Dict[str, float]]:
        """Predictor → estimate, standard error, p-value (the reporter's view)."""
        return {
            name: {
                "estimate": float(row["estimate"]),
                "std_error": float(row["std_error"]),
                "p_value": float(row["p_value"]),
            }
            for name, row in self.coefficients.iterrows()
        }

    def summary(self) -> Dict[str, object]:
        return {
            "family": self.family,
            "variant": self.variant,
            "formula": str(self.formula),
            "n_obs": self.n_obs,
            "deviance": float(self.deviance),
            "null_deviance": float(self.null_deviance),
            "df_resid": float(self.df_resid),
            "df_null": float(self.df_null),
            "deviance_explained": float(1.0 - self.deviance / self.null_deviance)
            if self.null_deviance > 0 else float("nan"),
            "llf": float(self.llf),
            "aic": float(self.aic),
            "alpha": float(self.alpha),
            "theta": float(self.theta),
            "iterations": int(self.iterations),
        }


# ─────────────────────────────────────────────────────────────────────────────
# design matrix & validation
# ─────────────────────────────────────────────────────────────────────────────

def _design(table: pd.DataFrame, formula: CountFormula) -> Tuple[pd.Series, pd.DataFrame]:
    absent = [c for c in formula.columns if c not in table.columns]
    if absent:
        raise DataFormatError("Formula columns absent from table", columns=absent)

    block = table.loc[:, list(formula.columns)]
    non_numeric = [c for c in block.columns if not pd.api.types.is_numeric_dtype(block[c])]
    if non_numeric:
        raise DataFormatError("Model columns must be numeric", columns=non_numeric)

    na = block.isna()
    if na.values.any():
        cols = [c for c in block.columns if na[c].any()]
        rows = block.index[na.any(axis=1)].tolist()
        raise DataFormatError("Missing values in model input; choose a "
                              "missing-data strategy first", columns=cols, rows=rows)

    y = block[formula.response].astype(float)
    bad = y.index[(y < 0) | (y.sub(y.round()).abs() > 1e-8)].tolist()
    if bad:
        raise DataFormatError("Response must hold non-negative integer counts",
                              columns=[formula.response], rows=bad)

    if formula.predictors:
        X = sm.add_constant(block.loc[:, list(formula.predictors)].astype(float),
                            has_constant="add", prepend=True)
        X = X.rename(columns={"const": INTERCEPT})
    else:
        X = pd.DataFrame({INTERCEPT: np.ones(len(block))}, index=block.index)

    if len(y) <= X.shape[1]:
        raise DataFormatError(f"{len(y)} rows cannot identify {X.shape[1]} coefficients")
    return y, X


def _fit_glm(y: pd.Series, X: pd.DataFrame, family_obj, family: str,
             formula: CountFormula, max_iter: int, tol: float):
    model = sm.GLM(y, X, family=family_obj)
    with warnings.catch_warnings():
        # non-convergence is reported below as ConvergenceError
        warnings.simplefilter("ignore", ConvergenceWarning)
        res = model.fit(maxiter=max_iter, tol=tol)
    iterations = int(res.fit_history.get("iteration", max_iter))
    if not res.converged or not np.all(np.isfinite(res.params)):
        raise ConvergenceError(family, iterations, str(formula))
    return res, iterations


def _llf_close(a: float, b: float) -> bool:
    return abs(a - b) <= LLF_TOL * (1.0 + abs(b))


def _estimate_alpha(y: np.ndarray, mu: np.ndarray) -> Tuple[float, float]:
    """
    ML estimate of the NB2 alpha for fixed means, searched on the log scale.
    Returns (alpha, profile log-likelihood). Equi- and underdispersed counts
    leave the likelihood flat near zero; those land exactly on ALPHA_MIN.
    """
    def nll(log_alpha):
        fam = sm.families.NegativeBinomial(alpha=float(np.exp(log_alpha)))
        return -fam.loglike(y, mu)

    opt = minimize_scalar(nll, bounds=(np.log(ALPHA_MIN), np.log(ALPHA_MAX)),
                          method="bounded", options={"xatol": 1e-8})
    alpha, llf = float(np.exp(opt.x)), -float(opt.fun)
    floor_llf = -float(nll(np.log(ALPHA_MIN)))
    if alpha < ALPHA_BOUNDARY or llf < floor_llf or _llf_close(llf, floor_llf):
        return ALPHA_MIN, floor_llf
    return alpha, llf


def _coefficient_table(res) -> pd.DataFrame:
    ci = res.conf_int(alpha=0.05)
    table = pd.DataFrame({
        "estimate": res.params,
        "std_error": res.bse,
        "z_value": res.tvalues,
        "p_value": res.pvalues,
        "ci_lower": ci.iloc[:, 0],
        "ci_upper": ci.iloc[:, 1],
    })
    table["irr"] = np.exp(table["estimate"])
    table.index.name = "predictor"
    return table


# ─────────────────────────────────────────────────────────────────────────────
# public API
# ─────────────────────────────────────────────────────────────────────────────

def fit_count_model(table: pd.DataFrame,
                    family: str,
                    formula,
                    max_iter: int = MAX_ITER,
                    tol: float = TOLERANCE,
                    variant: Optional[str] = None) -> FittedCountModel:
    """
    Fit one count regression.

    `formula` is a CountFormula or its text form. Raises DataFormatError on
    unusable input and ConvergenceError when IRLS (or the NegBin alpha loop)
    does not settle within `max_iter` iterations.
    """
    if family not in FAMILIES:
        raise DataFormatError(f"Unknown family {family!r}; expected one of {FAMILIES}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be >= 1, got {max_iter}")
    if isinstance(formula, str):
        formula = CountFormula.parse(formula)

    y, X = _design(table, formula)

    if family == POISSON:
        res, iterations = _fit_glm(y, X, sm.families.Poisson(), POISSON,
                                   formula, max_iter, tol)
        alpha = 0.0
        k = X.shape[1]
    else:
        res, iterations = _fit_glm(y, X, sm.families.Poisson(), NEGATIVE_BINOMIAL,
                                   formula, max_iter, tol)
        y_arr = y.to_numpy()
        alpha, profile_llf = _estimate_alpha(y_arr, np.asarray(res.mu))
        converged = False
        for outer in range(1, max_iter + 1):
            res, iterations = _fit_glm(
                y, X, sm.families.NegativeBinomial(alpha=alpha),
                NEGATIVE_BINOMIAL, formula, max_iter, tol)
            new_alpha, new_llf = _estimate_alpha(y_arr, np.asarray(res.mu))
            at_floor = alpha == new_alpha == ALPHA_MIN
            settled = (abs(np.log(new_alpha) - np.log(alpha)) < ALPHA_LOG_TOL
                       or _llf_close(new_llf, profile_llf))
            alpha, profile_llf = new_alpha, new_llf
            if settled or at_floor:
                converged = True
                res, iterations = _fit_glm(
                    y, X, sm.families.NegativeBinomial(alpha=alpha),
                    NEGATIVE_BINOMIAL, formula, max_iter, tol)
                log.debug(f"alpha settled at {alpha:.3g} after {outer} rounds")
                break
        if not converged:
            raise ConvergenceError(NEGATIVE_BINOMIAL, max_iter, str(formula),
                                   stage="alpha")
        k = X.shape[1] + 1

    mu = np.asarray(res.mu)
    llf = float(res.llf)
    model = FittedCountModel(
        family=family,
        formula=formula,
        coefficients=_coefficient_table(res),
        alpha=float(alpha),
        deviance=float(res.deviance),
        null_deviance=float(res.null_deviance),
        df_resid=float(res.df_resid),
        df_null=float(len(y) - 1),
        llf=llf,
        aic=float(-2.0 * llf + 2.0 * k),
        n_obs=int(len(y)),
        iterations=iterations,
        fitted=pd.Series(mu, index=y.index, name="fitted"),
        linear_predictor=pd.Series(X.to_numpy() @ res.params.to_numpy(),
                                   index=y.index, name="linear_predictor"),
        resid_deviance=pd.Series(np.asarray(res.resid_deviance), index=y.index,
                                 name="resid_deviance"),
        resid_pearson=pd.Series(np.asarray(res.resid_pearson), index=y.index,
                                name="resid_pearson"),
        data=table.loc[:, list(formula.columns)].copy(),
        variant=variant,
    )
    log.info(f"Fitted {model.label}: {formula} | deviance={model.deviance:.2f} "
             f"on {model.df_resid:.0f} df, AIC={model.aic:.2f}"
             + (f", alpha={alpha:.3g}" if family == NEGATIVE_BINOMIAL else ""))
    return model


@monitor(name="fit_model_grid")
def fit_model_grid(variants: Mapping[str, pd.DataFrame],
                   families: Iterable[str],
                   formula,
                   max_iter: int = MAX_ITER,
                   tol: float = TOLERANCE,
                   n_jobs: Optional[int] = 1) -> Dict[Tuple[str, str], FittedCountModel]:
    """Every (variant, family) fit; the fits are independent and may run in parallel."""
    if isinstance(formula, str):
        formula = CountFormula.parse(formula)
    jobs = [(v, f) for v in variants for f in families]

    def _one(job):
        variant, family = job
        return fit_count_model(variants[variant], family, formula,
                               max_iter=max_iter, tol=tol, variant=variant)

    fits = ParallelMixin(n_jobs=n_jobs).parallel_map(_one, jobs)
    return dict(zip(jobs, fits))
