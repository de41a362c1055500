#!/usr/bin/env python3
"""
Stage 5: AIC stepwise selection on a fitted count model

  backward – start from the model's predictors, drop one at a time
  forward  – start from the intercept, add from the model's predictors
  both     – start from the full model, consider drops and re-adds each step

A move is taken only when it lowers AIC; among equal AICs the earliest
candidate in formula order wins, so a rerun on the same data retraces the
same path.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from planet_counts.config import MAX_ITER, SELECTION_POLICY, TOLERANCE
from planet_counts.Stage_3_Count_Models.count_models import (
    CountFormula, FittedCountModel, fit_count_model,
)
from planet_counts.utils.monitor import monitor

log = logging.getLogger("stage5")

BACKWARD = "backward"
FORWARD = "forward"
BOTH = "both"
DIRECTIONS = (BACKWARD, FORWARD, BOTH)

AIC_EPS = 1e-9


@dataclass(frozen=True)
class SelectionStep:
    step: int
    action: str                 # start | remove | add
    predictor: Optional[str]
    aic: float


@dataclass(frozen=True, eq=False)
class SelectionResult:
    direction: str
    model: FittedCountModel = field(repr=False)
    steps: Tuple[SelectionStep, ...]

    @property
    def retained(self) -> Tuple[str, ...]:
        return self.model.predictors

    @property
    def aic(self) -> float:
        return self.model.aic

    def trace(self) -> List[Dict[str, object]]:
        return [dict(step=s.step, action=s.action, predictor=s.predictor, aic=s.aic)
                for s in self.steps]


@monitor(name="stepwise_select")
def stepwise_select(model: FittedCountModel,
                    direction: str = BACKWARD,
                    max_iter: int = MAX_ITER,
                    tol: float = TOLERANCE) -> SelectionResult:
    """
    Reduce `model` by AIC. Candidate models are refit with the same family on
    the same table; the search space is the predictors of `model`.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")

    scope = model.predictors
    response = model.formula.response

    def refit(formula: CountFormula) -> FittedCountModel:
        return fit_count_model(model.data, model.family, formula,
                               max_iter=max_iter, tol=tol, variant=model.variant)

    if direction == FORWARD:
        current = refit(CountFormula(response, ()))
    else:
        current = model

    steps = [SelectionStep(0, "start", None, current.aic)]
    while True:
        candidates: List[Tuple[str, str, CountFormula]] = []
        if direction in (BACKWARD, BOTH):
            candidates += [("remove", p, current.formula.without(p))
                           for p in current.predictors]
        if direction in (FORWARD, BOTH):
            candidates += [("add", p, current.formula.with_predictor(p, order=scope))
                           for p in scope if p not in current.predictors]
        if not candidates:
            break

        fitted = [(action, p, refit(f)) for action, p, f in candidates]
        action, predictor, best = min(fitted, key=lambda t: t[2].aic)
        if best.aic >= current.aic - AIC_EPS:
            break
        log.info(f"[{direction}] {action} {predictor}: "
                 f"AIC {current.aic:.3f} → {best.aic:.3f}")
        current = best
        steps.append(SelectionStep(len(steps), action, predictor, current.aic))

    log.info(f"[{direction}] retained {len(current.predictors)}/{len(scope)} "
             f"predictors: {', '.join(current.predictors) or '(intercept only)'}")
    return SelectionResult(direction=direction, model=current, steps=tuple(steps))


# ─────────────────────────────────────────────────────────────────────────────
# decision: which selected model to carry forward
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class SelectionDecision:
    chosen: SelectionResult = field(repr=False)
    policy: str
    agree: bool
    rationale: str

    @property
    def direction(self) -> str:
        return self.chosen.direction

    def as_dict(self) -> Dict[str, object]:
        return {
            "direction": self.direction,
            "policy": self.policy,
            "retained": list(self.chosen.retained),
            "aic": self.chosen.aic,
            "backward_forward_agree": self.agree,
            "rationale": self.rationale,
        }


SelectionPolicy = Callable[[SelectionResult, SelectionResult], SelectionResult]

SELECTION_POLICIES: Dict[str, SelectionPolicy] = {
    BACKWARD: lambda b, f: b,
    FORWARD: lambda b, f: f,
    "lowest_aic": lambda b, f: f if f.aic < b.aic - AIC_EPS else b,
    "fewest_predictors": lambda b, f: f if len(f.retained) < len(b.retained) else b,
}


def choose_selection(backward: SelectionResult,
                     forward: SelectionResult,
                     policy: Union[str, SelectionPolicy] = SELECTION_POLICY) -> SelectionDecision:
    """
    Explicit choice between the backward and forward results. `backward`
    keeps the backward model whatever the forward search found; the other
    named policies compare the two, and a callable may return either one.
    """
    if callable(policy):
        name = getattr(policy, "__name__", "custom")
        chooser = policy
    elif policy in SELECTION_POLICIES:
        name = policy
        chooser = SELECTION_POLICIES[policy]
    else:
        raise ValueError(f"Unknown selection policy {policy!r}; "
                         f"expected one of {sorted(SELECTION_POLICIES)} or a callable")

    chosen = chooser(backward, forward)
    if chosen is not backward and chosen is not forward:
        raise ValueError(f"Policy {name!r} must return one of the two results")

    agree = set(backward.retained) == set(forward.retained)
    why = (f"policy '{name}' kept the {chosen.direction} model "
           f"(backward AIC={backward.aic:.3f} with {len(backward.retained)} predictors, "
           f"forward AIC={forward.aic:.3f} with {len(forward.retained)}; "
           f"{'same' if agree else 'different'} predictor sets)")
    log.info(f"Selection decision → {chosen.direction}: {why}")
    return SelectionDecision(chosen=chosen, policy=name, agree=agree, rationale=why)
