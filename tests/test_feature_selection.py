import numpy as np
import pandas as pd
import pytest

from planet_counts.errors import DataFormatError
from planet_counts.Stage_3_Count_Models.count_models import (
    NEGATIVE_BINOMIAL, POISSON, fit_count_model,
)
from planet_counts.Stage_5_Feature_Selection.feature_selection import (
    BACKWARD, BOTH, FORWARD, choose_selection, stepwise_select,
)
from planet_counts.Stage_5_Feature_Selection.vif import (
    variance_inflation_factors, vif_for_model,
)


def signal_and_noise(n=800, seed=21):
    """Two real effects (a, c) among four candidates."""
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 4))
    mu = np.exp(0.5 + 0.45 * X[:, 0] - 0.25 * X[:, 2])
    table = pd.DataFrame(X, columns=["a", "b", "c", "d"])
    table["y"] = rng.poisson(mu)
    return table


@pytest.fixture(scope="module")
def full_model():
    return fit_count_model(signal_and_noise(), POISSON, "y ~ a + b + c + d",
                           variant="imputed")


# ── stepwise ─────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("direction", [BACKWARD, FORWARD, BOTH])
def test_stepwise_keeps_real_effects(full_model, direction):
    result = stepwise_select(full_model, direction)
    assert {"a", "c"} <= set(result.retained)
    assert result.model.family == POISSON
    assert result.model.variant == "imputed"
    assert result.model.n_obs == full_model.n_obs


@pytest.mark.parametrize("direction", [BACKWARD, FORWARD])
def test_aic_decreases_along_the_trace(full_model, direction):
    result = stepwise_select(full_model, direction)
    aics = [step["aic"] for step in result.trace()]
    assert result.trace()[0]["action"] == "start"
    assert all(later < earlier for earlier, later in zip(aics, aics[1:]))
    assert result.aic == pytest.approx(aics[-1])


def test_backward_starts_from_full_model(full_model):
    result = stepwise_select(full_model, BACKWARD)
    assert result.steps[0].aic == pytest.approx(full_model.aic)
    assert result.aic <= full_model.aic
    assert all(s.action == "remove" for s in result.steps[1:])


def test_forward_starts_from_intercept(full_model):
    result = stepwise_select(full_model, FORWARD)
    intercept_only = fit_count_model(full_model.data, POISSON, "y ~ 1")
    assert result.steps[0].aic == pytest.approx(intercept_only.aic)
    assert all(s.action == "add" for s in result.steps[1:])
    # strongest effect enters first
    assert result.steps[1].predictor == "a"


def test_retained_predictors_keep_formula_order(full_model):
    for direction in (BACKWARD, FORWARD):
        retained = stepwise_select(full_model, direction).retained
        order = [p for p in full_model.predictors if p in retained]
        assert list(retained) == order


def test_stepwise_is_deterministic(full_model):
    first = stepwise_select(full_model, BACKWARD).trace()
    second = stepwise_select(full_model, BACKWARD).trace()
    assert first == second


def test_tied_candidates_resolve_in_formula_order():
    rng = np.random.default_rng(8)
    n = 400
    x = rng.normal(size=n)
    table = pd.DataFrame({"p": rng.normal(size=n), "q": None, "x": x,
                          "y": rng.poisson(np.exp(0.2 + 0.5 * x))})
    table["q"] = table["p"]
    table["p2"] = table["p"]
    model = fit_count_model(table, POISSON, "y ~ x + p2 + q")
    step = stepwise_select(model, BACKWARD).steps[1]
    assert step.action == "remove"
    assert step.predictor == "p2"


def test_stepwise_refits_with_the_same_family():
    rng = np.random.default_rng(3)
    n = 600
    x, z = rng.normal(size=n), rng.normal(size=n)
    lam = np.exp(1.0 + 0.5 * x) * rng.gamma(2.0, 0.5, size=n)
    table = pd.DataFrame({"x": x, "z": z, "y": rng.poisson(lam)})
    model = fit_count_model(table, NEGATIVE_BINOMIAL, "y ~ x + z")
    result = stepwise_select(model, BACKWARD)
    assert result.model.family == NEGATIVE_BINOMIAL
    assert "x" in result.retained
    assert result.model.alpha > 0.1


def test_unknown_direction(full_model):
    with pytest.raises(ValueError):
        stepwise_select(full_model, "sideways")


# ── selection decision ───────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def both_results(full_model):
    return stepwise_select(full_model, BACKWARD), stepwise_select(full_model, FORWARD)


def test_default_policy_keeps_backward(both_results):
    backward, forward = both_results
    decision = choose_selection(backward, forward)
    assert decision.chosen is backward
    assert decision.direction == BACKWARD
    assert decision.policy == "backward"


def test_named_policies(both_results):
    backward, forward = both_results
    assert choose_selection(backward, forward, "forward").chosen is forward
    lowest = choose_selection(backward, forward, "lowest_aic").chosen
    assert lowest.aic == min(backward.aic, forward.aic)
    fewest = choose_selection(backward, forward, "fewest_predictors").chosen
    assert len(fewest.retained) == min(len(backward.retained), len(forward.retained))


def test_agreement_flag_and_payload(both_results):
    backward, forward = both_results
    d = choose_selection(backward, forward).as_dict()
    assert d["backward_forward_agree"] == (set(backward.retained) == set(forward.retained))
    assert d["retained"] == list(backward.retained)
    assert "backward AIC" in d["rationale"]


def test_invalid_selection_policies(both_results, full_model):
    backward, forward = both_results
    with pytest.raises(ValueError):
        choose_selection(backward, forward, "random")
    other = stepwise_select(full_model, BOTH)
    with pytest.raises(ValueError):
        choose_selection(backward, forward, lambda b, f: other)


# ── VIF ──────────────────────────────────────────────────────────────────────

def test_vif_near_one_for_independent_predictors():
    table = signal_and_noise()
    vif = variance_inflation_factors(table, ["a", "b", "c", "d"])
    assert vif.index.tolist() == ["a", "b", "c", "d"]
    assert (vif["vif"] < 1.2).all()
    assert not vif["flagged"].any()


def test_vif_flags_linear_combination():
    table = signal_and_noise()
    table["e"] = table["a"] + table["b"]
    vif = variance_inflation_factors(table, ["a", "b", "c", "e"])
    assert vif.loc[["a", "b", "e"], "flagged"].all()
    assert (vif.loc[["a", "b", "e"], "vif"] > 10).all()
    assert not vif.loc["c", "flagged"]


def test_vif_near_duplicate_exceeds_threshold():
    rng = np.random.default_rng(0)
    a = rng.normal(size=500)
    table = pd.DataFrame({"a": a, "b": a + rng.normal(scale=0.05, size=500),
                          "c": rng.normal(size=500)})
    vif = variance_inflation_factors(table, ["a", "b", "c"], threshold=10.0)
    assert vif.loc["a", "vif"] > 10 and vif.loc["b", "vif"] > 10
    assert vif["flagged"].tolist() == [True, True, False]


def test_vif_edge_cases():
    table = signal_and_noise()
    assert variance_inflation_factors(table, ["a"])["vif"].tolist() == [1.0]
    assert variance_inflation_factors(table, []).empty
    with pytest.raises(DataFormatError):
        variance_inflation_factors(table, ["a", "zz"])


def test_vif_for_model_uses_retained_predictors(full_model):
    reduced = stepwise_select(full_model, BACKWARD).model
    vif = vif_for_model(reduced)
    assert vif.index.tolist() == list(reduced.predictors)
