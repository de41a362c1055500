import dataclasses

import numpy as np
import pandas as pd
import pytest

from conftest import negbin_table, poisson_table
from planet_counts.errors import DataFormatError
from planet_counts.Stage_2_Missing_Data.Missing_Imputer import IMPUTED, ROW_REMOVED
from planet_counts.Stage_3_Count_Models.count_models import (
    NEGATIVE_BINOMIAL, POISSON, fit_count_model,
)
from planet_counts.Stage_4_Evaluation.evaluation import (
    ResidualPattern, choose_family, choose_missing_data_strategy,
    comparison_table, dispersion_ratio, evaluate_model, goodness_of_fit_pvalue,
    overdispersion_lr_test, residual_frame, residual_pattern,
)


@pytest.fixture(scope="module")
def poisson_records():
    table = poisson_table(n=400, seed=11)
    return {
        variant: evaluate_model(fit_count_model(t, POISSON, "y ~ x1 + x2", variant=variant))
        for variant, t in ((ROW_REMOVED, table.iloc[:300]), (IMPUTED, table))
    }


@pytest.fixture(scope="module")
def family_pair():
    table = negbin_table(n=800, seed=4, alpha=0.6)
    pois = evaluate_model(fit_count_model(table, POISSON, "y ~ x", variant=IMPUTED))
    nb = evaluate_model(fit_count_model(table, NEGATIVE_BINOMIAL, "y ~ x", variant=IMPUTED))
    return pois, nb


# ── dispersion and goodness of fit ───────────────────────────────────────────

def test_dispersion_ratio_known_value():
    assert dispersion_ratio([1, 2, 3, 4, 5]) == pytest.approx(2.5 / 3.0)


def test_dispersion_ratio_constant_response_is_zero():
    assert dispersion_ratio(pd.Series([2, 2, 2, 2])) == 0.0


@pytest.mark.parametrize("values", [[3], [0, 0, 0]])
def test_dispersion_ratio_degenerate_input(values):
    with pytest.raises(DataFormatError):
        dispersion_ratio(values)


def test_dispersion_ratio_near_one_for_poisson_draws():
    y = np.random.default_rng(0).poisson(4.0, size=5000)
    assert dispersion_ratio(y) == pytest.approx(1.0, abs=0.1)


def test_gof_pvalue_is_a_probability(poisson_records):
    for record in poisson_records.values():
        assert 0.0 <= goodness_of_fit_pvalue(record.model) <= 1.0


def test_gof_pvalue_rarely_small_for_well_specified_models():
    pvalues = []
    for seed in range(20):
        rng = np.random.default_rng(100 + seed)
        x = rng.normal(size=200)
        table = pd.DataFrame({"x": x, "y": rng.poisson(np.exp(1.9 + 0.1 * x))})
        pvalues.append(goodness_of_fit_pvalue(fit_count_model(table, POISSON, "y ~ x")))
    assert np.median(pvalues) > 0.05


def test_gof_pvalue_small_for_overdispersed_poisson_fit(family_pair):
    pois, _ = family_pair
    assert pois.gof_pvalue < 0.01


# ── residuals ────────────────────────────────────────────────────────────────

def test_residual_frame_columns_and_index(poisson_records):
    model = poisson_records[ROW_REMOVED].model
    frame = residual_frame(model)
    assert list(frame.columns) == ["observed", "fitted", "linear_predictor",
                                   "resid_deviance", "resid_pearson"]
    assert frame.index.equals(model.data.index)
    np.testing.assert_allclose(frame["resid_pearson"],
                               (frame["observed"] - frame["fitted"]) / np.sqrt(frame["fitted"]))


def test_residual_pattern_detects_missing_curvature():
    rng = np.random.default_rng(2)
    x = rng.uniform(-2, 2, size=600)
    table = pd.DataFrame({"x": x, "x_sq": x ** 2,
                          "y": rng.poisson(np.exp(0.3 + 0.6 * x ** 2))})
    wrong = residual_pattern(fit_count_model(table, POISSON, "y ~ x"))
    right = residual_pattern(fit_count_model(table, POISSON, "y ~ x + x_sq"))
    assert wrong.curvature > right.curvature
    assert wrong.score > right.score
    assert right.n == 600


def test_residual_pattern_handles_intercept_only_model():
    pattern = residual_pattern(fit_count_model(poisson_table(n=100), POISSON, "y ~ 1"))
    assert pattern.spread_trend == 0.0
    assert np.isfinite(pattern.curvature)


def test_comparison_table_has_one_row_per_model(poisson_records):
    table = comparison_table(poisson_records.values())
    assert table.index.names == ["variant", "family"]
    assert len(table) == 2
    assert {"dispersion_ratio", "gof_pvalue", "residual_pattern_score",
            "deviance", "df_resid", "aic"} <= set(table.columns)


# ── family decision ──────────────────────────────────────────────────────────

def test_overdispersed_response_selects_negbin(family_pair):
    pois, nb = family_pair
    decision = choose_family(pois, nb)
    assert pois.dispersion_ratio > 1.5
    assert decision.family == NEGATIVE_BINOMIAL
    assert decision.lr_pvalue < 0.01
    assert "overdispersed" in decision.rationale


@pytest.mark.parametrize("ratio, expected", [
    (0.8, POISSON), (1.0, POISSON), (1.5, POISSON), (1.5001, NEGATIVE_BINOMIAL)])
def test_threshold_boundary(family_pair, ratio, expected):
    pois, nb = family_pair
    pois = dataclasses.replace(pois, dispersion_ratio=ratio)
    assert choose_family(pois, nb, threshold=1.5).family == expected


def test_choose_family_checks_its_inputs(family_pair, poisson_records):
    pois, nb = family_pair
    with pytest.raises(ValueError):
        choose_family(nb, pois)
    with pytest.raises(ValueError):
        choose_family(poisson_records[ROW_REMOVED], nb)


def test_lr_test_bounds(family_pair):
    pois, nb = family_pair
    stat, p = overdispersion_lr_test(pois.model, nb.model)
    assert stat > 0
    assert 0.0 <= p <= 0.5
    assert overdispersion_lr_test(pois.model, pois.model) == (0.0, 1.0)


def test_family_decision_serialises(family_pair):
    d = choose_family(*family_pair).as_dict()
    assert set(d) == {"family", "dispersion_ratio", "threshold",
                      "lr_statistic", "lr_pvalue", "rationale"}


# ── missing-data decision ────────────────────────────────────────────────────

def _with_score(record, curvature):
    return dataclasses.replace(record, pattern=ResidualPattern(curvature, 0.0, record.pattern.n))


def test_residual_pattern_policy_prefers_lower_score(poisson_records):
    records = {ROW_REMOVED: _with_score(poisson_records[ROW_REMOVED], 0.05),
               IMPUTED: _with_score(poisson_records[IMPUTED], 0.30)}
    decision = choose_missing_data_strategy(records)
    assert decision.variant == ROW_REMOVED
    assert decision.policy == "residual_pattern"
    assert decision.scores == {ROW_REMOVED: pytest.approx(0.05), IMPUTED: pytest.approx(0.30)}


def test_near_tie_goes_to_imputed(poisson_records):
    records = {ROW_REMOVED: _with_score(poisson_records[ROW_REMOVED], 0.100),
               IMPUTED: _with_score(poisson_records[IMPUTED], 0.105)}
    assert choose_missing_data_strategy(records).variant == IMPUTED


@pytest.mark.parametrize("policy", [ROW_REMOVED, IMPUTED])
def test_forced_policies(poisson_records, policy):
    decision = choose_missing_data_strategy(poisson_records, policy=policy)
    assert decision.variant == policy
    assert decision.policy == policy


def test_callable_policy(poisson_records):
    def most_rows(records):
        return max(records, key=lambda v: records[v].model.n_obs)

    decision = choose_missing_data_strategy(poisson_records, policy=most_rows)
    assert decision.variant == IMPUTED
    assert decision.policy == "most_rows"


def test_invalid_policies(poisson_records):
    with pytest.raises(ValueError):
        choose_missing_data_strategy(poisson_records, policy="coin_flip")
    with pytest.raises(ValueError):
        choose_missing_data_strategy(poisson_records, policy=lambda r: "median_fill")
    with pytest.raises(ValueError):
        choose_missing_data_strategy({})


def test_variants_must_share_a_family(poisson_records, family_pair):
    _, nb = family_pair
    with pytest.raises(ValueError):
        choose_missing_data_strategy({ROW_REMOVED: poisson_records[ROW_REMOVED],
                                      IMPUTED: nb})
