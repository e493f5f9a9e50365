from itertools import combinations

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf
from statsmodels.stats.anova import anova_lm

from src.main import (
    LoadParams,
    SelectionParams,
    TransformParams,
    load_inputs,
    prepare_trend_data,
)
from src.models import (
    FINAL_TERMS,
    POLYNOMIAL_TERMS,
    SATURATED_TERMS,
    ModelFitError,
    ModelParams,
    add_year_polynomial,
    build_formula,
    fit_model,
    fit_trend_models,
    orthogonal_poly,
    sequential_anova,
    stepwise_aic,
    term_name,
)
from synthetic_data import make_names, make_samples, write_inputs


def _total_ss(y) -> float:
    y = np.asarray(y, dtype=float)
    return float(((y - y.mean()) ** 2).sum())


def test_build_formula_keeps_written_order():
    assert build_formula(FINAL_TERMS) == "log_tn ~ station + station:year + month"
    assert build_formula([]) == "log_tn ~ 1"


def test_orthogonal_poly_properties():
    x = np.repeat(np.arange(2005, 2021), 3)
    basis = orthogonal_poly(x, degree=2)
    assert basis.shape == (len(x), 2)
    # Orthogonal to the constant and to each other, unit norm
    assert np.allclose(basis.sum(axis=0), 0.0, atol=1e-10)
    assert np.allclose(basis.T @ basis, np.eye(2), atol=1e-10)
    # First column is linear in x
    assert abs(np.corrcoef(basis[:, 0], x)[0, 1]) == pytest.approx(1.0)


def test_orthogonal_poly_needs_enough_unique_points():
    with pytest.raises(ValueError):
        orthogonal_poly([2000, 2001, 2000, 2001], degree=2)


def test_sequential_anova_sums_to_total_ss(trend, models):
    for fitted in (models.saturated, models.stepwise, models.polynomial, models.final):
        assert fitted is not None
        table = fitted.anova
        y = fitted.results.model.endog
        assert table["sum_sq"].sum() == pytest.approx(_total_ss(y), rel=1e-9)
        assert table["df"].sum() == pytest.approx(len(y) - 1)
        assert list(table.index) == [term_name(t) for t in fitted.terms] + ["Residual"]


def test_sequential_anova_matches_anova_lm_when_order_is_kept(trend):
    data = trend.core_months_data
    results = smf.ols("log_tn ~ station + month", data=data).fit()
    ours = sequential_anova(results, [("station",), ("month",)])
    reference = anova_lm(results, typ=1)
    np.testing.assert_allclose(
        ours["sum_sq"].to_numpy(), reference["sum_sq"].to_numpy(), rtol=1e-9
    )
    np.testing.assert_allclose(
        ours.loc[["station", "month"], "PR(>F)"].to_numpy(),
        reference.loc[["station", "month"], "PR(>F)"].to_numpy(),
        rtol=1e-6,
    )


def test_sequential_anova_final_model_written_order(models):
    # year enters only through station:year, listed before month
    assert list(models.final.anova.index) == ["station", "station:year", "month", "Residual"]
    # One slope per station
    assert models.final.anova.loc["station:year", "df"] == 3


def test_stepwise_respects_marginality_and_scope_order(trend):
    terms, trace = stepwise_aic(trend.core_months_data, SATURATED_TERMS, ModelParams())
    present = {frozenset(t) for t in terms}
    scope = {frozenset(t) for t in SATURATED_TERMS}
    for t in terms:
        for k in range(1, len(t)):
            for margin in combinations(t, k):
                if frozenset(margin) in scope:
                    assert frozenset(margin) in present
    positions = [SATURATED_TERMS.index(t) for t in terms]
    assert positions == sorted(positions)

    assert trace[0].action == "start"
    aics = [r.aic for r in trace]
    assert all(b < a for a, b in zip(aics, aics[1:]))


def test_stepwise_reduces_model_and_keeps_station_slopes(trend):
    # No station-by-month or year-by-month structure in the synthetic data
    terms, _ = stepwise_aic(trend.core_months_data, SATURATED_TERMS, ModelParams())
    assert len(terms) < len(SATURATED_TERMS)
    # Station-specific slopes are real and must stay
    assert ("year", "station") in terms


def test_stepwise_max_steps_bounds_moves(trend):
    _, trace = stepwise_aic(
        trend.core_months_data, SATURATED_TERMS, ModelParams(stepwise_max_steps=1)
    )
    assert len(trace) <= 2


def test_polynomial_model_and_nested_test(trend, models):
    assert [term_name(t) for t in models.polynomial.terms] == [
        term_name(t) for t in POLYNOMIAL_TERMS
    ]
    nested = models.nested_test
    assert list(nested.index) == [models.stepwise.label, models.polynomial.label]
    assert "F" in nested.columns and "Pr(>F)" in nested.columns


def test_add_year_polynomial_adds_columns(trend):
    out = add_year_polynomial(trend.core_months_data)
    assert {"year_poly1", "year_poly2"} <= set(out.columns)
    assert "year_poly1" not in trend.core_months_data.columns


def test_final_trend_table(models):
    trends = models.trends.set_index("station")
    assert list(trends.index) == ["S1", "S2", "S3"]
    assert list(trends.columns) == [
        "display_name",
        "slope",
        "std_error",
        "t_value",
        "p_value",
        "ci_low",
        "ci_high",
        "significant",
        "pct_change_per_year",
        "n_obs",
    ]
    # Synthetic slopes: S1 decreasing, S3 increasing
    assert trends.loc["S1", "slope"] < 0 and trends.loc["S1", "significant"]
    assert trends.loc["S3", "slope"] > 0 and trends.loc["S3", "significant"]
    assert trends.loc["S1", "slope"] == pytest.approx(-0.02, abs=0.01)
    assert (trends["ci_low"] < trends["slope"]).all()
    assert (trends["slope"] < trends["ci_high"]).all()
    np.testing.assert_allclose(
        trends["pct_change_per_year"], 100.0 * np.expm1(trends["slope"])
    )
    assert trends.loc["S1", "display_name"] == "Upper Bay"
    assert trends["n_obs"].sum() == len(models.final.results.model.endog)


def test_fit_trend_models_is_deterministic(trend, models):
    again = fit_trend_models(trend.core_months_data, ModelParams())
    pd.testing.assert_frame_equal(again.trends, models.trends, check_exact=True)
    pd.testing.assert_frame_equal(
        again.saturated.anova, models.saturated.anova, check_exact=True
    )
    assert [r.term for r in again.stepwise_trace] == [
        r.term for r in models.stepwise_trace
    ]
    assert not again.failures


def test_fit_model_empty_data_raises(trend):
    with pytest.raises(ModelFitError):
        fit_model(trend.core_months_data.iloc[0:0], FINAL_TERMS, "empty", ModelParams())


def test_rank_deficient_saturated_model_is_recorded(tmp_path):
    # S1 never sampled in July -> empty station:month cell
    samples = make_samples(skip={("S1", 7)})
    samples_path, names_path = write_inputs(tmp_path, samples, make_names())
    loaded = load_inputs(LoadParams(samples_path=samples_path, names_path=names_path))
    trend = prepare_trend_data(loaded, SelectionParams(), TransformParams())

    out = fit_trend_models(trend.core_months_data, ModelParams())
    assert out.saturated is None
    assert "rank deficient" in out.failures["saturated"]
    assert out.stepwise is None and "stepwise" in out.failures
    assert out.nested_test is None and "nested_test" in out.failures
    # Independent stages still run
    assert out.polynomial is not None
    assert out.final is not None
    assert len(out.trends) == 3

    allowed = fit_trend_models(
        trend.core_months_data, ModelParams(allow_rank_deficient=True)
    )
    assert allowed.saturated is not None
