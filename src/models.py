"""
Linear trend models for log(TN).

Fits the model sequence used by the TN trend analysis:
- saturated two-way model (year, station, month and all pairwise interactions)
- AIC stepwise reduction of the saturated model
- polynomial-in-year check, compared to the stepwise model with a nested F-test
- final model with a separate year slope per station

Model terms are carried as tuples of factor names so the written term order can
be preserved exactly. Patsy regroups terms by their numeric factors when it
builds a design, so sequential (Type I) sums of squares are computed here from
the design's term column blocks in the written order rather than in patsy's.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.stats.anova import anova_lm

logger = logging.getLogger(__name__)

Term = Tuple[str, ...]

RESPONSE = "log_tn"

# log_tn ~ (year + station + month)^2
SATURATED_TERMS: List[Term] = [
    ("year",),
    ("station",),
    ("month",),
    ("year", "station"),
    ("year", "month"),
    ("station", "month"),
]

# log_tn ~ poly(year, 2) * station + month + month:year
# The linear polynomial component is carried by year itself: with an intercept both
# span the same space, and year keeps the month:year block contrast-coded.
POLYNOMIAL_TERMS: List[Term] = [
    ("year",),
    ("year_poly2",),
    ("station",),
    ("year", "station"),
    ("year_poly2", "station"),
    ("month",),
    ("year", "month"),
]

# log_tn ~ station + station:year + month
FINAL_TERMS: List[Term] = [
    ("station",),
    ("station", "year"),
    ("month",),
]


class ModelFitError(RuntimeError):
    """Raised when a regression model cannot be fit."""

    pass


@dataclass
class ModelParams:
    # Two-sided significance threshold for per-station trends
    alpha: float = 0.05
    # Safety bound on stepwise iterations
    stepwise_max_steps: int = 1000
    # When False, a rank-deficient design raises ModelFitError
    allow_rank_deficient: bool = False


@dataclass
class FittedModel:
    label: str
    terms: List[Term]
    formula: str
    results: Any
    anova: pd.DataFrame
    coefficients: pd.DataFrame
    aic: float


@dataclass
class StepRecord:
    step: int
    action: str
    term: Optional[str]
    aic: float


@dataclass
class ModelOutputs:
    saturated: Optional[FittedModel] = None
    stepwise: Optional[FittedModel] = None
    polynomial: Optional[FittedModel] = None
    final: Optional[FittedModel] = None
    stepwise_trace: List[StepRecord] = field(default_factory=list)
    nested_test: Optional[pd.DataFrame] = None
    trends: Optional[pd.DataFrame] = None
    failures: Dict[str, str] = field(default_factory=dict)


def term_name(term: Term) -> str:
    return ":".join(term)


def build_formula(terms: Sequence[Term], response: str = RESPONSE) -> str:
    """
    Build a patsy formula from term tuples, keeping the given order.
    E.g. [("year",), ("year", "station")] -> 'log_tn ~ year + year:station'
    """
    if not terms:
        return f"{response} ~ 1"
    return f"{response} ~ " + " + ".join(term_name(t) for t in terms)


def orthogonal_poly(x, degree: int = 2) -> np.ndarray:
    """
    Orthogonal polynomial basis of x (constant column excluded).

    Columns are orthogonal to each other and to the constant and scaled to unit
    norm, matching the usual poly() construction.
    """
    x = np.asarray(x, dtype=float)
    if len(np.unique(x)) <= degree:
        raise ValueError(
            f"'degree' must be less than number of unique points ({len(np.unique(x))})"
        )
    xc = x - x.mean()
    X = np.vander(xc, degree + 1, increasing=True)
    q, r = np.linalg.qr(X)
    z = q * np.diag(r)
    z = z / np.sqrt((z**2).sum(axis=0))
    return z[:, 1:]


def add_year_polynomial(df: pd.DataFrame, degree: int = 2) -> pd.DataFrame:
    """Return a copy of df with year_poly1..year_poly<degree> columns."""
    basis = orthogonal_poly(df["year"].to_numpy(), degree)
    extra = {f"year_poly{i + 1}": basis[:, i] for i in range(degree)}
    return df.assign(**extra)


def _design_rank(exog: np.ndarray) -> int:
    if exog.shape[1] == 0:
        return 0
    return int(np.linalg.matrix_rank(exog))


def _rss(y: np.ndarray, exog: np.ndarray) -> float:
    if exog.shape[1] == 0:
        return float(np.sum(y**2))
    res = sm.OLS(y, exog).fit()
    return float(res.ssr)


def _fit_terms(data: pd.DataFrame, terms: Sequence[Term]):
    formula = build_formula(terms)
    try:
        results = smf.ols(formula, data=data).fit()
    except Exception as e:
        raise ModelFitError(f"Failed to fit '{formula}': {e}") from e
    return formula, results


def lm_aic(results) -> float:
    """
    AIC on the least-squares scale: n * log(RSS / n) + 2 * edf, edf = design rank.
    Used for stepwise comparisons; differs from results.aic only by a constant.
    """
    n = float(results.nobs)
    edf = _design_rank(results.model.exog)
    return float(n * np.log(results.ssr / n) + 2 * edf)


def sequential_anova(results, terms: Sequence[Term]) -> pd.DataFrame:
    """
    Type I ANOVA table for a fitted formula model, in the given term order.

    Each term's sum of squares is the drop in residual sum of squares when its
    column block is added after the intercept and all earlier terms; its df is
    the resulting increase in design rank. Term SS plus residual SS equals the
    total corrected sum of squares.
    """
    design_info = results.model.data.design_info
    exog = np.asarray(results.model.exog)
    y = np.asarray(results.model.endog)
    slices = design_info.term_name_slices

    cols: List[int] = []
    if "Intercept" in slices:
        cols.extend(range(exog.shape[1])[slices["Intercept"]])

    prev_rss = _rss(y, exog[:, cols])
    prev_rank = _design_rank(exog[:, cols])

    rows = []
    index = []
    for term in terms:
        name = term_name(term)
        if name not in slices:
            raise ModelFitError(f"Term '{name}' not found in model design")
        cols.extend(range(exog.shape[1])[slices[name]])
        sub = exog[:, cols]
        rss = _rss(y, sub)
        rank = _design_rank(sub)
        rows.append({"df": float(rank - prev_rank), "sum_sq": max(prev_rss - rss, 0.0)})
        index.append(name)
        prev_rss, prev_rank = rss, rank

    df_resid = float(results.df_resid)
    rows.append({"df": df_resid, "sum_sq": float(results.ssr)})
    index.append("Residual")

    table = pd.DataFrame(rows, index=index)
    with np.errstate(divide="ignore", invalid="ignore"):
        table["mean_sq"] = table["sum_sq"] / table["df"]
        resid_ms = table.loc["Residual", "mean_sq"]
        table["F"] = table["mean_sq"] / resid_ms
    table["PR(>F)"] = stats.f.sf(table["F"], table["df"], df_resid)
    table.loc["Residual", ["F", "PR(>F)"]] = np.nan
    table.loc[table["df"] == 0, ["mean_sq", "F", "PR(>F)"]] = np.nan
    return table


def coefficient_table(results) -> pd.DataFrame:
    """Estimate, standard error, t value and p-value per coefficient."""
    return pd.DataFrame(
        {
            "estimate": results.params,
            "std_error": results.bse,
            "t_value": results.tvalues,
            "p_value": results.pvalues,
        }
    )


def fit_model(
    data: pd.DataFrame,
    terms: Sequence[Term],
    label: str,
    params: ModelParams,
) -> FittedModel:
    """
    Fit an OLS model of log_tn on the given terms and compute its Type I ANOVA.

    Raises ModelFitError on empty data, fitting failures, or a rank-deficient
    design when params.allow_rank_deficient is False.
    """
    if data is None or data.empty:
        raise ModelFitError(f"{label}: no rows to fit")

    formula, results = _fit_terms(data, terms)
    exog = results.model.exog
    rank = _design_rank(exog)
    if rank < exog.shape[1]:
        msg = (
            f"{label}: design matrix is rank deficient (rank {rank} < "
            f"{exog.shape[1]} columns); some station/month combinations have too few observations"
        )
        if not params.allow_rank_deficient:
            raise ModelFitError(msg)
        logger.warning(msg)
    if results.df_resid <= 0:
        raise ModelFitError(f"{label}: no residual degrees of freedom")

    anova = sequential_anova(results, terms)
    logger.info(f"Fitted {label}: {formula} (n={int(results.nobs)}, rank={rank})")
    return FittedModel(
        label=label,
        terms=list(terms),
        formula=formula,
        results=results,
        anova=anova,
        coefficients=coefficient_table(results),
        aic=lm_aic(results),
    )


def _is_contained(inner: Term, outer: Term) -> bool:
    return inner != outer and set(inner) < set(outer)


def _droppable(terms: Sequence[Term]) -> List[Term]:
    # Marginality: a term may go only if no higher-order term in the model contains it
    return [t for t in terms if not any(_is_contained(t, o) for o in terms)]


def _addable(terms: Sequence[Term], scope: Sequence[Term]) -> List[Term]:
    current = {frozenset(t) for t in terms}
    scope_sets = {frozenset(t) for t in scope}
    out = []
    for t in scope:
        if frozenset(t) in current:
            continue
        margins = [
            frozenset(c)
            for k in range(1, len(t))
            for c in combinations(t, k)
            if frozenset(c) in scope_sets
        ]
        if all(m in current for m in margins):
            out.append(t)
    return out


def _ordered_by_scope(terms: Sequence[Term], scope: Sequence[Term]) -> List[Term]:
    position = {frozenset(t): i for i, t in enumerate(scope)}
    return sorted(terms, key=lambda t: position[frozenset(t)])


def stepwise_aic(
    data: pd.DataFrame,
    start_terms: Sequence[Term],
    params: ModelParams,
) -> Tuple[List[Term], List[StepRecord]]:
    """
    Bidirectional AIC term selection starting from start_terms.

    The starting model is the upper scope. At each step the current model is
    evaluated first, then every droppable term (in model order) and every
    addable scope term (in scope order); the first candidate with strictly
    lowest AIC is taken. Stops when nothing improves AIC or after
    params.stepwise_max_steps moves. Term order always follows the scope.
    """
    scope = list(start_terms)
    current = list(start_terms)
    _, results = _fit_terms(data, current)
    current_aic = lm_aic(results)
    trace = [StepRecord(step=0, action="start", term=None, aic=current_aic)]

    for step in range(1, params.stepwise_max_steps + 1):
        best: Optional[Tuple[str, Term, float]] = None
        best_aic = current_aic

        candidates = [("-", t) for t in _droppable(current)] + [
            ("+", t) for t in _addable(current, scope)
        ]
        for action, term in candidates:
            if action == "-":
                trial = [t for t in current if t != term]
            else:
                trial = _ordered_by_scope(current + [term], scope)
            _, trial_res = _fit_terms(data, trial)
            trial_aic = lm_aic(trial_res)
            logger.debug(f"step {step}: {action} {term_name(term)} AIC={trial_aic:.4f}")
            if trial_aic < best_aic:
                best_aic = trial_aic
                best = (action, term, trial_aic)

        if best is None:
            break

        action, term, aic = best
        if action == "-":
            current = [t for t in current if t != term]
        else:
            current = _ordered_by_scope(current + [term], scope)
        current_aic = aic
        trace.append(
            StepRecord(step=step, action=action, term=term_name(term), aic=aic)
        )
        logger.info(f"Stepwise {action} {term_name(term)} -> AIC={aic:.4f}")

    return current, trace


def compare_nested_models(reduced: FittedModel, full: FittedModel) -> pd.DataFrame:
    """Nested-model F-test (reduced vs full) as an anova_lm comparison table."""
    try:
        table = anova_lm(reduced.results, full.results)
    except Exception as e:
        raise ModelFitError(f"Nested model comparison failed: {e}") from e
    table.index = [reduced.label, full.label]
    return table


def extract_station_trends(
    final: FittedModel,
    data: pd.DataFrame,
    alpha: float = 0.05,
    display_column: Optional[str] = "display_name",
) -> pd.DataFrame:
    """
    Per-station year slopes from the final model.

    One row per station level with slope (log scale per year), standard error,
    t, p, a (1 - alpha) confidence interval, significance flag, percent change
    per year and the number of observations.
    """
    results = final.results
    slices = results.model.data.design_info.term_name_slices
    name = term_name(("station", "year"))
    if name not in slices:
        raise ModelFitError(f"Final model has no '{name}' term")

    exog_names = list(results.model.exog_names)
    slope_cols = exog_names[slices[name]]
    levels = list(data["station"].cat.categories)
    if len(slope_cols) != len(levels):
        raise ModelFitError(
            f"Expected one slope per station ({len(levels)}), found {len(slope_cols)}"
        )

    ci = results.conf_int(alpha=alpha)
    counts = data.groupby("station", observed=False).size()
    names = {}
    if display_column and display_column in data.columns:
        names = (
            data.drop_duplicates(subset=["station"])
            .set_index("station")[display_column]
            .to_dict()
        )

    rows = []
    for level, col in zip(levels, slope_cols):
        slope = float(results.params[col])
        p = float(results.pvalues[col])
        rows.append(
            {
                "station": level,
                "display_name": names.get(level),
                "slope": slope,
                "std_error": float(results.bse[col]),
                "t_value": float(results.tvalues[col]),
                "p_value": p,
                "ci_low": float(ci.loc[col, 0]),
                "ci_high": float(ci.loc[col, 1]),
                "significant": bool(p < alpha),
                "pct_change_per_year": float(100.0 * np.expm1(slope)),
                "n_obs": int(counts.get(level, 0)),
            }
        )
    return pd.DataFrame(rows)


def fit_trend_models(
    core_months_data: pd.DataFrame, params: ModelParams
) -> ModelOutputs:
    """
    Fit the saturated, stepwise, polynomial and final models on core-months data.

    A failing model is recorded in outputs.failures and does not stop later
    independent stages: the stepwise model needs the saturated model, the
    nested F-test needs the stepwise and polynomial models, the final model and
    trend table stand alone.
    """
    out = ModelOutputs()

    try:
        out.saturated = fit_model(
            core_months_data, SATURATED_TERMS, "Model 1 (saturated)", params
        )
    except ModelFitError as e:
        logger.error(str(e))
        out.failures["saturated"] = str(e)

    if out.saturated is not None:
        try:
            reduced_terms, out.stepwise_trace = stepwise_aic(
                core_months_data, out.saturated.terms, params
            )
            out.stepwise = fit_model(
                core_months_data, reduced_terms, "Model 2 (stepwise)", params
            )
        except ModelFitError as e:
            logger.error(str(e))
            out.failures["stepwise"] = str(e)
    else:
        out.failures["stepwise"] = "skipped: saturated model unavailable"

    try:
        poly_data = add_year_polynomial(core_months_data, degree=2)
        out.polynomial = fit_model(
            poly_data, POLYNOMIAL_TERMS, "Model 3 (polynomial)", params
        )
    except (ModelFitError, ValueError) as e:
        logger.error(str(e))
        out.failures["polynomial"] = str(e)

    if out.stepwise is not None and out.polynomial is not None:
        try:
            out.nested_test = compare_nested_models(out.stepwise, out.polynomial)
        except ModelFitError as e:
            logger.error(str(e))
            out.failures["nested_test"] = str(e)
    else:
        out.failures["nested_test"] = "skipped: stepwise or polynomial model unavailable"

    try:
        out.final = fit_model(core_months_data, FINAL_TERMS, "Final model", params)
        out.trends = extract_station_trends(
            out.final, core_months_data, alpha=params.alpha
        )
    except ModelFitError as e:
        logger.error(str(e))
        out.failures["final"] = str(e)

    return out
