"""
Report rendering for the TN trend pipeline.

Produces the text report (coverage tables, ANOVA and coefficient tables, the
stepwise trace, the nested F-test and the per-station trend table) and the SVG
figures (residual diagnostics per model, TN by station, seasonal coverage,
per-station trend coefficients). Pure side effects: nothing here feeds back
into the analysis.
"""

import logging
import math
from pathlib import Path
from typing import Optional

# Ensure a non-interactive Matplotlib backend is selected before pyplot is imported
# so rendering works in headless environments.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm

logger = logging.getLogger(__name__)

DATA_COLOR = "#00FFFF"
TREND_UP_COLOR = "#FF3B30"
TREND_DOWN_COLOR = "#7FFFD4"
NEUTRAL_COLOR = "#FFD60A"


def _fmt_num(x, decimals: int = 4) -> str:
    if x is None:
        return "-"
    try:
        xf = float(x)
    except (TypeError, ValueError):
        return str(x)
    if not math.isfinite(xf):
        return "-"
    if xf != 0 and abs(xf) < 10 ** (-decimals):
        return f"{xf:.{decimals - 1}e}"
    return f"{xf:.{decimals}f}"


def _fmt_frame(df: pd.DataFrame, decimals: int = 4, index: bool = True) -> str:
    if df is None or df.empty:
        return "(no rows)"
    with pd.option_context("display.max_rows", None, "display.max_columns", None):
        return df.to_string(
            index=index,
            float_format=lambda v: _fmt_num(v, decimals),
            na_rep="-",
        )


def _significance_stars(p: float) -> str:
    if p is None or not math.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    if p < 0.1:
        return "."
    return ""


def format_anova(anova: pd.DataFrame) -> str:
    return _fmt_frame(anova)


def format_coefficients(coefficients: pd.DataFrame) -> str:
    table = coefficients.assign(
        sig=[_significance_stars(p) for p in coefficients["p_value"]]
    )
    return _fmt_frame(table)


def _section(title: str) -> str:
    return f"{title}\n{'=' * len(title)}"


def _model_section(fitted, failure: Optional[str], title: str) -> list[str]:
    parts = [_section(title)]
    if fitted is None:
        parts.append(f"Model not available: {failure or 'not fitted'}")
        return parts
    res = fitted.results
    parts.append(f"Formula: {fitted.formula}")
    parts.append(
        f"n={int(res.nobs)}  R²={res.rsquared:.4f}  adj. R²={res.rsquared_adj:.4f}  "
        f"AIC(lm)={fitted.aic:.2f}  residual SE={math.sqrt(res.scale):.4f} on {int(res.df_resid)} df"
    )
    parts.append("")
    parts.append("Sequential (Type I) ANOVA:")
    parts.append(format_anova(fitted.anova))
    parts.append("")
    parts.append("Coefficients:")
    parts.append(format_coefficients(fitted.coefficients))
    parts.append("Signif. codes: 0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")
    return parts


def assemble_text_report(
    samples: pd.DataFrame,
    trend,
    models,
    alpha: float = 0.05,
) -> str:
    """
    Create a concise, readable report covering data selection and every model.

    Parameters:
      - samples: loaded sample table (before selection)
      - trend: TrendDataOutputs from prepare_trend_data()
      - models: ModelOutputs from fit_trend_models()
    """
    parts: list[str] = []

    parts.append(_section("Input data"))
    parts.append(
        f"Samples: {len(samples)} rows, {samples['station'].nunique()} stations, "
        f"years {samples['year'].min()}-{samples['year'].max()}"
    )
    parts.append(
        f"Trend stations: {len(trend.trend_stations)}; trend rows: {len(trend.trend_data)}; "
        f"core-month rows: {len(trend.core_months_data)}"
    )
    parts.append("")

    parts.append(_section("Station coverage (years with TN samples)"))
    parts.append(_fmt_frame(trend.station_coverage, index=False))
    parts.append("")

    parts.append(_section("Seasonal coverage of trend stations (samples per year/month)"))
    parts.append(_fmt_frame(trend.seasonal_coverage))
    parts.append("")

    parts.extend(
        _model_section(
            models.saturated,
            models.failures.get("saturated"),
            "Model 1: saturated two-way model",
        )
    )
    parts.append("")

    parts.append(_section("Stepwise AIC selection"))
    if models.stepwise_trace:
        trace = pd.DataFrame(
            [
                {
                    "step": r.step,
                    "action": r.action,
                    "term": r.term or "",
                    "AIC": r.aic,
                }
                for r in models.stepwise_trace
            ]
        )
        parts.append(_fmt_frame(trace, decimals=2, index=False))
    else:
        parts.append("(no stepwise trace)")
    parts.append("")
    parts.extend(
        _model_section(
            models.stepwise,
            models.failures.get("stepwise"),
            "Model 2: stepwise-reduced model",
        )
    )
    parts.append("")

    parts.extend(
        _model_section(
            models.polynomial,
            models.failures.get("polynomial"),
            "Model 3: quadratic-in-year check",
        )
    )
    parts.append("")
    parts.append(_section("Nested F-test: Model 2 vs Model 3"))
    if models.nested_test is not None:
        parts.append(_fmt_frame(models.nested_test))
    else:
        parts.append(f"Not available: {models.failures.get('nested_test', 'not run')}")
    parts.append("")

    parts.extend(
        _model_section(
            models.final,
            models.failures.get("final"),
            "Final model: separate year slope per station",
        )
    )
    parts.append("")

    parts.append(_section("Per-station TN trends (log scale, per year)"))
    if models.trends is not None and not models.trends.empty:
        parts.append(_fmt_frame(models.trends, index=False))
        sig = models.trends.loc[models.trends["significant"]]
        parts.append("")
        parts.append(f"Stations with a significant trend (p < {alpha}): {len(sig)}")
        for row in sig.itertuples(index=False):
            label = row.display_name if isinstance(row.display_name, str) else row.station
            direction = "increasing" if row.slope > 0 else "decreasing"
            parts.append(
                f"  - {label} ({row.station}): {direction}, "
                f"{row.pct_change_per_year:+.2f}%/yr (p={_fmt_num(row.p_value)})"
            )
    else:
        parts.append(f"Not available: {models.failures.get('final', 'not fitted')}")

    return "\n".join(parts)


def render_diagnostics(fitted, output_svg: str) -> str:
    """
    Four-panel residual diagnostics: residuals vs fitted, normal Q-Q,
    scale-location and residuals vs leverage (sized by Cook's distance).
    """
    res = fitted.results
    fitted_values = np.asarray(res.fittedvalues)
    resid = np.asarray(res.resid)
    influence = res.get_influence()
    leverage = np.asarray(influence.hat_matrix_diag)
    with np.errstate(divide="ignore", invalid="ignore"):
        std_resid = np.asarray(influence.resid_studentized_internal)
        cooks = np.asarray(influence.cooks_distance[0])
    std_resid = np.where(np.isfinite(std_resid), std_resid, 0.0)
    cooks = np.where(np.isfinite(cooks), cooks, 0.0)

    plt.style.use("dark_background")
    fig, axes = plt.subplots(2, 2, figsize=(11, 9))

    ax = axes[0, 0]
    ax.scatter(fitted_values, resid, s=10, color=DATA_COLOR, alpha=0.5)
    ax.axhline(0.0, color=NEUTRAL_COLOR, linewidth=1.0, linestyle="--")
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("Residuals")
    ax.set_title("Residuals vs Fitted")

    ax = axes[0, 1]
    sm.qqplot(std_resid, line="45", ax=ax, markersize=3, alpha=0.5)
    ax.set_title("Normal Q-Q")
    ax.set_xlabel("Theoretical quantiles")
    ax.set_ylabel("Standardized residuals")

    ax = axes[1, 0]
    ax.scatter(fitted_values, np.sqrt(np.abs(std_resid)), s=10, color=DATA_COLOR, alpha=0.5)
    ax.set_xlabel("Fitted values")
    ax.set_ylabel("√|Standardized residuals|")
    ax.set_title("Scale-Location")

    ax = axes[1, 1]
    sizes = 10 + 200 * (cooks / cooks.max() if cooks.max() > 0 else cooks)
    ax.scatter(leverage, std_resid, s=sizes, color=DATA_COLOR, alpha=0.5)
    ax.axhline(0.0, color=NEUTRAL_COLOR, linewidth=1.0, linestyle="--")
    ax.set_xlabel("Leverage")
    ax.set_ylabel("Standardized residuals")
    ax.set_title("Residuals vs Leverage (size = Cook's distance)")

    fig.suptitle(fitted.label)
    fig.tight_layout()
    fig.savefig(output_svg)
    plt.close(fig)
    return output_svg


def render_station_boxplot(trend_data: pd.DataFrame, output_svg: str) -> str:
    """TN by station, stations in median-TN order (category order)."""
    levels = list(trend_data["station"].cat.categories)
    groups = [
        trend_data.loc[trend_data["station"] == s, "tn"].to_numpy() for s in levels
    ]
    names = (
        trend_data.drop_duplicates(subset=["station"])
        .set_index("station")["display_name"]
        .to_dict()
    )
    labels = [names.get(s) if isinstance(names.get(s), str) else s for s in levels]

    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(max(6, 0.6 * len(levels) + 2), 6))
    ax.boxplot(groups, showfliers=True)
    ax.set_xticks(range(1, len(levels) + 1))
    ax.set_xticklabels(labels, rotation=60, ha="right")
    ax.set_ylabel("TN (mg/L)")
    ax.set_title("TN by trend station (ordered by median)")
    fig.tight_layout()
    fig.savefig(output_svg)
    plt.close(fig)
    return output_svg


def render_seasonal_coverage(seasonal_coverage: pd.DataFrame, output_svg: str) -> str:
    """Heatmap of sample counts per year (rows) and month (columns)."""
    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(9, max(4, 0.25 * len(seasonal_coverage) + 2)))
    im = ax.imshow(seasonal_coverage.to_numpy(), aspect="auto", cmap="viridis")
    ax.set_xticks(range(len(seasonal_coverage.columns)))
    ax.set_xticklabels(list(seasonal_coverage.columns))
    ax.set_yticks(range(len(seasonal_coverage.index)))
    ax.set_yticklabels([str(y) for y in seasonal_coverage.index])
    ax.set_title("Trend-station samples per year and month")
    fig.colorbar(im, ax=ax, label="samples")
    fig.tight_layout()
    fig.savefig(output_svg)
    plt.close(fig)
    return output_svg


def render_trend_coefficients(trends: pd.DataFrame, output_svg: str) -> str:
    """Per-station slope with confidence interval; significant trends colored by sign."""
    labels = [
        d if isinstance(d, str) else s
        for s, d in zip(trends["station"], trends["display_name"])
    ]
    y = np.arange(len(trends))
    colors = [
        (TREND_UP_COLOR if slope > 0 else TREND_DOWN_COLOR) if sig else "#8E8E93"
        for slope, sig in zip(trends["slope"], trends["significant"])
    ]

    plt.style.use("dark_background")
    fig, ax = plt.subplots(figsize=(8, max(4, 0.4 * len(trends) + 2)))
    ax.hlines(y, trends["ci_low"], trends["ci_high"], colors=colors, linewidth=2.0)
    ax.scatter(trends["slope"], y, color=colors, s=30, zorder=3)
    ax.axvline(0.0, color=NEUTRAL_COLOR, linewidth=1.0, linestyle="--")
    ax.set_yticks(y)
    ax.set_yticklabels(labels)
    ax.set_xlabel("Trend in log(TN) per year")
    ax.set_title("Per-station TN trends (final model)")
    fig.tight_layout()
    fig.savefig(output_svg)
    plt.close(fig)
    return output_svg


def render_plots(
    trend,
    models,
    short_hash: str,
    output_dir: str | None = None,
) -> list[str]:
    """
    Render every figure for a run. Returns artifact paths.

    Filenames: plot-{short_hash}-{ii}-{name}.svg with a zero-based, zero-padded index.
    Models that failed to fit produce no diagnostics figure.
    """
    jobs = [
        ("tn-by-station", lambda p: render_station_boxplot(trend.trend_data, p)),
        (
            "seasonal-coverage",
            lambda p: render_seasonal_coverage(trend.seasonal_coverage, p),
        ),
    ]
    for key, fitted in (
        ("saturated", models.saturated),
        ("stepwise", models.stepwise),
        ("polynomial", models.polynomial),
        ("final", models.final),
    ):
        if fitted is not None:
            jobs.append(
                (f"diagnostics-{key}", lambda p, f=fitted: render_diagnostics(f, p))
            )
    if models.trends is not None and not models.trends.empty:
        jobs.append(
            ("station-trends", lambda p: render_trend_coefficients(models.trends, p))
        )

    artifact_paths: list[str] = []
    for idx, (name, render) in enumerate(jobs):
        filename = f"plot-{short_hash}-{idx:02}-{name}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        render(str(output_path))
        logger.debug(f"Rendered {output_path}")
        artifact_paths.append(str(output_path))
    return artifact_paths
