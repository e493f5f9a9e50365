#!/usr/bin/env python3
"""
TN Trends - long-term total nitrogen trend analysis as pure functional units.

This module exposes the pipeline stages:
- load_inputs()
- select_trend_stations()
- build_trend_data()
- restrict_to_core_months()
- fit_trend_models()  (see models.py)
- render_plots() / assemble_text_report()  (see reporting.py)

Each function takes explicit inputs and returns explicit outputs, avoiding prints and
global state mutation. Logging kept for internal diagnostics but functions are pure by contract.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# Support both package and script execution modes
try:
    # When run as a package: python -m src.main
    from .data_loader import (
        MONTH_LABELS,
        DataLoadError,
        NutrientDataLoader,
    )
    from .models import ModelFitError, ModelOutputs, ModelParams, fit_trend_models
    from .reporting import assemble_text_report, render_plots
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python src/main.py
    from data_loader import (
        MONTH_LABELS,
        DataLoadError,
        NutrientDataLoader,
    )
    from models import ModelFitError, ModelOutputs, ModelParams, fit_trend_models
    from reporting import assemble_text_report, render_plots
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# May..October
DEFAULT_CORE_MONTHS: Tuple[str, ...] = tuple(MONTH_LABELS[4:10])


class EmptyFilterResultError(ValueError):
    """Raised when a selection or filter stage leaves nothing to analyze."""

    pass


class FilterResult:
    """Container for filter operation results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        # Row counters
        self.original_rows: int = 0
        self.filtered_rows: int = 0
        self.excluded_rows: int = 0

        # Diagnostics
        self.warnings: list[str] = []
        self.metrics: dict[str, int | float | str] = {}

        # Timing
        self.started_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        import time

        self.started_at = time.perf_counter()

    def stop(self) -> None:
        import time

        if self.started_at is not None:
            self.elapsed_ms = (time.perf_counter() - self.started_at) * 1000.0

    def finish(self, n_rows: int, verbose: bool = False) -> None:
        """Record the output row count, stop the timer and optionally log the summary."""
        self.filtered_rows = n_rows
        self.excluded_rows = self.original_rows - n_rows
        self.stop()
        if verbose:
            logger.info(self.summarize())

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        """Attach a named metric."""
        self.metrics[name] = value

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.filtered_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


@dataclass
class LoadParams:
    """
    Parameters used when loading the two input tables.

    Attributes:
        samples_path: Path to the nutrient sample CSV.
        names_path: Path to the station-name spreadsheet (.xlsx) or CSV.
        station_column: Station identifier column, shared by both tables.
        date_column: Sample date column in the sample table.
        tn_column: Total nitrogen column (mg/L) in the sample table.
        display_column: Short display-name column in the station-name table.
        names_sheet: Sheet name or index of the station-name workbook.
        date_format: Optional strftime format for dates; None lets pandas infer.
        fail_on_invalid_dates: Raise when any date fails to parse (otherwise drop those rows).
    """

    samples_path: Optional[Path]
    names_path: Optional[Path]
    station_column: str = "station"
    date_column: str = "date"
    tn_column: str = "tn"
    display_column: str = "alt_name"
    names_sheet: str | int = 0
    date_format: Optional[str] = None
    fail_on_invalid_dates: bool = True


@dataclass
class SelectionParams:
    # A station needs at least this many years with a TN sample ...
    min_total_years: int = 10
    # ... and at least this many of them after recent_after_year
    min_recent_years: int = 2
    recent_after_year: int = 2014


@dataclass
class TransformParams:
    # TN at or above this value (mg/L) is treated as an outlier and dropped
    outlier_threshold: float = 1.5
    # Nitrogen species and depth columns (case-insensitive regex, re.search)
    drop_column_patterns: List[str] = field(
        default_factory=lambda: [r"^(nh[34]|no[23x]|no23)", r"depth"]
    )
    # Organic nitrogen column
    organic_nitrogen_column: str = "ton"
    core_months: List[str] = field(default_factory=lambda: list(DEFAULT_CORE_MONTHS))
    verbose_filtering: bool = False


@dataclass
class LoadedInputs:
    samples: pd.DataFrame
    station_names: pd.DataFrame


@dataclass
class TrendDataOutputs:
    trend_stations: List[str]
    station_coverage: pd.DataFrame
    trend_data: pd.DataFrame
    core_months_data: pd.DataFrame
    seasonal_coverage: pd.DataFrame


def load_inputs(params: LoadParams) -> LoadedInputs:
    """
    Pure function to load the sample table and station-name table.
    No prints; raises DataLoadError subclasses on error.
    """
    if params.samples_path is None or params.names_path is None:
        raise ValueError("Both samples_path and names_path are required")
    with NutrientDataLoader(params.samples_path, params.names_path) as loader:
        samples = loader.read_samples(
            station_column=params.station_column,
            date_column=params.date_column,
            tn_column=params.tn_column,
            date_format=params.date_format,
            fail_on_invalid_dates=params.fail_on_invalid_dates,
        )
        names = loader.read_station_names(
            station_column=params.station_column,
            display_column=params.display_column,
            sheet_name=params.names_sheet,
        )

    # Downstream stages use canonical column names
    samples = samples.rename(
        columns={params.station_column: "station", params.tn_column: "tn"}
    )
    names = names.rename(
        columns={
            params.station_column: "station",
            params.display_column: "display_name",
        }
    )
    logger.info(
        f"Loaded {len(samples)} samples from {samples['station'].nunique()} stations; "
        f"{len(names)} station names"
    )
    return LoadedInputs(samples=samples, station_names=names)


def summarize_station_coverage(
    df: pd.DataFrame, params: SelectionParams
) -> pd.DataFrame:
    """
    Per-station sampling coverage used for trend-station selection.

    A (station, year) counts as sampled when at least one non-missing TN value
    exists that year. Returns one row per station with:
      total       - number of sampled years
      last_5      - number of sampled years after params.recent_after_year
      first_year / last_year - sampled-year range
      selected    - total >= min_total_years and last_5 >= min_recent_years
    Stations with no TN at all appear with total == 0.
    """
    was_sampled = (
        df.assign(has_tn=df["tn"].notna())
        .groupby(["station", "year"], observed=True)["has_tn"]
        .any()
        .rename("was_sampled")
        .reset_index()
    )
    sampled = was_sampled.loc[was_sampled["was_sampled"]]
    recent = sampled.loc[sampled["year"] > params.recent_after_year]

    stations = pd.Index(sorted(df["station"].dropna().unique()), name="station")
    coverage = pd.DataFrame(
        {
            "total": sampled.groupby("station")["year"].nunique(),
            "last_5": recent.groupby("station")["year"].nunique(),
            "first_year": sampled.groupby("station")["year"].min(),
            "last_year": sampled.groupby("station")["year"].max(),
        }
    ).reindex(stations)
    coverage[["total", "last_5"]] = (
        coverage[["total", "last_5"]].fillna(0).astype(int)
    )
    coverage["first_year"] = coverage["first_year"].astype("Int64")
    coverage["last_year"] = coverage["last_year"].astype("Int64")
    coverage["selected"] = (coverage["total"] >= params.min_total_years) & (
        coverage["last_5"] >= params.min_recent_years
    )
    return coverage.reset_index()


def select_trend_stations(df: pd.DataFrame, params: SelectionParams) -> List[str]:
    """
    Return the sorted list of trend stations.

    Example:
        >>> df = pd.DataFrame({
        ...     "station": ["A"] * 21 + ["B"] * 3,
        ...     "year": list(range(2000, 2021)) + [2018, 2019, 2020],
        ...     "tn": [0.5] * 24,
        ... })
        >>> select_trend_stations(df, SelectionParams())
        ['A']

    Raises EmptyFilterResultError when no station qualifies.
    """
    coverage = summarize_station_coverage(df, params)
    stations = coverage.loc[coverage["selected"], "station"].tolist()
    if not stations:
        raise EmptyFilterResultError(
            f"No trend stations: none of {len(coverage)} stations has >= "
            f"{params.min_total_years} sampled years and >= {params.min_recent_years} "
            f"sampled years after {params.recent_after_year}"
        )
    logger.info(f"Selected {len(stations)} of {len(coverage)} stations for trend analysis")
    return stations


def filter_to_trend_stations(
    df: pd.DataFrame, stations: Sequence[str], verbose: bool = False
) -> pd.DataFrame:
    """Keep only rows whose station is in the trend-station set."""
    result = FilterResult(label="filter_to_trend_stations")
    result.start()
    result.original_rows = len(df)
    out = df.loc[df["station"].isin(list(stations))]
    result.add_metric("stations", len(stations))
    result.finish(len(out), verbose)
    return out


def suppress_tn_outliers(
    df: pd.DataFrame, threshold: float, verbose: bool = False
) -> pd.DataFrame:
    """Recode TN >= threshold to missing, then drop rows with missing TN."""
    result = FilterResult(label="suppress_tn_outliers")
    result.start()
    result.original_rows = len(df)
    outlier_mask = df["tn"] >= threshold
    result.add_metric("outliers", int(outlier_mask.sum()))
    result.add_metric("missing_tn", int(df["tn"].isna().sum()))
    out = df.assign(tn=df["tn"].mask(outlier_mask)).dropna(subset=["tn"])
    result.finish(len(out), verbose)
    return out


def attach_display_names(
    df: pd.DataFrame, names: pd.DataFrame, verbose: bool = False
) -> pd.DataFrame:
    """
    Left-join station display names. Stations absent from the name table keep
    a missing display_name.
    """
    result = FilterResult(label="attach_display_names")
    result.start()
    result.original_rows = len(df)
    lookup = names.set_index("station")["display_name"]
    out = df.assign(display_name=df["station"].map(lookup))
    unmapped = sorted(out.loc[out["display_name"].isna(), "station"].unique())
    if unmapped:
        result.add_warning(f"No display name for stations: {unmapped}")
    result.finish(len(out), verbose)
    return out


def order_stations_by_median_tn(df: pd.DataFrame) -> pd.DataFrame:
    """
    Make station a categorical whose categories are ordered by ascending median TN.
    Ties keep ascending station-id order.
    """
    medians = df.groupby("station")["tn"].median().sort_index()
    order = medians.sort_values(kind="mergesort").index.tolist()
    return df.assign(station=pd.Categorical(df["station"], categories=order))


def drop_unused_columns(
    df: pd.DataFrame,
    patterns: Sequence[str],
    organic_column: Optional[str],
    verbose: bool = False,
) -> pd.DataFrame:
    """Drop nitrogen-species/depth columns (regex, case-insensitive) and the organic N column."""
    protected = {"station", "tn", "year", "month", "display_name"}
    regexes = [re.compile(p, re.IGNORECASE) for p in patterns]
    to_drop = [
        c
        for c in df.columns
        if c not in protected
        and (
            any(rx.search(str(c)) for rx in regexes)
            or (organic_column is not None and str(c).lower() == organic_column.lower())
        )
    ]
    if verbose and to_drop:
        logger.info(f"Dropping unused columns: {to_drop}")
    return df.drop(columns=to_drop)


def build_trend_data(
    df: pd.DataFrame,
    trend_stations: Sequence[str],
    station_names: pd.DataFrame,
    params: TransformParams,
) -> pd.DataFrame:
    """
    Build the cleaned trend dataset (all months).

    Steps, in order:
      1. keep trend stations
      2. recode TN >= outlier_threshold to missing
      3. drop rows with missing TN
      4. attach display names
      5. order station categories by median TN
      6. drop nitrogen-species, depth and organic-nitrogen columns
    Adds log_tn (natural log of TN) for modeling. Never mutates the input.

    Raises EmptyFilterResultError if no rows remain.
    """
    required = ["station", "year", "month", "tn"]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )

    verbose = params.verbose_filtering
    out = (
        df.pipe(filter_to_trend_stations, trend_stations, verbose=verbose)
        .pipe(suppress_tn_outliers, params.outlier_threshold, verbose=verbose)
        .pipe(attach_display_names, station_names, verbose=verbose)
    )
    if out.empty:
        raise EmptyFilterResultError(
            "Trend dataset is empty after outlier suppression and missing-TN removal"
        )
    out = out.pipe(order_stations_by_median_tn).pipe(
        drop_unused_columns,
        params.drop_column_patterns,
        params.organic_nitrogen_column,
        verbose=verbose,
    )
    out = out.assign(log_tn=np.log(out["tn"]))
    if not np.isfinite(out["log_tn"]).all():
        bad = int((~np.isfinite(out["log_tn"])).sum())
        logger.warning(f"Dropping {bad} rows with non-positive TN (log undefined)")
        out = out.loc[np.isfinite(out["log_tn"])]
    return out.reset_index(drop=True)


def restrict_to_core_months(
    trend_data: pd.DataFrame,
    core_months: Sequence[str] = DEFAULT_CORE_MONTHS,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Restrict the trend dataset to the core months (default May..October).

    Unused month and station categories are removed so model designs carry no
    empty levels. Raises EmptyFilterResultError if no rows remain.
    """
    unknown = [m for m in core_months if m not in MONTH_LABELS]
    if unknown:
        raise ValueError(f"Unknown month labels: {unknown}; expected {MONTH_LABELS}")

    result = FilterResult(label="restrict_to_core_months")
    result.start()
    result.original_rows = len(trend_data)
    out = trend_data.loc[trend_data["month"].isin(list(core_months))]
    result.finish(len(out), verbose)
    if out.empty:
        raise EmptyFilterResultError(
            f"No trend samples fall in the core months {list(core_months)}"
        )
    out = out.assign(
        month=out["month"].cat.remove_unused_categories(),
        station=out["station"].cat.remove_unused_categories(),
    )
    return out.reset_index(drop=True)


def summarize_seasonal_coverage(trend_data: pd.DataFrame) -> pd.DataFrame:
    """
    Year x month table of sample counts over the unrestricted trend dataset.
    Columns follow calendar order (Jan..Dec); months never sampled are 0.
    """
    months = pd.Categorical(trend_data["month"], categories=MONTH_LABELS, ordered=True)
    table = pd.crosstab(trend_data["year"], months, dropna=False)
    table = table.reindex(columns=MONTH_LABELS, fill_value=0)
    table.columns.name = "month"
    return table


def prepare_trend_data(
    loaded: LoadedInputs,
    selection: SelectionParams,
    transform: TransformParams,
) -> TrendDataOutputs:
    """Run selection, transformation, core-month restriction and coverage summaries."""
    coverage = summarize_station_coverage(loaded.samples, selection)
    stations = select_trend_stations(loaded.samples, selection)
    trend_data = build_trend_data(
        loaded.samples, stations, loaded.station_names, transform
    )
    core = restrict_to_core_months(
        trend_data, transform.core_months, verbose=transform.verbose_filtering
    )
    return TrendDataOutputs(
        trend_stations=stations,
        station_coverage=coverage,
        trend_data=trend_data,
        core_months_data=core,
        seasonal_coverage=summarize_seasonal_coverage(trend_data),
    )


def get_default_params() -> tuple[LoadParams, SelectionParams, TransformParams, ModelParams]:
    """Build default parameter objects (policy-level defaults)."""
    load = LoadParams(samples_path=None, names_path=None)
    return load, SelectionParams(), TransformParams(), ModelParams()


def build_run_identity(
    load: LoadParams,
    selection: SelectionParams,
    transform: TransformParams,
    model: ModelParams,
) -> tuple[dict, str, str, dict]:
    """
    Returns (abs_inputs, short_hash, full_hash, effective_params)
    """
    abs_inputs = {
        "samples_path": normalize_abs_posix(load.samples_path),
        "names_path": normalize_abs_posix(load.names_path),
    }
    effective_params = build_effective_parameters(
        load=load, selection=selection, transform=transform, model=model
    )
    canonical_payload = {
        "absolute_input_paths": abs_inputs,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_inputs, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_inputs: dict,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
    failures: Optional[dict] = None,
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_paths": abs_inputs,
        "total_sample_rows": int(counts.get("total_sample_rows", 0)),
        "trend_station_count": int(counts.get("trend_station_count", 0)),
        "trend_row_count": int(counts.get("trend_row_count", 0)),
        "core_months_row_count": int(counts.get("core_months_row_count", 0)),
        "model_failures": dict(failures or {}),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": artifact_paths,
    }


@dataclass
class RunOutputs:
    loaded: LoadedInputs
    trend: TrendDataOutputs
    models: ModelOutputs
    report: str
    artifact_paths: list[str]
    manifest: dict


def run_analysis(
    params_load: LoadParams,
    params_selection: SelectionParams,
    params_transform: TransformParams,
    params_model: ModelParams,
    run_output_dir: Path,
) -> RunOutputs:
    """
    Execute the full pipeline and write report, plots, trend table and manifest
    into run_output_dir. Returns everything produced.
    """
    run_output_dir.mkdir(parents=True, exist_ok=True)
    abs_inputs, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_selection, params_transform, params_model
    )

    loaded = load_inputs(params_load)
    trend = prepare_trend_data(loaded, params_selection, params_transform)
    models = fit_trend_models(trend.core_months_data, params_model)

    artifact_paths = render_plots(
        trend, models, short_hash=short_hash, output_dir=str(run_output_dir)
    )
    if models.trends is not None:
        trends_path = run_output_dir / f"trends-{short_hash}.csv"
        models.trends.to_csv(trends_path, index=False)
        artifact_paths.append(str(trends_path))

    report = assemble_text_report(
        loaded.samples, trend, models, alpha=params_model.alpha
    )
    report_path = write_text_report(report, run_output_dir, short_hash)
    artifact_paths.append(str(report_path))

    counts = {
        "total_sample_rows": len(loaded.samples),
        "trend_station_count": len(trend.trend_stations),
        "trend_row_count": len(trend.trend_data),
        "core_months_row_count": len(trend.core_months_data),
    }
    manifest = build_manifest_dict(
        abs_inputs=abs_inputs,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
        failures=models.failures,
    )
    write_manifest(str(run_output_dir / f"manifest-{short_hash}.json"), manifest)

    return RunOutputs(
        loaded=loaded,
        trend=trend,
        models=models,
        report=report,
        artifact_paths=artifact_paths,
        manifest=manifest,
    )


def _orchestrate(
    params_load: LoadParams,
    params_selection: SelectionParams,
    params_transform: TransformParams,
    params_model: ModelParams,
    output_dir: str | Path = "output",
) -> RunOutputs:
    """
    Orchestrate the full pipeline given explicit parameter objects.
    Split from main() so the CLI can remain thin and tests can call this directly.
    """
    global_run_timestamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    run_output_dir = Path(output_dir) / global_run_timestamp

    outputs = run_analysis(
        params_load, params_selection, params_transform, params_model, run_output_dir
    )
    print(outputs.report)
    return outputs


def _parse_core_months(raw: str) -> List[str]:
    """
    Parse a comma-separated month list. Accepts labels (May) or numbers (5).
    E.g. 'May,Jun,Jul' or '5-10'.
    """
    raw = raw.strip()
    if not raw:
        raise ValueError("core months must not be empty")
    range_match = re.fullmatch(r"(\d{1,2})\s*-\s*(\d{1,2})", raw)
    if range_match:
        lo, hi = int(range_match.group(1)), int(range_match.group(2))
        if not (1 <= lo <= hi <= 12):
            raise ValueError(f"Invalid month range: {raw}")
        return MONTH_LABELS[lo - 1 : hi]

    lookup = {m.lower(): m for m in MONTH_LABELS}
    months: List[str] = []
    for tok in raw.split(","):
        tok = tok.strip()
        if tok.isdigit() and 1 <= int(tok) <= 12:
            months.append(MONTH_LABELS[int(tok) - 1])
        elif tok[:3].lower() in lookup:
            months.append(lookup[tok[:3].lower()])
        else:
            raise ValueError(f"Unknown month: {tok!r}")
    return months


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="tn-trends",
        description="TN trend analysis (load -> select stations -> transform -> model -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    d_load, d_sel, d_tr, d_model = get_default_params()

    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also TN_TRENDS_DEBUG=1).",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Directory under which a timestamped run directory is created.",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument("--samples-path", type=str, help="Nutrient sample CSV (required).")
    g_load.add_argument(
        "--names-path", type=str, help="Station-name spreadsheet or CSV (required)."
    )
    g_load.add_argument("--station-column", type=str, default=d_load.station_column)
    g_load.add_argument("--date-column", type=str, default=d_load.date_column)
    g_load.add_argument("--tn-column", type=str, default=d_load.tn_column)
    g_load.add_argument("--display-column", type=str, default=d_load.display_column)
    g_load.add_argument(
        "--allow-invalid-dates",
        action="store_true",
        help="Drop rows with unparsable dates instead of failing.",
    )

    g_sel = parser.add_argument_group("SelectionParams")
    g_sel.add_argument("--min-total-years", type=int, default=d_sel.min_total_years)
    g_sel.add_argument("--min-recent-years", type=int, default=d_sel.min_recent_years)
    g_sel.add_argument("--recent-after-year", type=int, default=d_sel.recent_after_year)

    g_tr = parser.add_argument_group("TransformParams")
    g_tr.add_argument(
        "--outlier-threshold",
        type=float,
        default=d_tr.outlier_threshold,
        help="TN (mg/L) at or above which samples are dropped.",
    )
    g_tr.add_argument(
        "--core-months",
        type=str,
        default=",".join(d_tr.core_months),
        help="Months used for modeling: labels (May,Jun) or a numeric range (5-10).",
    )
    g_tr.add_argument(
        "--verbose-filtering",
        action="store_true",
        help="Log a diagnostic summary for each filter step.",
    )

    g_model = parser.add_argument_group("ModelParams")
    g_model.add_argument("--alpha", type=float, default=d_model.alpha)
    g_model.add_argument(
        "--allow-rank-deficient",
        action="store_true",
        help="Fit rank-deficient designs instead of reporting them as failures.",
    )
    return parser


def _args_to_params(
    args,
) -> tuple[LoadParams, SelectionParams, TransformParams, ModelParams]:
    """Overlay parsed CLI args on the policy defaults."""
    _, d_sel, d_tr, d_model = get_default_params()
    if not args.samples_path or not args.names_path:
        raise ValueError("--samples-path and --names-path are required")
    load = LoadParams(
        samples_path=Path(args.samples_path),
        names_path=Path(args.names_path),
        station_column=args.station_column,
        date_column=args.date_column,
        tn_column=args.tn_column,
        display_column=args.display_column,
        fail_on_invalid_dates=not args.allow_invalid_dates,
    )
    selection = SelectionParams(
        min_total_years=args.min_total_years,
        min_recent_years=args.min_recent_years,
        recent_after_year=args.recent_after_year,
    )
    transform = TransformParams(
        outlier_threshold=args.outlier_threshold,
        drop_column_patterns=d_tr.drop_column_patterns,
        organic_nitrogen_column=d_tr.organic_nitrogen_column,
        core_months=_parse_core_months(args.core_months),
        verbose_filtering=bool(args.verbose_filtering),
    )
    model = ModelParams(
        alpha=args.alpha,
        stepwise_max_steps=d_model.stepwise_max_steps,
        allow_rank_deficient=bool(args.allow_rank_deficient),
    )
    if not (0.0 < model.alpha < 1.0):
        raise ValueError(f"alpha must be in (0, 1), got {model.alpha}")
    return load, selection, transform, model


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import json
    import sys

    argv = sys.argv[1:] if argv is None else argv
    parser = _build_cli_parser()
    args = parser.parse_args(argv)

    if args.print_defaults:
        d_load, d_sel, d_tr, d_model = get_default_params()
        payload = build_effective_parameters(
            load=d_load, selection=d_sel, transform=d_tr, model=d_model
        )
        print(json.dumps(payload, indent=2))
        return

    debug_mode = bool(args.debug or os.getenv("TN_TRENDS_DEBUG", "") == "1")
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params = _args_to_params(args)
        _orchestrate(*params, output_dir=args.output_dir)
    except (DataLoadError, EmptyFilterResultError, ModelFitError, ValueError) as e:
        # Concise, user-facing errors for common/user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set TN_TRENDS_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
