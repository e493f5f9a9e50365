import numpy as np
import pandas as pd
import pytest

from src.main import (
    EmptyFilterResultError,
    SelectionParams,
    select_trend_stations,
    summarize_station_coverage,
)


def station_years(station: str, years, tn=0.5) -> pd.DataFrame:
    years = list(years)
    return pd.DataFrame({"station": [station] * len(years), "year": years, "tn": tn})


def test_example_long_record_selected_short_record_not():
    df = pd.concat(
        [station_years("A", range(2000, 2021)), station_years("B", range(2018, 2021))],
        ignore_index=True,
    )
    assert select_trend_stations(df, SelectionParams()) == ["A"]


def test_selection_boundaries():
    df = pd.concat(
        [
            # exactly 10 sampled years, 2 after 2014 -> included
            station_years("EXACT", range(2007, 2017)),
            # 9 sampled years -> excluded
            station_years("NINE", range(2008, 2017)),
            # 10 sampled years, only 2015 is recent -> excluded
            station_years("ONE_RECENT", range(2006, 2016)),
        ],
        ignore_index=True,
    )
    assert select_trend_stations(df, SelectionParams()) == ["EXACT"]


def test_years_with_only_missing_tn_do_not_count():
    good = station_years("S", range(2007, 2016))
    # A tenth year exists but every TN value in it is missing
    missing = station_years("S", [2016, 2016], tn=np.nan)
    df = pd.concat([good, missing], ignore_index=True)
    with pytest.raises(EmptyFilterResultError):
        select_trend_stations(df, SelectionParams())


def test_repeated_samples_in_a_year_count_once():
    df = pd.concat(
        [station_years("S", [y] * 4) for y in range(2011, 2020)], ignore_index=True
    )
    coverage = summarize_station_coverage(df, SelectionParams())
    assert coverage.loc[0, "total"] == 9
    assert not coverage.loc[0, "selected"]


def test_thresholds_are_parameters():
    df = station_years("S", range(2016, 2021))
    params = SelectionParams(min_total_years=5, min_recent_years=5, recent_after_year=2015)
    assert select_trend_stations(df, params) == ["S"]


def test_selected_stations_sorted():
    df = pd.concat(
        [station_years(s, range(2000, 2021)) for s in ("Z9", "A1", "M5")],
        ignore_index=True,
    )
    assert select_trend_stations(df, SelectionParams()) == ["A1", "M5", "Z9"]


def test_coverage_table_columns_and_tn_free_station():
    df = pd.concat(
        [
            station_years("A", range(2000, 2021)),
            station_years("EMPTY", [2019, 2020], tn=np.nan),
        ],
        ignore_index=True,
    )
    coverage = summarize_station_coverage(df, SelectionParams()).set_index("station")
    assert list(coverage.columns) == [
        "total",
        "last_5",
        "first_year",
        "last_year",
        "selected",
    ]
    assert coverage.loc["A", "total"] == 21
    assert coverage.loc["A", "last_5"] == 6
    assert coverage.loc["A", "first_year"] == 2000
    assert coverage.loc["A", "last_year"] == 2020
    assert coverage.loc["EMPTY", "total"] == 0
    assert pd.isna(coverage.loc["EMPTY", "first_year"])


def test_no_station_qualifies_raises():
    df = station_years("B", range(2018, 2021))
    with pytest.raises(EmptyFilterResultError):
        select_trend_stations(df, SelectionParams())
