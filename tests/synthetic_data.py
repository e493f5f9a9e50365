from pathlib import Path

import numpy as np
import pandas as pd

BASE_TN = {"S1": 0.3, "S2": 0.5, "S3": 0.7}
TRUE_SLOPE = {"S1": -0.02, "S2": 0.0, "S3": 0.015}
SAMPLE_MONTHS = (3, 5, 6, 7, 8, 9, 10, 11)


def make_samples(
    seed: int = 0,
    years=range(2005, 2021),
    months=SAMPLE_MONTHS,
    skip=None,
) -> pd.DataFrame:
    """
    Synthetic monthly TN samples for three long-record stations plus a short-record
    station S4 (2018-2020 only). Also carries nitrogen-species/depth columns and
    one outlier and one missing-TN row.

    skip: optional set of (station, month) pairs to leave out entirely.
    """
    rng = np.random.default_rng(seed)
    skip = skip or set()
    rows = []
    for s in ("S1", "S2", "S3"):
        for y in years:
            for m in months:
                if (s, m) in skip:
                    continue
                log_tn = (
                    np.log(BASE_TN[s])
                    + TRUE_SLOPE[s] * (y - 2005)
                    + 0.05 * np.sin(m)
                    + rng.normal(0.0, 0.1)
                )
                rows.append(
                    {
                        "station": s,
                        "date": f"{y}-{m:02d}-15",
                        "tn": round(float(np.exp(log_tn)), 5),
                        "ton": 0.2,
                        "nh4": 0.01,
                        "no23": 0.05,
                        "depth_m": 0.5,
                    }
                )
    for y in (2018, 2019, 2020):
        for m in (5, 6, 7, 8, 9, 10):
            rows.append(
                {
                    "station": "S4",
                    "date": f"{y}-{m:02d}-15",
                    "tn": 0.4,
                    "ton": 0.2,
                    "nh4": 0.01,
                    "no23": 0.05,
                    "depth_m": 0.5,
                }
            )
    extra = {"ton": 0.2, "nh4": 0.01, "no23": 0.05, "depth_m": 0.5}
    rows.append({"station": "S2", "date": "2010-07-20", "tn": 2.5, **extra})
    rows.append({"station": "S1", "date": "2011-06-20", "tn": np.nan, **extra})
    return pd.DataFrame(rows)


def make_names() -> pd.DataFrame:
    # S3 deliberately unmapped
    return pd.DataFrame(
        {
            "station": ["S1", "S2", "S4"],
            "alt_name": ["Upper Bay", "Mid Bay", "Creek Mouth"],
            "county": ["A", "B", "C"],
        }
    )


def write_inputs(root: Path, samples: pd.DataFrame, names: pd.DataFrame):
    root.mkdir(parents=True, exist_ok=True)
    samples_path = root / "samples.csv"
    names_path = root / "stations.xlsx"
    samples.to_csv(samples_path, index=False)
    names.to_excel(names_path, index=False)
    return samples_path, names_path
