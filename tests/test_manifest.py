import json
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from src.main import build_manifest_dict
from src.utils import (
    build_effective_parameters,
    canonical_json_dumps,
    canonical_json_hash,
    utc_timestamp_seconds,
    write_manifest,
)


def _effective_params():
    return {
        "load": {
            "samples_path": "/data/samples.csv",
            "names_path": "/data/stations.xlsx",
            "station_column": "station",
        },
        "selection": {
            "min_total_years": 10,
            "min_recent_years": 2,
            "recent_after_year": 2014,
        },
    }


def test_build_manifest_dict_fields():
    """Test manifest generation with counts, failures and artifacts."""
    abs_inputs = {"samples_path": "/data/samples.csv", "names_path": "/data/stations.xlsx"}
    counts = {
        "total_sample_rows": 400,
        "trend_station_count": 3,
        "trend_row_count": 380,
        "core_months_row_count": 288,
    }
    artifact_paths = ["plot-testhash-00-tn-by-station.svg", "report-testhash.txt"]

    manifest = build_manifest_dict(
        abs_inputs,
        counts,
        _effective_params(),
        ("testhash", "fulltesthash"),
        artifact_paths,
        failures={"saturated": "rank deficient"},
    )

    assert manifest["version"] == "1"
    assert "timestamp_utc" in manifest
    assert manifest["absolute_input_paths"] == abs_inputs
    assert manifest["total_sample_rows"] == 400
    assert manifest["trend_station_count"] == 3
    assert manifest["trend_row_count"] == 380
    assert manifest["core_months_row_count"] == 288
    assert manifest["model_failures"] == {"saturated": "rank deficient"}
    assert manifest["effective_parameters"] == _effective_params()
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"] == artifact_paths


def test_build_manifest_dict_defaults_missing_counts():
    manifest = build_manifest_dict({}, {}, {}, ("a", "b"), [])
    assert manifest["total_sample_rows"] == 0
    assert manifest["model_failures"] == {}


def test_canonical_hash_ignores_key_order():
    a = {"b": 1, "a": [1, 2, {"y": 2, "x": 1}]}
    b = {"a": [1, 2, {"x": 1, "y": 2}], "b": 1}
    assert canonical_json_dumps(a) == canonical_json_dumps(b)
    short, full = canonical_json_hash(a)
    assert canonical_json_hash(b) == (short, full)
    assert len(full) == 64 and short == full[:8]


def test_effective_parameters_sanitized():
    @dataclass
    class Params:
        path: Path
        months: tuple
        threshold: float

    out = build_effective_parameters(
        p=Params(path=Path("rel/file.csv"), months=("May", "Jun"), threshold=np.float64(1.5))
    )
    assert out["p"]["path"].endswith("rel/file.csv")
    assert Path(out["p"]["path"]).is_absolute()
    assert out["p"]["months"] == ["May", "Jun"]
    assert out["p"]["threshold"] == 1.5
    json.dumps(out)


def test_write_manifest_roundtrip(tmp_path):
    path = tmp_path / "manifest.json"
    write_manifest(path, {"count": np.int64(3), "inputs": {"a": Path("x.csv")}})
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["count"] == 3
    assert data["inputs"]["a"].endswith("x.csv")


def test_manifest_timestamp_format():
    """Test that manifest timestamp is in correct format."""
    timestamp = utc_timestamp_seconds()
    # Should be ISO-8601 UTC timestamp with seconds precision and Z suffix
    assert timestamp.endswith("Z")
    assert "T" in timestamp
    # Should be parseable
    import datetime

    datetime.datetime.fromisoformat(timestamp[:-1])  # Remove Z for parsing
