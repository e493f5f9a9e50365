from pathlib import Path

from src.models import ModelOutputs
from src.reporting import assemble_text_report, render_plots


def test_render_plots_writes_indexed_svgs(tmp_path, trend, models):
    paths = render_plots(trend, models, short_hash="abcd1234", output_dir=str(tmp_path))
    names = [Path(p).name for p in paths]
    assert names == [
        "plot-abcd1234-00-tn-by-station.svg",
        "plot-abcd1234-01-seasonal-coverage.svg",
        "plot-abcd1234-02-diagnostics-saturated.svg",
        "plot-abcd1234-03-diagnostics-stepwise.svg",
        "plot-abcd1234-04-diagnostics-polynomial.svg",
        "plot-abcd1234-05-diagnostics-final.svg",
        "plot-abcd1234-06-station-trends.svg",
    ]
    for p in paths:
        text = Path(p).read_text(encoding="utf-8")
        assert "<svg" in text


def test_render_plots_skips_missing_models(tmp_path, trend):
    paths = render_plots(trend, ModelOutputs(), short_hash="x", output_dir=str(tmp_path))
    assert [Path(p).name for p in paths] == [
        "plot-x-00-tn-by-station.svg",
        "plot-x-01-seasonal-coverage.svg",
    ]


def test_text_report_sections(loaded, trend, models):
    report = assemble_text_report(loaded.samples, trend, models, alpha=0.05)
    for heading in (
        "Input data",
        "Station coverage",
        "Seasonal coverage",
        "Model 1: saturated two-way model",
        "Stepwise AIC selection",
        "Model 2: stepwise-reduced model",
        "Model 3: quadratic-in-year check",
        "Nested F-test",
        "Final model: separate year slope per station",
        "Per-station TN trends",
    ):
        assert heading in report
    assert models.final.formula in report
    assert "Trend stations: 3" in report
    assert "Upper Bay (S1): decreasing" in report


def test_text_report_shows_failures(loaded, trend):
    failed = ModelOutputs(
        failures={
            "saturated": "Model 1 (saturated): design matrix is rank deficient",
            "final": "Final model: no rows to fit",
        }
    )
    report = assemble_text_report(loaded.samples, trend, failed)
    assert "Model not available: Model 1 (saturated): design matrix is rank deficient" in report
    assert "Not available: Final model: no rows to fit" in report
    assert "(no stepwise trace)" in report
