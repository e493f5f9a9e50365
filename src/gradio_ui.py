"""Gradio UI wrapper for the TN trend pipeline.

Upload the sample CSV and the station-name spreadsheet, adjust thresholds, and
run the pipeline to get the text report, inlined SVG plots and a ZIP of all artifacts.
"""

import os
import shutil
from pathlib import Path
from typing import List, Optional

# Backend selection is enforced in src.reporting at import-time.
# Do NOT set or override MPLBACKEND here.

try:
    from .main import (
        LoadParams,
        ModelParams,
        SelectionParams,
        TransformParams,
        _parse_core_months,
        get_default_params,
        run_analysis,
    )
    from .utils import create_zip_async, ensure_run_dir
except ImportError:
    from main import (  # type: ignore
        LoadParams,
        ModelParams,
        SelectionParams,
        TransformParams,
        _parse_core_months,
        get_default_params,
        run_analysis,
    )
    from utils import create_zip_async, ensure_run_dir  # type: ignore

import logging
import time
import traceback

import gradio as gr

logger = logging.getLogger(__name__)

RUN_ROOT = "output_gradio"


def _parse_optional_int(val) -> Optional[int]:
    if val is None:
        return None
    s = val
    if isinstance(val, str):
        s = val.strip()
        if s == "":
            return None
    try:
        # Gradio numbers may arrive as floats
        return int(float(s))
    except (TypeError, ValueError):
        return None


def _file_path(file_obj) -> Optional[str]:
    # gr.File returns a dict with "name" and "tmp_path" in some versions; accept both
    if file_obj is None:
        return None
    if isinstance(file_obj, dict):
        return file_obj.get("name") or file_obj.get("tmp_path")
    if isinstance(file_obj, str):
        return file_obj
    return getattr(file_obj, "name", None)


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Retention helper: keep only the newest `keep` subdirectories under `run_root`.

    Timestamped run directories (YYYYmmddTHHMMSS) are ordered by name; otherwise
    by mtime. Deletion failures are logged at WARNING and retried on future runs.
    """
    if keep is None:
        try:
            keep = int(os.getenv("TN_TRENDS_RETENTION_KEEP", "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return

    if not run_root.exists() or not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]
    if not subdirs:
        return

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    try:
        run_root_resolved = run_root.resolve()
    except OSError:
        logger.warning(f"Could not resolve run_root {run_root} - skipping prune")
        return

    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        try:
            inside = os.path.commonpath(
                [str(run_root_resolved), str(d.resolve())]
            ) == str(run_root_resolved)
        except (OSError, ValueError):
            inside = False
        if not inside:
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def _run_pipeline(
    samples_path: Optional[str],
    names_path: Optional[str],
    min_total_years: Optional[float],
    min_recent_years: Optional[float],
    recent_after_year: Optional[float],
    outlier_threshold: Optional[float],
    core_months: Optional[str],
    alpha: Optional[float],
    verbose_filtering: bool = False,
    run_root: str = RUN_ROOT,
):
    """
    Execute pipeline and return (html_embed, zip_path, report_text),
    or (error_text, None, error_text) on failure.
    """
    t0 = time.time()
    logger.info(
        f"_run_pipeline START - samples={samples_path!r} names={names_path!r}"
    )

    if not samples_path or not names_path:
        msg = "Error: upload both the sample CSV and the station-name file."
        return msg, None, msg

    d_load, d_sel, d_tr, d_model = get_default_params()

    def _int_or(v, default: int) -> int:
        parsed = _parse_optional_int(v)
        return default if parsed is None else parsed

    try:
        load = LoadParams(
            samples_path=Path(samples_path).resolve(),
            names_path=Path(names_path).resolve(),
            station_column=d_load.station_column,
            date_column=d_load.date_column,
            tn_column=d_load.tn_column,
            display_column=d_load.display_column,
        )
        selection = SelectionParams(
            min_total_years=_int_or(min_total_years, d_sel.min_total_years),
            min_recent_years=_int_or(min_recent_years, d_sel.min_recent_years),
            recent_after_year=_int_or(recent_after_year, d_sel.recent_after_year),
        )
        transform = TransformParams(
            outlier_threshold=(
                d_tr.outlier_threshold
                if outlier_threshold is None
                else float(outlier_threshold)
            ),
            drop_column_patterns=d_tr.drop_column_patterns,
            organic_nitrogen_column=d_tr.organic_nitrogen_column,
            core_months=(
                _parse_core_months(core_months)
                if core_months and str(core_months).strip()
                else d_tr.core_months
            ),
            verbose_filtering=bool(verbose_filtering),
        )
        model = ModelParams(
            alpha=d_model.alpha if alpha is None else float(alpha),
            stepwise_max_steps=d_model.stepwise_max_steps,
            allow_rank_deficient=d_model.allow_rank_deficient,
        )

        run_dir = ensure_run_dir(base=".", prefix=run_root)
        outputs = run_analysis(load, selection, transform, model, run_dir)
    except Exception as e:
        tb = traceback.format_exc()
        msg = f"Error running pipeline\n{e}\n{tb}"
        logger.debug(f"_run_pipeline EXCEPTION: {e}\n{tb}")
        return msg, None, msg

    _prune_old_runs(Path(run_root))

    # The ZIP is written in a background thread so the Gradio worker returns promptly
    short_hash = outputs.manifest["canonical_hash_short"]
    zip_path = str(run_dir / f"artifacts-{short_hash}.zip")
    manifest_path = run_dir / f"manifest-{short_hash}.json"
    create_zip_async(
        zip_path, [Path(p) for p in outputs.artifact_paths] + [manifest_path]
    )

    parts = []
    for p in outputs.artifact_paths:
        svg_path = Path(p)
        if svg_path.suffix != ".svg":
            continue
        try:
            txt = svg_path.read_text(encoding="utf-8")
        except OSError:
            txt = f"<!-- Failed to read {svg_path} -->"
        parts.append(f"<div>{txt}</div>")
    html = "\n".join(parts)

    logger.info(f"_run_pipeline COMPLETE (duration_ms={(time.time() - t0) * 1000:.1f})")
    return html, zip_path, outputs.report


def _build_ui():
    with gr.Blocks() as demo:
        _, d_sel, d_tr, d_model = get_default_params()
        gr.Markdown("### TN Trends - long-term total nitrogen trend analysis")
        gr.HTML("""
<style>
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
    max-height: 800px;
  }
</style>
""")
        with gr.Row():
            samples_input = gr.File(label="Sample CSV", file_types=[".csv"])
            names_input = gr.File(
                label="Station names (.xlsx or .csv)", file_types=[".xlsx", ".csv"]
            )
        with gr.Row():
            min_total = gr.Number(
                label="min_total_years", value=d_sel.min_total_years, precision=0
            )
            min_recent = gr.Number(
                label="min_recent_years", value=d_sel.min_recent_years, precision=0
            )
            recent_after = gr.Number(
                label="recent_after_year", value=d_sel.recent_after_year, precision=0
            )
        with gr.Row():
            outlier = gr.Number(
                label="outlier_threshold (mg/L)",
                value=d_tr.outlier_threshold,
                precision=2,
                step=0.1,
            )
            core_months = gr.Textbox(
                label="core_months (labels or numeric range, e.g. 5-10)",
                value=",".join(d_tr.core_months),
            )
            alpha = gr.Number(label="alpha", value=d_model.alpha, precision=3, step=0.01)
            verbose = gr.Checkbox(label="verbose_filtering", value=False)

        run_button = gr.Button("Run")
        report_code = gr.Textbox(
            value="", lines=20, interactive=False, elem_id="report_box", label="Report"
        )
        output_html = gr.HTML(label="Plots")
        output_zip = gr.File(label="Download ZIP")

        def _click(
            samples_obj,
            names_obj,
            min_total_v,
            min_recent_v,
            recent_after_v,
            outlier_v,
            core_months_v,
            alpha_v,
            verbose_v,
        ) -> List:
            html, zip_p, report = _run_pipeline(
                _file_path(samples_obj),
                _file_path(names_obj),
                min_total_v,
                min_recent_v,
                recent_after_v,
                outlier_v,
                core_months_v,
                alpha_v,
                verbose_v,
            )
            return [html, zip_p, report]

        run_button.click(
            _click,
            inputs=[
                samples_input,
                names_input,
                min_total,
                min_recent,
                recent_after,
                outlier,
                core_months,
                alpha,
                verbose,
            ],
            outputs=[output_html, output_zip, report_code],
        )

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
