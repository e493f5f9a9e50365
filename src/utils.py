"""Run bookkeeping shared by the CLI and the Gradio UI: hashing, manifests, run dirs, archives."""

from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import threading
import zipfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable

import numpy as np

logger = logging.getLogger(__name__)

RUN_DIR_FORMAT = "%Y%m%dT%H%M%S"


def normalize_abs_posix(path: str | Path | None) -> str | None:
    """Absolute, forward-slash form of path (None passes through)."""
    if path is None:
        return None
    return Path(path).resolve().as_posix()


def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """Compact, key-sorted, non-ASCII-preserving JSON used as the hash input."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """SHA-256 of the canonical JSON. Returns (first 8 hex chars, full hex digest)."""
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:8], digest


def _sanitize_for_json(obj: Any) -> Any:
    """
    Reduce parameter objects and analysis values to JSON primitives.

    Paths become absolute POSIX strings, enums their names, numpy scalars and
    arrays their Python equivalents, dataclasses dicts, tuples and sets lists
    (sets sorted by their string form). Unknown objects fall back to str().
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, (_dt.datetime, _dt.date)):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return [_sanitize_for_json(x) for x in obj.tolist()]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _sanitize_for_json(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(x) for x in obj]
    if isinstance(obj, (set, frozenset)):
        return [_sanitize_for_json(x) for x in sorted(obj, key=str)]
    return str(obj)


def build_effective_parameters(**groups: Any) -> dict[str, Any]:
    """
    Named parameter groups as one JSON-ready mapping.

    build_effective_parameters(load=LoadParams(...), model=ModelParams())
    -> {"load": {...}, "model": {...}}
    """
    out: dict[str, Any] = {}
    for name, params in groups.items():
        if dataclasses.is_dataclass(params) and not isinstance(params, type):
            mapping = dataclasses.asdict(params)
        elif hasattr(params, "__dict__"):
            mapping = vars(params)
        else:
            mapping = {"value": params}
        out[name] = _sanitize_for_json(mapping)
    return out


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """Write the run manifest as indented UTF-8 JSON."""
    text = json.dumps(_sanitize_for_json(manifest), ensure_ascii=False, indent=2)
    Path(path).write_text(text, encoding="utf-8")


def utc_timestamp_seconds() -> str:
    # e.g. 2024-06-01T12:00:00Z
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None, microsecond=0)
    return now.isoformat() + "Z"


def ensure_run_dir(base: Path | str = ".", prefix: str = "output_gradio") -> Path:
    """Create and return base/prefix/<local timestamp>."""
    run_dir = Path(base) / prefix / _dt.datetime.now().strftime(RUN_DIR_FORMAT)
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Run directory: %s", run_dir)
    return run_dir


def create_zip_async(zip_path: str, artifact_paths: Iterable[Path]) -> threading.Thread:
    """
    Archive artifact_paths (flattened to their file names) into zip_path on a
    daemon thread. The thread is already started when returned; missing files
    are skipped and IO failures are logged, never raised.
    """
    paths = [Path(p) for p in artifact_paths]

    def _archive() -> None:
        try:
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for p in paths:
                    if not p.exists():
                        logger.debug("Not archiving missing artifact %s", p)
                        continue
                    zf.write(p, arcname=p.name)
            logger.debug("Wrote archive %s (%d entries)", zip_path, len(paths))
        except OSError as e:
            logger.warning("Could not write archive %s: %s", zip_path, e)

    worker = threading.Thread(target=_archive, daemon=True)
    worker.start()
    return worker


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Save the report as run_dir/report-<short_hash>.txt and return that path.
    A failed write is logged; the path is returned either way.
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
    except OSError as e:
        logger.warning("Could not write report %s: %s", target, e)
    else:
        logger.debug("Report written to %s", target)
    return target
